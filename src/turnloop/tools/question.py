"""Built-in tool that pauses a run to ask the user for a missing value."""

from typing import Any

from turnloop.tools.dispatcher import INTERRUPT_KEY, INTERRUPT_USER_INPUT
from turnloop.tools.registry import ToolContext, ToolRegistry

ASK_USER_QUESTION = "ask_user_question"

ASK_USER_QUESTION_PARAMETERS: dict[str, object] = {
    "type": "object",
    "properties": {
        "variable_name": {
            "type": "string",
            "description": "Name of the variable the answer will be stored in.",
        },
        "question": {"type": "string", "description": "Question shown to the user."},
        "description": {
            "type": "string",
            "description": "Why the answer is needed.",
        },
    },
    "required": ["variable_name", "question", "description"],
}


async def ask_user_question(arguments: dict[str, Any], context: ToolContext) -> dict[str, Any]:
    return {
        INTERRUPT_KEY: INTERRUPT_USER_INPUT,
        "variable_name": str(arguments.get("variable_name") or ""),
        "question": str(arguments.get("question") or ""),
        "description": str(arguments.get("description") or ""),
    }


def register_question_tools(registry: ToolRegistry) -> None:
    registry.register(
        ASK_USER_QUESTION,
        "Ask the user for a value that is required to continue.",
        ask_user_question,
        ASK_USER_QUESTION_PARAMETERS,
        purposes=frozenset({"run"}),
    )
