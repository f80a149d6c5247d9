"""Outbound turn request assembly."""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from turnloop.conversations.store import Message
from turnloop.errors import ConfigError
from turnloop.providers.base import ToolCallResult, TurnRequest
from turnloop.providers.models import ModelCapabilities

logger = logging.getLogger(__name__)

QUESTION_TOOL_NAMES = frozenset({"ask_user_question", "store_qa_response", "complete_communication"})


@dataclass(slots=True)
class RequestOptions:
    model: str
    input: str | list[ToolCallResult]
    background_mode: bool = False
    max_output_tokens: int | None = None
    reasoning_effort: str | None = None
    history: list[Message] = field(default_factory=list)
    token_shape: Callable[[str | None], bool] = lambda token: bool(token)


def normalize_tool_spec(tool: dict[str, Any]) -> dict[str, Any]:
    """Flatten a chat-completions ``{"function": {...}}`` spec into the flat shape."""
    function = tool.get("function")
    if not isinstance(function, dict):
        return dict(tool)
    flat: dict[str, Any] = {
        "type": tool.get("type") or "function",
        "name": function.get("name"),
        "description": function.get("description"),
        "parameters": function.get("parameters"),
    }
    if "strict" in function:
        flat["strict"] = function["strict"]
    return flat


def ensure_strict_schema(schema: Any) -> Any:
    if not isinstance(schema, dict):
        return schema
    for key in ("anyOf", "oneOf", "allOf"):
        if isinstance(schema.get(key), list):
            return {**schema, key: [ensure_strict_schema(option) for option in schema[key]]}
    if schema.get("type") == "array" and schema.get("items"):
        return {**schema, "items": ensure_strict_schema(schema["items"])}
    properties = schema.get("properties")
    if isinstance(properties, dict):
        next_props = {name: ensure_strict_schema(value) for name, value in properties.items()}
        return {
            **schema,
            "type": schema.get("type", "object"),
            "properties": next_props,
            "additionalProperties": False,
            "required": list(next_props),
        }
    return schema


def prepare_tools(tools: Iterable[dict[str, Any]], purpose: str) -> list[dict[str, Any]]:
    """Normalize, scope and harden a tool list for one turn.

    Question tools need a run-mode caller that can answer them, so they are
    dropped from chat turns.
    """
    prepared: list[dict[str, Any]] = []
    for raw in tools:
        tool = normalize_tool_spec(raw)
        if purpose == "chat" and tool.get("name") in QUESTION_TOOL_NAMES:
            continue
        if isinstance(tool.get("parameters"), dict):
            tool["parameters"] = ensure_strict_schema(tool["parameters"])
        prepared.append(tool)
    if any(not tool.get("name") for tool in prepared):
        raise ConfigError("Invalid tool configuration")
    logger.debug("Tools prepared: %s", [tool["name"] for tool in prepared])
    return prepared


def resolve_reasoning_effort(
    requested: str | None, capabilities: ModelCapabilities
) -> str | None:
    if not requested or requested == "auto":
        return None
    if not capabilities.supports_reasoning_effort:
        logger.info("Model %s ignores reasoning effort", capabilities.model_id)
        return None
    if requested not in capabilities.reasoning_effort_levels:
        logger.warning(
            "Reasoning effort %r not valid for %s", requested, capabilities.model_id
        )
        return None
    return requested


def build(
    instructions: str,
    tool_specs: list[dict[str, Any]],
    continuity_token: str | None,
    options: RequestOptions,
) -> TurnRequest:
    """Assemble a TurnRequest; tokens of the wrong shape are left out."""
    token = continuity_token if options.token_shape(continuity_token) else None
    if continuity_token and token is None:
        logger.info("Omitting continuity token of unexpected shape")
    return TurnRequest(
        model=options.model,
        instructions=instructions,
        input=options.input,
        tools=list(tool_specs),
        continuity_token=token,
        background_mode=options.background_mode,
        max_output_tokens=options.max_output_tokens,
        reasoning_effort=options.reasoning_effort,
        history=list(options.history),
    )
