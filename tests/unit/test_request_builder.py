import pytest

from turnloop.conversations.store import Message
from turnloop.errors import ConfigError
from turnloop.orchestrator import request_builder
from turnloop.orchestrator.request_builder import RequestOptions
from turnloop.providers.base import ToolCallResult
from turnloop.providers.models import model_capabilities
from turnloop.providers.openai_responses import OpenAIResponsesAdapter, is_response_token


def _tool(name: str | None, **parameters: object) -> dict[str, object]:
    return {
        "type": "function",
        "name": name,
        "description": "d",
        "parameters": {"type": "object", "properties": parameters},
    }


def test_normalize_flattens_chat_completions_shape() -> None:
    spec = {
        "type": "function",
        "function": {
            "name": "lookup",
            "description": "Look something up",
            "parameters": {"type": "object", "properties": {}},
            "strict": True,
        },
    }
    flat = request_builder.normalize_tool_spec(spec)
    assert flat == {
        "type": "function",
        "name": "lookup",
        "description": "Look something up",
        "parameters": {"type": "object", "properties": {}},
        "strict": True,
    }


def test_ensure_strict_schema_recurses() -> None:
    schema = {
        "type": "object",
        "properties": {
            "tags": {
                "type": "array",
                "items": {"type": "object", "properties": {"label": {"type": "string"}}},
            },
            "choice": {
                "anyOf": [
                    {"type": "object", "properties": {"a": {"type": "string"}}},
                    {"type": "string"},
                ]
            },
        },
    }
    strict = request_builder.ensure_strict_schema(schema)
    assert strict["additionalProperties"] is False
    assert strict["required"] == ["tags", "choice"]
    item = strict["properties"]["tags"]["items"]
    assert item["additionalProperties"] is False
    assert item["required"] == ["label"]
    option = strict["properties"]["choice"]["anyOf"][0]
    assert option["required"] == ["a"]
    assert strict["properties"]["choice"]["anyOf"][1] == {"type": "string"}


def test_prepare_tools_drops_question_tools_for_chat() -> None:
    tools = [_tool("ask_user_question"), _tool("search", q={"type": "string"})]
    chat = request_builder.prepare_tools(tools, "chat")
    run = request_builder.prepare_tools(tools, "run")
    assert [tool["name"] for tool in chat] == ["search"]
    assert [tool["name"] for tool in run] == ["ask_user_question", "search"]
    assert chat[0]["parameters"]["additionalProperties"] is False


def test_prepare_tools_rejects_unnamed_tool() -> None:
    with pytest.raises(ConfigError, match="Invalid tool configuration"):
        request_builder.prepare_tools([_tool(None)], "chat")


def test_reasoning_effort_resolution() -> None:
    reasoning = model_capabilities("o3-mini")
    plain = model_capabilities("gpt-4.1")
    assert request_builder.resolve_reasoning_effort("high", reasoning) == "high"
    assert request_builder.resolve_reasoning_effort("auto", reasoning) is None
    assert request_builder.resolve_reasoning_effort("extreme", reasoning) is None
    assert request_builder.resolve_reasoning_effort("high", plain) is None
    assert request_builder.resolve_reasoning_effort(None, reasoning) is None


def test_build_omits_token_of_wrong_shape() -> None:
    options = RequestOptions(model="gpt-4.1", input="hi", token_shape=is_response_token)
    request = request_builder.build("be nice", [], "msg_123", options)
    assert request.continuity_token is None
    request = request_builder.build("be nice", [], "resp_123", options)
    assert request.continuity_token == "resp_123"


def test_first_turn_body_has_no_previous_response_id() -> None:
    options = RequestOptions(model="gpt-4.1", input="hello", background_mode=True)
    request = request_builder.build("sys", [], None, options)
    body = OpenAIResponsesAdapter.request_body(request)
    assert "previous_response_id" not in body
    assert body["input"] == "hello"
    assert body["instructions"] == "sys"
    assert body["background"] is True
    assert body["store"] is True


def test_tool_result_body_carries_outputs_and_limits() -> None:
    options = RequestOptions(
        model="o3",
        input=[ToolCallResult(call_id="call_1", output='{"x":1}')],
        background_mode=True,
        max_output_tokens=2048,
        reasoning_effort="medium",
        history=[Message(role="user", content="ignored for tool results")],
    )
    request = request_builder.build("sys", [_tool("echo")], "resp_prev", options)
    body = OpenAIResponsesAdapter.request_body(request)
    assert body["input"] == [
        {"type": "function_call_output", "call_id": "call_1", "output": '{"x":1}'}
    ]
    assert "instructions" not in body
    assert body["previous_response_id"] == "resp_prev"
    assert body["max_output_tokens"] == 2048
    assert body["reasoning"] == {"effort": "medium", "summary": "auto"}
    assert body["tools"][0]["name"] == "echo"
