import json

import httpx
import pytest

from turnloop.conversations.store import Message, SqliteConversationStore
from turnloop.errors import (
    ConfigError,
    CredentialError,
    ErrorCode,
    TransportError,
    UpstreamError,
    UpstreamErrorKind,
)
from turnloop.providers.anthropic_messages import AnthropicMessagesAdapter
from turnloop.providers.base import TurnRequest
from turnloop.providers.factory import build_adapter, resolve_provider_id
from turnloop.providers.models import model_capabilities
from turnloop.providers.openai_responses import (
    OpenAIResponsesAdapter,
    is_response_token,
    parse_response_snapshot,
)


def _request(**overrides: object) -> TurnRequest:
    values: dict[str, object] = {
        "model": "gpt-4.1",
        "instructions": "be brief",
        "input": "hello",
        "background_mode": True,
    }
    values.update(overrides)
    return TurnRequest(**values)


def test_resolve_provider_id() -> None:
    assert resolve_provider_id("gpt-4.1") == "openai"
    assert resolve_provider_id("o3-mini") == "openai"
    assert resolve_provider_id("claude-sonnet-4") == "anthropic"
    assert resolve_provider_id("anthropic/claude-3-haiku") == "anthropic"


def test_build_adapter_requires_key() -> None:
    store = SqliteConversationStore()
    with pytest.raises(CredentialError) as exc:
        build_adapter("openai", None, store)
    assert exc.value.code is ErrorCode.OPENAI_NOT_CONFIGURED
    with pytest.raises(CredentialError) as exc:
        build_adapter("anthropic", "", store)
    assert exc.value.code is ErrorCode.ANTHROPIC_NOT_CONFIGURED
    assert isinstance(build_adapter("openai", "sk-test", store), OpenAIResponsesAdapter)
    assert isinstance(build_adapter("anthropic", "sk-ant", store), AnthropicMessagesAdapter)


def test_model_capabilities() -> None:
    assert model_capabilities("o3").supports_reasoning_effort is True
    assert "minimal" in model_capabilities("gpt-5-mini").reasoning_effort_levels
    plain = model_capabilities("gpt-4.1", default_max_output_tokens=1024)
    assert plain.supports_reasoning_effort is False
    assert plain.max_output_tokens == 1024


def test_response_token_shape() -> None:
    assert is_response_token("resp_abc123")
    assert not is_response_token("msg_abc123")
    assert not is_response_token("resp_")
    assert not is_response_token(None)


def test_parse_response_snapshot_extracts_everything() -> None:
    snapshot = parse_response_snapshot(
        {
            "id": "resp_1",
            "status": "completed",
            "output": [
                {"type": "reasoning", "summary": [{"type": "summary_text", "text": "Plan"}]},
                {"type": "file_search", "id": "fs_1"},
                {
                    "type": "message",
                    "content": [
                        {"type": "output_text", "text": "first"},
                        {"type": "output_text", "text": "final"},
                    ],
                },
                {
                    "type": "function_call",
                    "call_id": "call_1",
                    "name": "echo",
                    "arguments": {"x": 1},
                },
            ],
            "usage": {"input_tokens": 3, "output_tokens": 4},
        }
    )
    assert snapshot.text == "final"
    assert snapshot.reasoning == ["Plan"]
    assert snapshot.builtin_tools == ["file_search"]
    assert snapshot.tool_calls[0].arguments == '{"x": 1}'
    assert snapshot.usage is not None
    assert snapshot.usage.output_tokens == 4
    assert snapshot.is_terminal


def test_parse_response_snapshot_error_details() -> None:
    failed = parse_response_snapshot(
        {"id": "resp_2", "status": "failed", "error": {"message": "exploded"}}
    )
    assert failed.error_message == "exploded"
    incomplete = parse_response_snapshot(
        {
            "id": "resp_3",
            "status": "incomplete",
            "incomplete_details": {"reason": "max_output_tokens"},
        }
    )
    assert "max_output_tokens" in (incomplete.error_message or "")


@pytest.mark.asyncio
async def test_openai_create_posts_background_request() -> None:
    captured: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["auth"] = request.headers.get("Authorization")
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "resp_new", "status": "queued"})

    adapter = OpenAIResponsesAdapter(
        "sk-test",
        base_url="https://api.example.test/v1",
        transport=httpx.MockTransport(handler),
    )
    snapshot = await adapter.create(_request(continuity_token="resp_prev"))
    assert snapshot.id == "resp_new"
    assert snapshot.status == "queued"
    assert captured["url"] == "https://api.example.test/v1/responses"
    assert captured["auth"] == "Bearer sk-test"
    body = captured["body"]
    assert body["background"] is True
    assert body["store"] is True
    assert body["previous_response_id"] == "resp_prev"


@pytest.mark.asyncio
async def test_openai_create_classifies_http_errors() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            400,
            json={"error": {"message": "bad", "code": "invalid_previous_response_id"}},
        )

    adapter = OpenAIResponsesAdapter("sk-test", transport=httpx.MockTransport(handler))
    with pytest.raises(UpstreamError) as exc:
        await adapter.create(_request())
    assert exc.value.kind is UpstreamErrorKind.INVALID_CONTINUITY


@pytest.mark.asyncio
async def test_openai_network_failure_is_transport_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    adapter = OpenAIResponsesAdapter("sk-test", transport=httpx.MockTransport(handler))
    with pytest.raises(TransportError):
        await adapter.create(_request())


@pytest.mark.asyncio
async def test_openai_stream_reads_sse_bytes() -> None:
    events = [
        {"type": "response.output_text.delta", "delta": "Hi"},
        {"type": "response.completed", "response": {"id": "resp_1", "status": "completed"}},
    ]
    sse_text = "\n\n".join(f"data: {json.dumps(event)}" for event in events) + "\n\n"

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith("/responses/resp_1")
        assert request.url.params["stream"] == "true"
        return httpx.Response(
            200, text=sse_text, headers={"content-type": "text/event-stream"}
        )

    adapter = OpenAIResponsesAdapter("sk-test", transport=httpx.MockTransport(handler))
    received = b""
    async with adapter.open_stream(_request(), "resp_1") as chunks:
        async for chunk in chunks:
            received += chunk
    assert received.decode() == sse_text


@pytest.mark.asyncio
async def test_openai_retrieve_and_cancel() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/cancel"):
            if "resp_done" in request.url.path:
                return httpx.Response(
                    400, json={"error": {"message": "Response already completed"}}
                )
            return httpx.Response(200, json={"id": "resp_live", "status": "cancelled"})
        return httpx.Response(
            200,
            json={
                "id": "resp_live",
                "status": "in_progress",
                "output": [],
            },
        )

    adapter = OpenAIResponsesAdapter("sk-test", transport=httpx.MockTransport(handler))
    polled = await adapter.retrieve("resp_live")
    assert polled.status == "in_progress"
    assert not polled.is_terminal
    cancelled = await adapter.cancel("resp_live")
    assert cancelled.status == "cancelled"
    already = await adapter.cancel("resp_done")
    assert already.status == "completed"
    assert already.id == "resp_done"


@pytest.mark.asyncio
async def test_anthropic_replays_history_window() -> None:
    store = SqliteConversationStore()
    handle = store.get_or_create_handle(
        "0b9f3c1e-5d2a-4f6b-9c8d-7e6f5a4b3c2d", "usr_1", "chat", "anthropic"
    )
    store.append_messages(
        handle.id,
        [
            Message(role="user", content="old question"),
            Message(role="assistant", content="old answer"),
            Message(role="user", content="recent question"),
            Message(role="assistant", content="recent answer"),
        ],
    )
    captured: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["headers"] = dict(request.headers)
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, text='data: {"type": "message_stop"}\n\n')

    adapter = AnthropicMessagesAdapter(
        "sk-ant", store, history_window=2, transport=httpx.MockTransport(handler)
    )
    history = adapter.build_history(handle.id)
    request = _request(model="claude-sonnet-4", history=history, background_mode=False)
    async with adapter.open_stream(request, None) as chunks:
        async for _chunk in chunks:
            pass

    body = captured["body"]
    assert body["messages"] == [
        {"role": "user", "content": "recent question"},
        {"role": "assistant", "content": "recent answer"},
        {"role": "user", "content": "hello"},
    ]
    assert body["system"] == "be brief"
    assert body["stream"] is True
    assert body["max_tokens"] == 4096
    assert captured["headers"]["x-api-key"] == "sk-ant"
    assert captured["headers"]["anthropic-version"] == "2023-06-01"
    assert adapter.supports_background() is False
    assert adapter.is_valid_continuity_token("msg_1") is False


@pytest.mark.asyncio
async def test_anthropic_has_no_background_operations() -> None:
    adapter = AnthropicMessagesAdapter("sk-ant", SqliteConversationStore())
    with pytest.raises(ConfigError):
        await adapter.create(_request())
    with pytest.raises(ConfigError):
        await adapter.retrieve("msg_1")
