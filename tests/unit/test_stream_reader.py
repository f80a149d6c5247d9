import json
from collections.abc import AsyncIterator

import pytest

from turnloop.errors import ProtocolParseError
from turnloop.events.models import (
    ErrorEvent,
    StatusUpdate,
    TextDelta,
    TextDone,
    ToolActivity,
    ToolCallRequested,
    Unmapped,
    UsageDelta,
)
from turnloop.orchestrator.stream_reader import StreamReader, parse_unit
from turnloop.providers.anthropic_messages import MessagesEventClassifier
from turnloop.providers.openai_responses import ResponsesEventClassifier


def sse(event: dict[str, object]) -> str:
    return f"event: {event['type']}\ndata: {json.dumps(event, ensure_ascii=False)}\n\n"


async def chunks_of(*parts: bytes) -> AsyncIterator[bytes]:
    for part in parts:
        yield part


async def collect(reader: StreamReader, *parts: bytes) -> list[object]:
    return [event async for event in reader.read(chunks_of(*parts))]


def test_parse_unit_ignores_comments_and_done() -> None:
    assert parse_unit(": keep-alive") is None
    assert parse_unit("data: [DONE]") is None
    assert parse_unit('event: x\ndata: {"type": "x"}') == ("x", {"type": "x"})


def test_parse_unit_joins_multiline_data() -> None:
    assert parse_unit('data: {"a":\ndata: 1}') == (None, {"a": 1})


def test_parse_unit_rejects_bad_json() -> None:
    with pytest.raises(ProtocolParseError):
        parse_unit("data: {not json")
    with pytest.raises(ProtocolParseError):
        parse_unit("data: [1, 2]")


@pytest.mark.asyncio
async def test_units_split_across_chunks() -> None:
    body = (
        sse({"type": "response.output_text.delta", "delta": "Hel", "item_id": "m1"})
        + sse({"type": "response.output_text.delta", "delta": "lo", "item_id": "m1"})
        + sse({"type": "response.output_text.done", "text": "Hello", "item_id": "m1"})
    ).encode()
    parts = [body[i : i + 7] for i in range(0, len(body), 7)]
    reader = StreamReader(ResponsesEventClassifier())
    events = await collect(reader, *parts)
    assert events == [
        TextDelta(text="Hel", item_id="m1"),
        TextDelta(text="lo", item_id="m1"),
        TextDone(text="Hello", item_id="m1"),
    ]
    assert reader.last_text == "Hello"


@pytest.mark.asyncio
async def test_multibyte_character_split_between_chunks() -> None:
    body = sse({"type": "response.output_text.delta", "delta": "café ☕"}).encode()
    cut = body.index("☕".encode()) + 1
    reader = StreamReader(ResponsesEventClassifier())
    events = await collect(reader, body[:cut], body[cut:])
    assert events == [TextDelta(text="café ☕")]


@pytest.mark.asyncio
async def test_crlf_units_and_unterminated_tail() -> None:
    body = (
        'data: {"type": "response.output_text.delta", "delta": "a"}\r\n\r\n'
        'data: {"type": "response.output_text.delta", "delta": "b"}'
    ).encode()
    reader = StreamReader(ResponsesEventClassifier())
    assert await collect(reader, body) == [TextDelta(text="a"), TextDelta(text="b")]


@pytest.mark.asyncio
async def test_malformed_unit_is_skipped() -> None:
    body = (
        "data: {broken\n\n"
        + sse({"type": "response.output_text.delta", "delta": "ok"})
    ).encode()
    reader = StreamReader(ResponsesEventClassifier())
    events = await collect(reader, body)
    assert events == [TextDelta(text="ok")]
    assert reader.skipped_units == 1


@pytest.mark.asyncio
async def test_terminal_event_records_usage_and_status() -> None:
    completed = {
        "type": "response.completed",
        "response": {
            "id": "resp_9",
            "status": "completed",
            "output": [],
            "usage": {"input_tokens": 11, "output_tokens": 4},
        },
    }
    body = (sse({"type": "response.created", "response": {"id": "resp_9"}}) + sse(completed))
    classifier = ResponsesEventClassifier()
    reader = StreamReader(classifier)
    events = await collect(reader, body.encode())
    assert events == [StatusUpdate(status="in_progress"), StatusUpdate(status="completed")]
    assert reader.terminal_status == "completed"
    assert classifier.response_id == "resp_9"
    assert classifier.usage is not None
    assert (classifier.usage.input_tokens, classifier.usage.output_tokens) == (11, 4)


@pytest.mark.asyncio
async def test_function_call_and_builtin_items() -> None:
    body = (
        sse(
            {
                "type": "response.output_item.added",
                "item": {"type": "web_search_preview", "id": "ws_1"},
            }
        )
        + sse(
            {
                "type": "response.output_item.done",
                "item": {
                    "type": "function_call",
                    "call_id": "call_1",
                    "name": "echo",
                    "arguments": '{"x":1}',
                },
            }
        )
        + sse({"type": "response.content_part.added"})
        + sse({"type": "response.brand_new_event", "value": 1})
    )
    reader = StreamReader(ResponsesEventClassifier())
    events = await collect(reader, body.encode())
    assert events[0] == ToolActivity(tool="web_search_preview", status="started")
    assert isinstance(events[1], ToolCallRequested)
    assert events[1].calls[0].call_id == "call_1"
    assert events[1].calls[0].arguments == '{"x":1}'
    assert events[2] == Unmapped(
        upstream_type="response.brand_new_event",
        payload={"type": "response.brand_new_event", "value": 1},
    )
    assert len(events) == 3


@pytest.mark.asyncio
async def test_openai_error_event_is_terminal() -> None:
    reader = StreamReader(ResponsesEventClassifier())
    events = await collect(reader, sse({"type": "error", "message": "overloaded"}).encode())
    assert events == [ErrorEvent(message="overloaded", code="STREAM_ERROR")]
    assert reader.terminal_status == "failed"


@pytest.mark.asyncio
async def test_anthropic_stream_classification() -> None:
    body = (
        sse({"type": "message_start", "message": {"id": "msg_1", "usage": {"input_tokens": 7}}})
        + sse({"type": "ping"})
        + sse({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hi"}})
        + sse({"type": "message_delta", "usage": {"output_tokens": 2}})
        + sse({"type": "message_stop"})
    )
    classifier = MessagesEventClassifier()
    reader = StreamReader(classifier)
    events = await collect(reader, body.encode())
    assert events == [
        UsageDelta(input_tokens=7),
        TextDelta(text="Hi"),
        UsageDelta(output_tokens=2),
        StatusUpdate(status="completed"),
    ]
    assert classifier.response_id == "msg_1"
    assert reader.terminal_status == "completed"
