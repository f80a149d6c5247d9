import asyncio
import json

import pytest

from turnloop.events.emitter import EventEmitter
from turnloop.events.models import (
    Done,
    ErrorEvent,
    Heartbeat,
    TextDelta,
    ToolCallRequested,
    Unmapped,
    encode_frame,
    to_frame,
)
from turnloop.providers.base import ToolCallRequest


def test_frames_are_tagged_snake_case() -> None:
    assert to_frame(TextDelta(text="hi")) == {"type": "text_delta", "text": "hi", "item_id": None}
    assert to_frame(Done()) == {"type": "done"}
    frame = to_frame(Unmapped(upstream_type="response.new", payload={"a": 1}))
    assert frame["type"] == "unmapped"
    assert frame["upstream_type"] == "response.new"


def test_encode_frame_is_one_json_line() -> None:
    line = encode_frame(
        ToolCallRequested(calls=(ToolCallRequest(call_id="c1", name="echo", arguments="{}"),))
    )
    assert line.endswith("\n")
    assert line.count("\n") == 1
    assert json.loads(line) == {
        "type": "tool_call_requested",
        "calls": [{"call_id": "c1", "name": "echo", "arguments": "{}"}],
    }


@pytest.mark.asyncio
async def test_close_is_idempotent_and_ends_with_done() -> None:
    emitter = EventEmitter()
    emitter.emit(TextDelta(text="a"))
    emitter.emit(ErrorEvent(message="boom", code="API_CALL_FAILED"))
    emitter.close()
    emitter.close()
    assert emitter.emit(TextDelta(text="late")) is False
    frames = [json.loads(line) async for line in emitter.frames()]
    assert [frame["type"] for frame in frames] == ["text_delta", "error", "done"]


@pytest.mark.asyncio
async def test_dispose_drops_pending_frames() -> None:
    emitter = EventEmitter()
    emitter.emit(TextDelta(text="a"))
    emitter.dispose()
    assert emitter.is_closed()
    assert emitter.emit(TextDelta(text="b")) is False
    emitter.close()
    assert [event async for event in emitter.events()] == []


@pytest.mark.asyncio
async def test_heartbeat_runs_until_close() -> None:
    emitter = EventEmitter(heartbeat_interval=0.01)
    emitter.start()
    await asyncio.sleep(0.05)
    emitter.close()
    events = [event async for event in emitter.events()]
    beats = [event for event in events if isinstance(event, Heartbeat)]
    assert beats
    assert all(beat.elapsed_ms >= 0 for beat in beats)
    assert events[-1] == Done()


@pytest.mark.asyncio
async def test_consumer_going_away_disposes() -> None:
    emitter = EventEmitter()
    emitter.emit(TextDelta(text="a"))
    emitter.emit(TextDelta(text="b"))
    frames = emitter.frames()
    first = await frames.__anext__()
    assert json.loads(first)["text"] == "a"
    await frames.aclose()
    assert emitter.is_closed()
    assert emitter.emit(TextDelta(text="c")) is False


@pytest.mark.asyncio
async def test_no_heartbeat_without_interval() -> None:
    for interval in (None, 0):
        emitter = EventEmitter(heartbeat_interval=interval)
        emitter.start()
        await asyncio.sleep(0.02)
        emitter.close()
        assert [event async for event in emitter.events()] == [Done()]
