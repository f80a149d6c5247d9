"""Normalized stream events.

Every event is a small frozen dataclass with a ``kind`` tag; ``to_frame``
turns one into the dict that is written as a single NDJSON line.
"""

import json
from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar

from turnloop.providers.base import ToolCallRequest


@dataclass(frozen=True, slots=True)
class TextDelta:
    kind: ClassVar[str] = "text_delta"
    text: str
    item_id: str | None = None


@dataclass(frozen=True, slots=True)
class TextDone:
    kind: ClassVar[str] = "text_done"
    text: str
    item_id: str | None = None


@dataclass(frozen=True, slots=True)
class ReasoningDelta:
    kind: ClassVar[str] = "reasoning_delta"
    text: str
    item_id: str | None = None


@dataclass(frozen=True, slots=True)
class ReasoningDone:
    kind: ClassVar[str] = "reasoning_done"
    text: str
    item_id: str | None = None


@dataclass(frozen=True, slots=True)
class ToolCallRequested:
    kind: ClassVar[str] = "tool_call_requested"
    calls: tuple[ToolCallRequest, ...]


@dataclass(frozen=True, slots=True)
class UsageDelta:
    kind: ClassVar[str] = "usage_delta"
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(frozen=True, slots=True)
class StatusUpdate:
    kind: ClassVar[str] = "status_update"
    status: str


@dataclass(frozen=True, slots=True)
class Interrupt:
    kind: ClassVar[str] = "interrupt"
    question: str
    call_id: str
    variable_name: str | None = None
    description: str | None = None


@dataclass(frozen=True, slots=True)
class ErrorEvent:
    kind: ClassVar[str] = "error"
    message: str
    code: str | None = None
    upstream_status: int | None = None


@dataclass(frozen=True, slots=True)
class Heartbeat:
    kind: ClassVar[str] = "heartbeat"
    elapsed_ms: int


@dataclass(frozen=True, slots=True)
class Done:
    kind: ClassVar[str] = "done"


@dataclass(frozen=True, slots=True)
class Progress:
    kind: ClassVar[str] = "progress"
    message: str
    status: str | None = None


@dataclass(frozen=True, slots=True)
class ApiStarted:
    kind: ClassVar[str] = "api_started"
    response_id: str | None
    status: str


@dataclass(frozen=True, slots=True)
class ToolStart:
    kind: ClassVar[str] = "tool_start"
    tool: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ToolEnd:
    kind: ClassVar[str] = "tool_end"
    tool: str


@dataclass(frozen=True, slots=True)
class ToolActivity:
    kind: ClassVar[str] = "tool_activity"
    tool: str
    status: str


@dataclass(frozen=True, slots=True)
class ToolLoopComplete:
    kind: ClassVar[str] = "tool_loop_complete"
    iterations: int = 0


@dataclass(frozen=True, slots=True)
class Unmapped:
    kind: ClassVar[str] = "unmapped"
    upstream_type: str
    payload: dict[str, Any] = field(default_factory=dict)


StreamEvent = (
    TextDelta
    | TextDone
    | ReasoningDelta
    | ReasoningDone
    | ToolCallRequested
    | UsageDelta
    | StatusUpdate
    | Interrupt
    | ErrorEvent
    | Heartbeat
    | Done
    | Progress
    | ApiStarted
    | ToolStart
    | ToolEnd
    | ToolActivity
    | ToolLoopComplete
    | Unmapped
)


def to_frame(event: StreamEvent) -> dict[str, Any]:
    frame: dict[str, Any] = {"type": event.kind}
    frame.update(asdict(event))
    return frame


def encode_frame(event: StreamEvent) -> str:
    return json.dumps(to_frame(event), ensure_ascii=False, separators=(",", ":")) + "\n"
