"""Provider contracts."""

from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal, Protocol

from turnloop.conversations.store import Message

if TYPE_CHECKING:
    from turnloop.orchestrator.stream_reader import EventClassifier

TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled", "incomplete"})


@dataclass(frozen=True, slots=True)
class ToolCallRequest:
    call_id: str
    name: str
    arguments: str = "{}"


@dataclass(frozen=True, slots=True)
class ToolCallResult:
    call_id: str
    output: str

    def to_input_item(self) -> dict[str, str]:
        return {"type": "function_call_output", "call_id": self.call_id, "output": self.output}


@dataclass(slots=True)
class TurnRequest:
    model: str
    instructions: str
    input: str | list[ToolCallResult]
    tools: list[dict[str, Any]] = field(default_factory=list)
    continuity_token: str | None = None
    background_mode: bool = False
    max_output_tokens: int | None = None
    reasoning_effort: str | None = None
    history: list[Message] = field(default_factory=list)


@dataclass(slots=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    def add(self, other: "Usage") -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens


@dataclass(slots=True)
class ResponseSnapshot:
    """Normalized view of one upstream response object (initial or polled)."""

    id: str | None
    status: str
    text: str | None = None
    reasoning: list[str] = field(default_factory=list)
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    builtin_tools: list[str] = field(default_factory=list)
    usage: Usage | None = None
    error_message: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True, slots=True)
class ProviderProfile:
    name: Literal["A", "B"]
    streaming: bool
    tool_calling: bool
    background: bool
    server_memory: bool


STATEFUL_PROFILE = ProviderProfile(
    name="A", streaming=True, tool_calling=True, background=True, server_memory=True
)
STATELESS_PROFILE = ProviderProfile(
    name="B", streaming=True, tool_calling=False, background=False, server_memory=False
)


class ProviderAdapter(Protocol):
    provider_id: str
    profile: ProviderProfile

    def supports_tools(self) -> bool: ...

    def supports_background(self) -> bool: ...

    def is_valid_continuity_token(self, token: str | None) -> bool: ...

    def build_history(self, handle_id: str) -> list[Message]: ...

    async def create(self, request: TurnRequest) -> ResponseSnapshot: ...

    def open_stream(
        self, request: TurnRequest, response_id: str | None
    ) -> AbstractAsyncContextManager[AsyncIterator[bytes]]: ...

    def new_classifier(self) -> "EventClassifier": ...

    async def retrieve(self, response_id: str) -> ResponseSnapshot: ...

    async def cancel(self, response_id: str) -> ResponseSnapshot: ...
