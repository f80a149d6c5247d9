"""Sequential tool-call dispatch.

Calls run one at a time in the order the model produced them. A tool that
raises gets ``{"error": message}`` as its result so the model can react. A
result carrying the interrupt marker stops the batch.
"""

import json
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from turnloop.events.models import StreamEvent, ToolEnd, ToolStart
from turnloop.providers.base import ToolCallRequest, ToolCallResult
from turnloop.tools.registry import ToolContext, ToolRegistry

logger = logging.getLogger(__name__)

INTERRUPT_KEY = "__interrupt"
INTERRUPT_USER_INPUT = "user_input_required"

DISPATCH_MODES = ("registry", "legacy")


@dataclass(frozen=True, slots=True)
class InterruptRequested:
    call_id: str
    question: str
    variable_name: str | None = None
    description: str | None = None


@dataclass(slots=True)
class DispatchOutcome:
    results: list[ToolCallResult] = field(default_factory=list)
    interrupt: InterruptRequested | None = None


class ToolExecutor(Protocol):
    async def execute(self, name: str, arguments: dict[str, Any], context: ToolContext) -> Any: ...


LegacyHandler = Callable[[str, dict[str, Any], ToolContext], Awaitable[str]]


class LegacyToolExecutor:
    """Single switch-style handler returning pre-serialized JSON strings."""

    def __init__(self, handler: LegacyHandler) -> None:
        self._handler = handler

    async def execute(self, name: str, arguments: dict[str, Any], context: ToolContext) -> Any:
        return await self._handler(name, arguments, context)


def parse_arguments(raw: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw) if raw else {}
    except json.JSONDecodeError:
        logger.warning("Tool arguments are not valid JSON; using {}: %r", raw[:200])
        return {}
    return parsed if isinstance(parsed, dict) else {}


def serialize_result(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, separators=(",", ":"), default=str)


def detect_interrupt(result: Any, call_id: str) -> InterruptRequested | None:
    payload = result
    if isinstance(result, str):
        try:
            payload = json.loads(result)
        except json.JSONDecodeError:
            return None
    if not isinstance(payload, dict) or payload.get(INTERRUPT_KEY) != INTERRUPT_USER_INPUT:
        return None
    return InterruptRequested(
        call_id=call_id,
        question=str(payload.get("question") or ""),
        variable_name=payload.get("variable_name"),
        description=payload.get("description"),
    )


class ToolDispatcher:
    def __init__(self, executor: ToolExecutor, *, mode: str = "registry") -> None:
        self._executor = executor
        self.mode = mode

    async def dispatch(
        self,
        calls: Sequence[ToolCallRequest],
        context: ToolContext,
        sink: Callable[[StreamEvent], None] | None = None,
    ) -> DispatchOutcome:
        outcome = DispatchOutcome()
        for call in calls:
            arguments = parse_arguments(call.arguments)
            if sink is not None:
                sink(ToolStart(tool=call.name, args=arguments))
            try:
                result = await self._executor.execute(call.name, arguments, context)
            except Exception as exc:
                logger.exception("Tool %s failed (call %s)", call.name, call.call_id)
                result = {"error": str(exc) or exc.__class__.__name__}
            else:
                interrupt = detect_interrupt(result, call.call_id)
                if interrupt is not None:
                    logger.info("Tool %s requested user input; pausing", call.name)
                    outcome.interrupt = interrupt
                    return outcome
            if sink is not None:
                sink(ToolEnd(tool=call.name))
            outcome.results.append(
                ToolCallResult(call_id=call.call_id, output=serialize_result(result))
            )
        return outcome


def build_dispatcher(
    mode: str,
    registry: ToolRegistry,
    legacy_handler: LegacyHandler | None = None,
) -> ToolDispatcher:
    """Pick the dispatch path once, at construction time."""
    if mode not in DISPATCH_MODES:
        raise ValueError(f"unknown tool dispatch mode '{mode}'")
    if mode == "legacy":
        if legacy_handler is None:
            raise ValueError("legacy tool dispatch needs a handler")
        return ToolDispatcher(LegacyToolExecutor(legacy_handler), mode="legacy")
    return ToolDispatcher(registry, mode="registry")
