"""Turn state machine.

Idle -> Requesting -> Streaming -> (ToolDispatch -> Requesting)* -> terminal,
where terminal is one of Completed, Failed, Interrupted or TimedOut.

The controller owns the conversation handle for the duration of a turn. The
continuity token is written only when the turn completes; an interrupted,
failed or timed-out turn leaves it exactly as it was (apart from the
stale-token recovery, which clears it before its single retry).
"""

import logging
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any

from turnloop.config import Settings, get_settings
from turnloop.conversations.store import ConversationHandle, ConversationStore, Message
from turnloop.errors import (
    ERROR_METADATA,
    ErrorCode,
    TurnloopError,
    UpstreamError,
    UpstreamErrorKind,
)
from turnloop.events.emitter import EventEmitter
from turnloop.events.models import (
    ErrorEvent,
    Interrupt,
    Progress,
    StreamEvent,
    TextDone,
    ToolLoopComplete,
)
from turnloop.logging import bind_context, clear_context
from turnloop.orchestrator import request_builder
from turnloop.orchestrator.family import build_family_index
from turnloop.orchestrator.request_builder import RequestOptions
from turnloop.orchestrator.resilience import ResilienceWrapper, SubTurnResult
from turnloop.providers.base import ProviderAdapter, ToolCallResult, Usage
from turnloop.providers.models import model_capabilities
from turnloop.tools.dispatcher import InterruptRequested, ToolDispatcher
from turnloop.tools.registry import ToolContext

logger = logging.getLogger(__name__)

TOOL_LOOP_NOT_CONVERGED = "tool loop did not converge"


class TurnState(StrEnum):
    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    TOOL_DISPATCH = "tool_dispatch"
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"
    TIMED_OUT = "timed_out"


TERMINAL_STATES = frozenset(
    {TurnState.COMPLETED, TurnState.FAILED, TurnState.INTERRUPTED, TurnState.TIMED_OUT}
)


@dataclass(slots=True)
class TurnInput:
    family_id: str
    participant_id: str
    purpose: str
    user_message: str
    model: str
    tools: list[dict[str, Any]] = field(default_factory=list)
    instructions: str = ""
    reasoning_effort: str | None = None
    max_output_tokens: int | None = None
    tenant_id: str | None = None
    family_tree: dict[str, Any] | None = None


@dataclass(slots=True)
class TurnOutcome:
    turn_id: str
    handle_id: str
    state: TurnState = TurnState.IDLE
    text: str | None = None
    response_id: str | None = None
    requests_sent: int = 0
    tool_rounds: int = 0
    usage: Usage = field(default_factory=Usage)
    error: ErrorEvent | None = None
    interrupt: InterruptRequested | None = None


class LoopController:
    def __init__(
        self,
        adapter: ProviderAdapter,
        store: ConversationStore,
        dispatcher: ToolDispatcher,
        *,
        wrapper: ResilienceWrapper | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._adapter = adapter
        self._store = store
        self._dispatcher = dispatcher
        self._wrapper = wrapper or ResilienceWrapper.from_settings(self._settings)
        self.max_tool_iterations = self._settings.max_tool_iterations

    @staticmethod
    def _transition(outcome: TurnOutcome, state: TurnState) -> None:
        if outcome.state is state:
            return
        logger.debug("Turn %s: %s -> %s", outcome.turn_id, outcome.state, state)
        outcome.state = state

    async def run(self, turn: TurnInput, emitter: EventEmitter) -> TurnOutcome:
        emitter.start()
        try:
            handle = self._store.get_or_create_handle(
                turn.family_id, turn.participant_id, turn.purpose, self._adapter.provider_id
            )
            turn_id = self._store.start_turn(handle.id, turn.model)
        except ValueError as exc:
            logger.warning("Rejected turn for family %s: %s", turn.family_id, exc)
            return self._abort(emitter, str(exc), ErrorCode.INVALID_FIELD)
        except Exception:
            logger.exception("Could not open turn for family %s", turn.family_id)
            code = ErrorCode.INTERNAL_ERROR
            return self._abort(emitter, ERROR_METADATA[code].user_message, code)
        bind_context(turn_id=turn_id, family_id=turn.family_id, handle_id=handle.id)
        outcome = TurnOutcome(turn_id=turn_id, handle_id=handle.id)
        try:
            await self._drive(turn, handle, outcome, emitter)
        except UpstreamError as exc:
            logger.warning("Upstream failure (%s, status %s): %s", exc.kind, exc.status_code, exc)
            self._fail(
                outcome,
                emitter,
                str(exc),
                exc.code,
                upstream_status=exc.status_code or None,
            )
        except TurnloopError as exc:
            logger.warning("Turn failed: %s", exc)
            self._fail(outcome, emitter, str(exc), exc.code)
        except Exception:
            logger.exception("Turn %s crashed", turn_id)
            self._fail(
                outcome,
                emitter,
                ERROR_METADATA[ErrorCode.INTERNAL_ERROR].user_message,
                ErrorCode.INTERNAL_ERROR,
            )
        finally:
            try:
                self._persist(turn, handle, outcome)
            finally:
                emitter.close()
                clear_context()
        logger.info(
            "Turn %s finished: state=%s requests=%d tool_rounds=%d",
            turn_id,
            outcome.state,
            outcome.requests_sent,
            outcome.tool_rounds,
        )
        return outcome

    def _abort(self, emitter: EventEmitter, message: str, code: ErrorCode) -> TurnOutcome:
        """End a turn that never got a handle or ledger row."""
        outcome = TurnOutcome(turn_id="", handle_id="")
        try:
            self._fail(outcome, emitter, message, code)
        finally:
            emitter.close()
        return outcome

    def _fail(
        self,
        outcome: TurnOutcome,
        emitter: EventEmitter,
        message: str,
        code: ErrorCode,
        *,
        upstream_status: int | None = None,
        state: TurnState = TurnState.FAILED,
        already_emitted: bool = False,
    ) -> None:
        self._transition(outcome, state)
        outcome.error = ErrorEvent(
            message=message or ERROR_METADATA[code].user_message,
            code=code.value,
            upstream_status=upstream_status,
        )
        if not already_emitted:
            emitter.emit(outcome.error)

    def _persist(self, turn: TurnInput, handle: ConversationHandle, outcome: TurnOutcome) -> None:
        if outcome.state is TurnState.COMPLETED:
            if self._adapter.profile.server_memory:
                if self._adapter.is_valid_continuity_token(outcome.response_id):
                    self._store.upsert_continuity_token(handle.id, outcome.response_id)
            else:
                self._store.append_messages(
                    handle.id,
                    [
                        Message(role="user", content=turn.user_message),
                        Message(role="assistant", content=outcome.text or ""),
                    ],
                )
        if outcome.state not in TERMINAL_STATES:
            self._transition(outcome, TurnState.FAILED)
        self._store.finish_turn(
            outcome.turn_id,
            outcome.state.value,
            response_id=outcome.response_id,
            input_tokens=outcome.usage.input_tokens,
            output_tokens=outcome.usage.output_tokens,
            error_code=outcome.error.code if outcome.error else None,
            error_message=outcome.error.message if outcome.error else None,
        )

    async def _drive(
        self,
        turn: TurnInput,
        handle: ConversationHandle,
        outcome: TurnOutcome,
        emitter: EventEmitter,
    ) -> None:
        adapter = self._adapter
        tools = (
            request_builder.prepare_tools(turn.tools, turn.purpose)
            if adapter.supports_tools()
            else []
        )
        capabilities = model_capabilities(turn.model, self._settings.default_max_output_tokens)
        max_output_tokens = turn.max_output_tokens or capabilities.max_output_tokens
        effort = request_builder.resolve_reasoning_effort(turn.reasoning_effort, capabilities)
        history = [] if adapter.profile.server_memory else adapter.build_history(handle.id)
        context = ToolContext(
            family_id=turn.family_id,
            participant_id=turn.participant_id,
            purpose=turn.purpose,
            tenant_id=turn.tenant_id,
            family_index=build_family_index(turn.family_tree).nodes,
        )

        def options(payload: str | list[ToolCallResult]) -> RequestOptions:
            return RequestOptions(
                model=turn.model,
                input=payload,
                background_mode=adapter.supports_background(),
                max_output_tokens=max_output_tokens,
                reasoning_effort=effort,
                history=history if isinstance(payload, str) else [],
                token_shape=adapter.is_valid_continuity_token,
            )

        last_done_text: list[str | None] = [None]

        def sink(event: StreamEvent) -> None:
            if outcome.state is TurnState.REQUESTING:
                self._transition(outcome, TurnState.STREAMING)
            if isinstance(event, TextDone):
                last_done_text[0] = event.text
            emitter.emit(event)

        request = request_builder.build(
            turn.instructions, tools, handle.continuity_token, options(turn.user_message)
        )
        emitter.emit(Progress(message="Sending request..."))
        stale_retry_used = False
        while True:
            self._transition(outcome, TurnState.REQUESTING)
            outcome.requests_sent += 1
            try:
                result = await self._wrapper.run(adapter, request, sink)
            except UpstreamError as exc:
                if (
                    exc.kind is UpstreamErrorKind.INVALID_CONTINUITY
                    and request.continuity_token
                    and not stale_retry_used
                ):
                    stale_retry_used = True
                    logger.warning(
                        "Continuity token %s rejected (%s); clearing and retrying once",
                        request.continuity_token,
                        exc,
                    )
                    self._store.upsert_continuity_token(handle.id, None)
                    request = replace(request, continuity_token=None)
                    continue
                raise

            outcome.usage.add(result.usage)
            outcome.response_id = result.response_id or outcome.response_id
            if result.text:
                outcome.text = result.text

            if result.status != "completed":
                self._emit_final_text(outcome, emitter, last_done_text[0])
                self._fail_sub_turn(outcome, emitter, result)
                return

            if not result.tool_calls:
                break

            if outcome.tool_rounds >= self.max_tool_iterations:
                logger.warning(
                    "Tool loop still requesting tools after %d rounds", outcome.tool_rounds
                )
                self._emit_final_text(outcome, emitter, last_done_text[0])
                self._fail(
                    outcome, emitter, TOOL_LOOP_NOT_CONVERGED, ErrorCode.TOOL_LOOP_LIMIT
                )
                return

            self._transition(outcome, TurnState.TOOL_DISPATCH)
            logger.info(
                "Tool round %d: %d call(s)", outcome.tool_rounds + 1, len(result.tool_calls)
            )
            dispatched = await self._dispatcher.dispatch(result.tool_calls, context, sink)
            outcome.tool_rounds += 1
            if dispatched.interrupt is not None:
                interrupt = dispatched.interrupt
                outcome.interrupt = interrupt
                emitter.emit(
                    Interrupt(
                        question=interrupt.question,
                        call_id=interrupt.call_id,
                        variable_name=interrupt.variable_name,
                        description=interrupt.description,
                    )
                )
                self._transition(outcome, TurnState.INTERRUPTED)
                return

            request = request_builder.build(
                turn.instructions, tools, result.response_id, options(dispatched.results)
            )

        if outcome.tool_rounds:
            emitter.emit(ToolLoopComplete(iterations=outcome.tool_rounds))
        self._emit_final_text(outcome, emitter, last_done_text[0])
        self._transition(outcome, TurnState.COMPLETED)

    @staticmethod
    def _emit_final_text(
        outcome: TurnOutcome, emitter: EventEmitter, last_done_text: str | None
    ) -> None:
        if outcome.text and outcome.text != last_done_text:
            emitter.emit(TextDone(text=outcome.text))

    def _fail_sub_turn(
        self, outcome: TurnOutcome, emitter: EventEmitter, result: SubTurnResult
    ) -> None:
        already_emitted = any(isinstance(event, ErrorEvent) for event in result.events)
        if result.timed_out:
            code = ErrorCode.POLL_TIMEOUT if result.source == "poll" else ErrorCode.IDLE_TIMEOUT
            self._fail(
                outcome,
                emitter,
                result.error_message or ERROR_METADATA[code].user_message,
                code,
                state=TurnState.TIMED_OUT,
            )
            return
        code = ErrorCode.CANCELLED if result.status == "cancelled" else ErrorCode.API_CALL_FAILED
        self._fail(
            outcome,
            emitter,
            result.error_message or f"Request {result.status}",
            code,
            already_emitted=already_emitted,
        )
