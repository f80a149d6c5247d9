"""Streaming with an idle watchdog and a polling fallback.

One ``ResilienceWrapper.run`` call covers a single sub-turn:

1. Background-capable providers get a create call first. A response that is
   already terminal is turned into events directly and never streamed.
2. Otherwise the response is streamed. Every received chunk pushes the idle
   deadline forward; when it expires the read is abandoned.
3. After an idle abort (or a stream that could not be opened or ended early)
   the response is polled at a fixed interval until it is terminal or the
   polling budget runs out, which yields ``timed_out``.

Only one of streaming and polling is active at any time.
"""

import asyncio
import logging
from collections.abc import Callable
from contextlib import aclosing
from dataclasses import dataclass, field

from turnloop.config import Settings, get_settings
from turnloop.errors import TransportError, UpstreamError
from turnloop.events.models import (
    ApiStarted,
    Progress,
    ReasoningDone,
    StatusUpdate,
    StreamEvent,
    TextDelta,
    TextDone,
    ToolActivity,
    ToolCallRequested,
    UsageDelta,
)
from turnloop.orchestrator.stream_reader import StreamReader
from turnloop.providers.base import (
    TERMINAL_STATUSES,
    ProviderAdapter,
    ResponseSnapshot,
    ToolCallRequest,
    TurnRequest,
    Usage,
)

logger = logging.getLogger(__name__)

TIMED_OUT = "timed_out"

Sink = Callable[[StreamEvent], None]


@dataclass(slots=True)
class SubTurnResult:
    status: str
    response_id: str | None
    source: str
    text: str | None = None
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    error_message: str | None = None
    events: list[StreamEvent] = field(default_factory=list)

    @property
    def timed_out(self) -> bool:
        return self.status == TIMED_OUT


def snapshot_events(snapshot: ResponseSnapshot) -> list[StreamEvent]:
    """Terminal events equivalent to what streaming the same response yields."""
    events: list[StreamEvent] = [ReasoningDone(text=text) for text in snapshot.reasoning]
    events.extend(ToolActivity(tool=tool, status="completed") for tool in snapshot.builtin_tools)
    if snapshot.text:
        events.append(TextDone(text=snapshot.text))
    if snapshot.tool_calls:
        events.append(ToolCallRequested(calls=tuple(snapshot.tool_calls)))
    if snapshot.usage is not None:
        events.append(
            UsageDelta(
                input_tokens=snapshot.usage.input_tokens,
                output_tokens=snapshot.usage.output_tokens,
            )
        )
    events.append(StatusUpdate(status=snapshot.status))
    return events


def _result_from_snapshot(
    snapshot: ResponseSnapshot, source: str, events: list[StreamEvent]
) -> SubTurnResult:
    return SubTurnResult(
        status=snapshot.status,
        response_id=snapshot.id,
        source=source,
        text=snapshot.text,
        tool_calls=list(snapshot.tool_calls),
        usage=snapshot.usage or Usage(),
        error_message=snapshot.error_message,
        events=events,
    )


class ResilienceWrapper:
    def __init__(
        self,
        *,
        idle_timeout: float,
        poll_interval: float,
        poll_budget: float,
    ) -> None:
        self.idle_timeout = idle_timeout
        self.poll_interval = poll_interval
        self.poll_budget = poll_budget

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "ResilienceWrapper":
        settings = settings or get_settings()
        return cls(
            idle_timeout=settings.stream_idle_timeout_seconds,
            poll_interval=settings.poll_interval_seconds,
            poll_budget=settings.poll_budget_seconds,
        )

    async def run(
        self, adapter: ProviderAdapter, request: TurnRequest, sink: Sink
    ) -> SubTurnResult:
        events: list[StreamEvent] = []

        def record(event: StreamEvent) -> None:
            events.append(event)
            sink(event)

        if not adapter.supports_background():
            return await self._run_direct(adapter, request, record, events)

        snapshot = await adapter.create(request)
        record(ApiStarted(response_id=snapshot.id, status=snapshot.status))
        if snapshot.is_terminal:
            logger.info("Response %s finished before streaming", snapshot.id)
            for event in snapshot_events(snapshot):
                record(event)
            return _result_from_snapshot(snapshot, "immediate", events)
        if not snapshot.id:
            raise UpstreamError("background response returned without an id")

        reader = await self._stream(adapter, request, snapshot.id, record)
        if reader is not None and reader.terminal_status in TERMINAL_STATUSES:
            return self._result_from_reader(reader, snapshot.id, events, record)

        final = await self._poll(adapter, snapshot.id, record)
        if final is None:
            logger.warning("Polling budget exhausted for response %s", snapshot.id)
            return SubTurnResult(
                status=TIMED_OUT,
                response_id=snapshot.id,
                source="poll",
                error_message="Response took too long",
                events=events,
            )
        for event in snapshot_events(final):
            record(event)
        return _result_from_snapshot(final, "poll", events)

    async def _run_direct(
        self,
        adapter: ProviderAdapter,
        request: TurnRequest,
        record: Sink,
        events: list[StreamEvent],
    ) -> SubTurnResult:
        reader = await self._stream(adapter, request, None, record)
        if reader is None:
            # Nothing to poll without a background job.
            return SubTurnResult(
                status=TIMED_OUT,
                response_id=None,
                source="stream",
                error_message="Connection stalled",
                events=events,
            )
        result = self._result_from_reader(reader, None, events, record)
        if reader.terminal_status is None:
            result.status = "failed"
            result.error_message = "stream ended before completion"
        return result

    async def _stream(
        self,
        adapter: ProviderAdapter,
        request: TurnRequest,
        response_id: str | None,
        record: Sink,
    ) -> StreamReader | None:
        """Stream one response; returns None when the idle watchdog fired."""
        reader = StreamReader(adapter.new_classifier())
        loop = asyncio.get_running_loop()
        try:
            async with asyncio.timeout(self.idle_timeout) as idle:

                def touch(_size: int) -> None:
                    idle.reschedule(loop.time() + self.idle_timeout)

                async with adapter.open_stream(request, response_id) as chunks:
                    async with aclosing(reader.read(chunks, on_bytes=touch)) as stream:
                        async for event in stream:
                            record(event)
                            if reader.terminal_status is not None:
                                break
        except TimeoutError:
            logger.warning(
                "No stream data for %.0fs (response %s); aborting read",
                self.idle_timeout,
                response_id,
            )
            return None
        except UpstreamError as exc:
            if response_id is None:
                raise
            logger.warning("Stream for %s unavailable (%s); polling instead", response_id, exc)
            return None
        if reader.skipped_units:
            logger.info("Skipped %d malformed stream units", reader.skipped_units)
        return reader

    @staticmethod
    def _result_from_reader(
        reader: StreamReader,
        response_id: str | None,
        events: list[StreamEvent],
        record: Sink,
    ) -> SubTurnResult:
        classifier = reader.classifier
        if classifier.usage is not None:
            record(
                UsageDelta(
                    input_tokens=classifier.usage.input_tokens,
                    output_tokens=classifier.usage.output_tokens,
                )
            )
        usage = Usage()
        tool_calls: list[ToolCallRequest] = []
        deltas: list[str] = []
        for event in events:
            if isinstance(event, UsageDelta):
                usage.add(Usage(event.input_tokens, event.output_tokens))
            elif isinstance(event, ToolCallRequested):
                tool_calls.extend(event.calls)
            elif isinstance(event, TextDelta):
                deltas.append(event.text)
        text = reader.last_text if reader.last_text is not None else ("".join(deltas) or None)
        return SubTurnResult(
            status=reader.terminal_status or "incomplete",
            response_id=classifier.response_id or response_id,
            source="stream",
            text=text,
            tool_calls=tool_calls,
            usage=usage,
            error_message=classifier.error_message,
            events=events,
        )

    async def _poll(
        self, adapter: ProviderAdapter, response_id: str, record: Sink
    ) -> ResponseSnapshot | None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        logger.info("Falling back to polling for response %s", response_id)
        while True:
            elapsed = loop.time() - started
            if elapsed >= self.poll_budget:
                return None
            try:
                snapshot = await adapter.retrieve(response_id)
            except (TransportError, UpstreamError) as exc:
                logger.warning("Polling %s failed: %s", response_id, exc)
            else:
                logger.info(
                    "Polling %s: status=%s elapsed=%ds", response_id, snapshot.status, elapsed
                )
                if snapshot.is_terminal:
                    return snapshot
                record(
                    Progress(
                        message=f"Processing... ({int(elapsed)}s elapsed)",
                        status=snapshot.status,
                    )
                )
            await asyncio.sleep(self.poll_interval)
