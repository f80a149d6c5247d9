"""Outward event channel for one turn.

The emitter owns an unbounded queue drained by ``frames()``. ``emit`` never
blocks, so it can be called from synchronous callbacks (stream sinks, tool
hooks) as well as from coroutines.

Lifecycle:

* ``start()`` begins the heartbeat task once the turn is admitted.
* ``close()`` stops heartbeats, enqueues the trailing ``Done`` frame and ends
  the frame iterator. Further calls are no-ops.
* ``dispose()`` is what a caller disconnect does: nothing else is delivered,
  but the turn that feeds the emitter keeps running and persists its result.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator

from turnloop.events.models import Done, Heartbeat, StreamEvent, encode_frame

logger = logging.getLogger(__name__)

_END = object()


class EventEmitter:
    def __init__(self, heartbeat_interval: float | None = None) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._heartbeat_interval = heartbeat_interval
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._closed = False
        self._disposed = False
        self._started_at = time.monotonic()

    def start(self) -> None:
        if self._heartbeat_task is not None or self._closed or self._disposed:
            return
        self._started_at = time.monotonic()
        if self._heartbeat_interval and self._heartbeat_interval > 0:
            self._heartbeat_task = asyncio.get_running_loop().create_task(
                self._beat(self._heartbeat_interval)
            )

    async def _beat(self, interval: float) -> None:
        while not self.is_closed():
            await asyncio.sleep(interval)
            elapsed_ms = int((time.monotonic() - self._started_at) * 1000)
            self.emit(Heartbeat(elapsed_ms=elapsed_ms))

    def _stop_heartbeat(self) -> None:
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task is not None and not task.done():
            task.cancel()

    def emit(self, event: StreamEvent) -> bool:
        """Queue an event; returns False once the emitter is closed or disposed."""
        if self._closed or self._disposed:
            return False
        self._queue.put_nowait(event)
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._stop_heartbeat()
        if not self._disposed:
            self._queue.put_nowait(Done())
        self._closed = True
        self._queue.put_nowait(_END)

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._stop_heartbeat()
        logger.info("Event emitter disposed; turn continues without a listener")

    def is_closed(self) -> bool:
        return self._closed or self._disposed

    async def events(self) -> AsyncIterator[StreamEvent]:
        while True:
            item = await self._queue.get()
            if item is _END:
                return
            if self._disposed:
                continue
            yield item  # type: ignore[misc]

    async def frames(self) -> AsyncIterator[str]:
        """NDJSON lines for a streaming HTTP body; always ends with a Done frame."""
        try:
            async for event in self.events():
                yield encode_frame(event)
        finally:
            # Reaching here without a close means the client went away.
            if not self._closed:
                self.dispose()
