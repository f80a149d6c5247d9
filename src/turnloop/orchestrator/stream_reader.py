"""Server-sent-event reader.

Buffers raw bytes until a complete blank-line-delimited unit is available,
decodes its ``data:`` payload and hands it to a provider classifier which
maps it onto at most one StreamEvent. Units that do not decode are logged
and skipped.
"""

import codecs
import json
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any, Protocol

from turnloop.errors import ProtocolParseError
from turnloop.events.models import StreamEvent, TextDone
from turnloop.providers.base import Usage

logger = logging.getLogger(__name__)


class EventClassifier(Protocol):
    """Per-read classification state for one upstream event vocabulary."""

    terminal_status: str | None
    response_id: str | None
    usage: Usage | None
    error_message: str | None

    def classify(self, event_name: str | None, data: dict[str, Any]) -> StreamEvent | None: ...


def _split_units(buffer: str) -> tuple[list[str], str]:
    normalized = buffer.replace("\r\n", "\n")
    if "\n\n" not in normalized:
        return [], normalized
    *units, rest = normalized.split("\n\n")
    return units, rest


def parse_unit(unit: str) -> tuple[str | None, dict[str, Any]] | None:
    """Decode one SSE unit into ``(event_name, payload)``.

    Returns None for comments, keep-alives and ``[DONE]``; raises
    ProtocolParseError when the data is not a JSON object.
    """
    event_name: str | None = None
    data_lines: list[str] = []
    for line in unit.split("\n"):
        if not line or line.startswith(":"):
            continue
        field_name, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if field_name == "event":
            event_name = value.strip() or None
        elif field_name == "data":
            data_lines.append(value)
    data = "\n".join(data_lines).strip()
    if not data or data == "[DONE]":
        return None
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as exc:
        raise ProtocolParseError(f"invalid JSON in stream unit: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise ProtocolParseError("stream unit payload is not an object")
    return event_name, payload


class StreamReader:
    def __init__(self, classifier: EventClassifier) -> None:
        self.classifier = classifier
        self.last_text: str | None = None
        self.skipped_units = 0

    @property
    def terminal_status(self) -> str | None:
        return self.classifier.terminal_status

    def _classify(self, unit: str) -> StreamEvent | None:
        try:
            parsed = parse_unit(unit)
        except ProtocolParseError as exc:
            self.skipped_units += 1
            logger.warning("Skipping malformed stream unit: %s (%r)", exc, unit[:200])
            return None
        if parsed is None:
            return None
        event = self.classifier.classify(*parsed)
        if isinstance(event, TextDone):
            self.last_text = event.text
        return event

    async def read(
        self,
        chunks: AsyncIterator[bytes],
        on_bytes: Callable[[int], None] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        buffer = ""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        async for chunk in chunks:
            if not chunk:
                continue
            if on_bytes is not None:
                on_bytes(len(chunk))
            buffer += decoder.decode(chunk)
            units, buffer = _split_units(buffer)
            for unit in units:
                event = self._classify(unit)
                if event is not None:
                    yield event
        buffer += decoder.decode(b"", final=True)
        if buffer.strip():
            event = self._classify(buffer)
            if event is not None:
                yield event
