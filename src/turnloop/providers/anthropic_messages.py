"""Stateless provider adapter for the Anthropic Messages API.

There is no server-side memory and no background mode: every request replays
the most recent window of the conversation log and streams the answer
directly from the POST.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx

from turnloop.config import get_settings
from turnloop.conversations.store import ConversationStore, Message
from turnloop.errors import ConfigError, ErrorCode, TransportError, classify_upstream_error
from turnloop.events.models import (
    ErrorEvent,
    ReasoningDelta,
    StatusUpdate,
    StreamEvent,
    TextDelta,
    UsageDelta,
    Unmapped,
)
from turnloop.providers.base import STATELESS_PROFILE, ResponseSnapshot, TurnRequest, Usage

logger = logging.getLogger(__name__)

_IGNORED_EVENTS = frozenset({"ping", "content_block_start", "content_block_stop"})


class MessagesEventClassifier:
    def __init__(self) -> None:
        self.terminal_status: str | None = None
        self.response_id: str | None = None
        # Usage is reported incrementally as UsageDelta events, never at the end.
        self.usage: Usage | None = None
        self.error_message: str | None = None

    def classify(self, event_name: str | None, data: dict[str, Any]) -> StreamEvent | None:
        event_type = str(data.get("type") or event_name or "")

        if event_type == "message_start":
            message = data.get("message")
            if not isinstance(message, dict):
                return None
            self.response_id = message.get("id") or self.response_id
            usage = message.get("usage")
            input_tokens = usage.get("input_tokens") if isinstance(usage, dict) else None
            if input_tokens:
                return UsageDelta(input_tokens=int(input_tokens))
            return StatusUpdate(status="in_progress")

        if event_type == "content_block_delta":
            delta = data.get("delta")
            if not isinstance(delta, dict):
                return None
            if delta.get("type") == "text_delta":
                return TextDelta(text=str(delta.get("text") or ""))
            if delta.get("type") == "thinking_delta":
                return ReasoningDelta(text=str(delta.get("thinking") or ""))
            return None

        if event_type == "message_delta":
            usage = data.get("usage")
            output_tokens = usage.get("output_tokens") if isinstance(usage, dict) else None
            if output_tokens:
                return UsageDelta(output_tokens=int(output_tokens))
            return None

        if event_type == "message_stop":
            self.terminal_status = "completed"
            return StatusUpdate(status="completed")

        if event_type == "error":
            error = data.get("error")
            message = "stream error"
            if isinstance(error, dict) and error.get("message"):
                message = str(error["message"])
            self.terminal_status = "failed"
            self.error_message = message
            return ErrorEvent(message=message, code=ErrorCode.STREAM_ERROR.value)

        if event_type in _IGNORED_EVENTS:
            return None
        return Unmapped(upstream_type=event_type, payload=data)


class AnthropicMessagesAdapter:
    provider_id = "anthropic"
    profile = STATELESS_PROFILE

    def __init__(
        self,
        api_key: str,
        store: ConversationStore,
        *,
        history_window: int | None = None,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self._api_key = api_key
        self._store = store
        self._history_window = history_window or settings.history_window
        self._base_url = (base_url or settings.anthropic_base_url).rstrip("/")
        self._api_version = settings.anthropic_api_version
        self._default_max_tokens = settings.anthropic_default_max_tokens
        self._timeout = max(5, int(settings.upstream_timeout_seconds))
        self._transport = transport

    def supports_tools(self) -> bool:
        return self.profile.tool_calling

    def supports_background(self) -> bool:
        return self.profile.background

    def is_valid_continuity_token(self, token: str | None) -> bool:
        return False

    def build_history(self, handle_id: str) -> list[Message]:
        history = self._store.get_recent_messages(handle_id, self._history_window)
        logger.debug("Replaying %d prior messages for handle %s", len(history), handle_id)
        return history

    def new_classifier(self) -> MessagesEventClassifier:
        return MessagesEventClassifier()

    def request_body(self, request: TurnRequest) -> dict[str, Any]:
        messages = [
            {"role": message.role, "content": message.content} for message in request.history
        ]
        if isinstance(request.input, str):
            messages.append({"role": "user", "content": request.input})
        body: dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_output_tokens or self._default_max_tokens,
            "messages": messages,
            "stream": True,
        }
        if request.instructions:
            body["system"] = request.instructions
        return body

    @asynccontextmanager
    async def open_stream(
        self, request: TurnRequest, response_id: str | None = None
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        headers = {
            "x-api-key": self._api_key,
            "anthropic-version": self._api_version,
            "Content-Type": "application/json",
        }
        timeout = httpx.Timeout(self._timeout, read=None)
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                async with client.stream(
                    "POST",
                    f"{self._base_url}/messages",
                    json=self.request_body(request),
                    headers=headers,
                ) as response:
                    if response.status_code >= 400:
                        await response.aread()
                        raise classify_upstream_error(response.status_code, response.text)
                    yield response.aiter_bytes()
        except httpx.HTTPError as exc:
            raise TransportError(f"failed to reach upstream: {exc}") from exc

    async def create(self, request: TurnRequest) -> ResponseSnapshot:
        raise ConfigError("anthropic messages have no background mode")

    async def retrieve(self, response_id: str) -> ResponseSnapshot:
        raise ConfigError("anthropic messages cannot be retrieved after the fact")

    async def cancel(self, response_id: str) -> ResponseSnapshot:
        raise ConfigError("anthropic messages cannot be cancelled after the fact")
