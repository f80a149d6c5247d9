"""Stateful provider adapter for the OpenAI Responses API.

Requests are created in background mode with ``store=true`` so that the
returned response id doubles as the continuity token for the next turn and
as the job handle for streaming resumption and polling.
"""

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx

from turnloop.config import get_settings
from turnloop.conversations.store import Message
from turnloop.errors import ErrorCode, TransportError, UpstreamError, classify_upstream_error
from turnloop.events.models import (
    ErrorEvent,
    ReasoningDelta,
    ReasoningDone,
    StatusUpdate,
    StreamEvent,
    TextDelta,
    TextDone,
    ToolActivity,
    ToolCallRequested,
    Unmapped,
)
from turnloop.providers.base import (
    STATEFUL_PROFILE,
    TERMINAL_STATUSES,
    ResponseSnapshot,
    ToolCallRequest,
    TurnRequest,
    Usage,
)

logger = logging.getLogger(__name__)

RESPONSE_TOKEN_PREFIX = "resp_"
BUILTIN_TOOL_TYPES = frozenset({"file_search", "web_search_preview", "code_interpreter"})

_LIFECYCLE_EVENTS = frozenset(
    {"response.created", "response.queued", "response.in_progress"}
)
_TERMINAL_EVENTS = {
    "response.completed": "completed",
    "response.failed": "failed",
    "response.cancelled": "cancelled",
    "response.incomplete": "incomplete",
}
_IGNORED_EVENTS = frozenset(
    {
        "response.content_part.added",
        "response.content_part.done",
        "response.output_text.annotation.added",
        "response.reasoning_summary_part.added",
        "response.reasoning_summary_part.done",
        "response.function_call_arguments.delta",
        "response.function_call_arguments.done",
    }
)
_BUILTIN_CALL_PREFIXES = (
    "response.file_search_call.",
    "response.web_search_call.",
    "response.code_interpreter_call.",
)


def is_response_token(token: str | None) -> bool:
    return isinstance(token, str) and token.startswith(RESPONSE_TOKEN_PREFIX) and len(token) > 5


def _usage_from(raw: object) -> Usage | None:
    if not isinstance(raw, dict):
        return None
    return Usage(
        input_tokens=int(raw.get("input_tokens") or 0),
        output_tokens=int(raw.get("output_tokens") or 0),
    )


def _tool_call_from_item(item: dict[str, Any]) -> ToolCallRequest | None:
    call_id = item.get("call_id") or item.get("id")
    name = item.get("name")
    if not isinstance(call_id, str) or not isinstance(name, str) or not name:
        return None
    arguments = item.get("arguments")
    if isinstance(arguments, dict):
        arguments = json.dumps(arguments)
    elif not isinstance(arguments, str):
        arguments = "{}"
    return ToolCallRequest(call_id=call_id, name=name, arguments=arguments)


def parse_response_snapshot(payload: dict[str, Any]) -> ResponseSnapshot:
    """Extract text, reasoning, tool calls and usage from a response object."""
    text: str | None = None
    reasoning: list[str] = []
    tool_calls: list[ToolCallRequest] = []
    builtin_tools: list[str] = []
    output = payload.get("output")
    for item in output if isinstance(output, list) else []:
        if not isinstance(item, dict):
            continue
        item_type = item.get("type")
        if item_type == "message":
            for part in item.get("content") or []:
                if (
                    isinstance(part, dict)
                    and part.get("type") == "output_text"
                    and part.get("text")
                ):
                    text = str(part["text"])
        elif item_type == "reasoning":
            for part in item.get("summary") or []:
                if isinstance(part, dict) and part.get("text"):
                    reasoning.append(str(part["text"]))
        elif item_type == "function_call":
            call = _tool_call_from_item(item)
            if call is not None:
                tool_calls.append(call)
        elif item_type in BUILTIN_TOOL_TYPES:
            builtin_tools.append(str(item_type))

    error_message: str | None = None
    error = payload.get("error")
    if isinstance(error, dict) and error.get("message"):
        error_message = str(error["message"])
    elif payload.get("incomplete_details"):
        error_message = f"response incomplete: {payload['incomplete_details']}"

    response_id = payload.get("id")
    return ResponseSnapshot(
        id=str(response_id) if response_id else None,
        status=str(payload.get("status") or "unknown"),
        text=text,
        reasoning=reasoning,
        tool_calls=tool_calls,
        builtin_tools=builtin_tools,
        usage=_usage_from(payload.get("usage")),
        error_message=error_message,
    )


class ResponsesEventClassifier:
    """Maps Responses API stream events onto StreamEvents."""

    def __init__(self) -> None:
        self.terminal_status: str | None = None
        self.response_id: str | None = None
        self.usage: Usage | None = None
        self.error_message: str | None = None

    def classify(self, event_name: str | None, data: dict[str, Any]) -> StreamEvent | None:
        event_type = str(data.get("type") or event_name or "")
        response = data.get("response")

        if event_type in _LIFECYCLE_EVENTS:
            if isinstance(response, dict):
                self.response_id = response.get("id") or self.response_id
                return StatusUpdate(status=str(response.get("status") or "in_progress"))
            return None

        if event_type in _TERMINAL_EVENTS:
            status = _TERMINAL_EVENTS[event_type]
            if isinstance(response, dict):
                snapshot = parse_response_snapshot(response)
                self.response_id = snapshot.id or self.response_id
                self.usage = snapshot.usage
                self.error_message = snapshot.error_message
                if snapshot.status in TERMINAL_STATUSES:
                    status = snapshot.status
            self.terminal_status = status
            return StatusUpdate(status=status)

        if event_type == "response.output_text.delta":
            return TextDelta(text=str(data.get("delta") or ""), item_id=data.get("item_id"))
        if event_type == "response.output_text.done":
            return TextDone(text=str(data.get("text") or ""), item_id=data.get("item_id"))
        if event_type == "response.reasoning_summary_text.delta":
            return ReasoningDelta(text=str(data.get("delta") or ""), item_id=data.get("item_id"))
        if event_type == "response.reasoning_summary_text.done":
            return ReasoningDone(text=str(data.get("text") or ""), item_id=data.get("item_id"))

        if event_type in {"response.output_item.added", "response.output_item.done"}:
            item = data.get("item")
            if not isinstance(item, dict):
                return None
            item_type = item.get("type")
            done = event_type.endswith(".done")
            if item_type in BUILTIN_TOOL_TYPES:
                return ToolActivity(tool=str(item_type), status="completed" if done else "started")
            if item_type == "function_call" and done:
                call = _tool_call_from_item(item)
                return ToolCallRequested(calls=(call,)) if call is not None else None
            return None

        if event_type == "error":
            message = str(data.get("message") or "stream error")
            self.terminal_status = "failed"
            self.error_message = message
            return ErrorEvent(message=message, code=ErrorCode.STREAM_ERROR.value)

        if event_type in _IGNORED_EVENTS or event_type.startswith(_BUILTIN_CALL_PREFIXES):
            return None
        return Unmapped(upstream_type=event_type, payload=data)


class OpenAIResponsesAdapter:
    provider_id = "openai"
    profile = STATEFUL_PROFILE

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str | None = None,
        timeout_seconds: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self._api_key = api_key
        self._base_url = (base_url or settings.openai_base_url).rstrip("/")
        self._timeout = max(5, int(timeout_seconds or settings.upstream_timeout_seconds))
        self._transport = transport

    def supports_tools(self) -> bool:
        return self.profile.tool_calling

    def supports_background(self) -> bool:
        return self.profile.background

    def is_valid_continuity_token(self, token: str | None) -> bool:
        return is_response_token(token)

    def build_history(self, handle_id: str) -> list[Message]:
        # Server-side memory: prior turns are reached through the continuity token.
        return []

    def new_classifier(self) -> ResponsesEventClassifier:
        return ResponsesEventClassifier()

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    def _client(self, timeout: httpx.Timeout | float | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._timeout if timeout is None else timeout,
            transport=self._transport,
            headers=self._headers(),
        )

    @staticmethod
    def request_body(request: TurnRequest) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": request.model,
            "store": True,
            "background": request.background_mode,
        }
        if isinstance(request.input, str):
            body["input"] = request.input
            if request.instructions:
                body["instructions"] = request.instructions
        else:
            body["input"] = [result.to_input_item() for result in request.input]
        if request.tools:
            body["tools"] = request.tools
        if request.continuity_token:
            body["previous_response_id"] = request.continuity_token
        if request.max_output_tokens:
            body["max_output_tokens"] = request.max_output_tokens
        if request.reasoning_effort:
            body["reasoning"] = {"effort": request.reasoning_effort, "summary": "auto"}
        return body

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.status_code >= 400:
            raise classify_upstream_error(response.status_code, response.text)

    @staticmethod
    def _json_object(response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamError(
                "upstream returned a non-JSON body", status_code=response.status_code
            ) from exc
        if not isinstance(payload, dict):
            raise UpstreamError(
                "upstream response is not an object", status_code=response.status_code
            )
        return payload

    async def create(self, request: TurnRequest) -> ResponseSnapshot:
        body = self.request_body(request)
        try:
            async with self._client() as client:
                response = await client.post(f"{self._base_url}/responses", json=body)
        except httpx.HTTPError as exc:
            raise TransportError(f"failed to reach upstream: {exc}") from exc
        self._raise_for_status(response)
        snapshot = parse_response_snapshot(self._json_object(response))
        logger.info("Created response %s status=%s", snapshot.id, snapshot.status)
        return snapshot

    @asynccontextmanager
    async def open_stream(
        self, request: TurnRequest, response_id: str | None
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        if not response_id:
            raise UpstreamError("cannot stream a response without an id")
        endpoint = f"{self._base_url}/responses/{response_id}"
        # Idle detection happens above the transport, so reads never time out here.
        timeout = httpx.Timeout(self._timeout, read=None)
        try:
            async with self._client(timeout) as client:
                async with client.stream(
                    "GET", endpoint, params={"stream": "true"}
                ) as response:
                    if response.status_code >= 400:
                        await response.aread()
                        self._raise_for_status(response)
                    yield response.aiter_bytes()
        except httpx.HTTPError as exc:
            raise TransportError(f"stream interrupted: {exc}") from exc

    async def retrieve(self, response_id: str) -> ResponseSnapshot:
        try:
            async with self._client() as client:
                response = await client.get(f"{self._base_url}/responses/{response_id}")
        except httpx.HTTPError as exc:
            raise TransportError(f"failed to reach upstream: {exc}") from exc
        self._raise_for_status(response)
        return parse_response_snapshot(self._json_object(response))

    async def cancel(self, response_id: str) -> ResponseSnapshot:
        try:
            async with self._client() as client:
                response = await client.post(f"{self._base_url}/responses/{response_id}/cancel")
        except httpx.HTTPError as exc:
            raise TransportError(f"failed to reach upstream: {exc}") from exc
        if response.status_code == 400 and "already completed" in response.text.lower():
            logger.info("Response %s already completed; nothing to cancel", response_id)
            return ResponseSnapshot(id=response_id, status="completed")
        self._raise_for_status(response)
        return parse_response_snapshot(self._json_object(response))
