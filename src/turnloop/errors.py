"""Turnloop exception hierarchy and error-code catalogue.

All turnloop-specific exceptions inherit from TurnloopError,
enabling structured error handling and cleaner catch clauses.
Each exception maps onto an ErrorCode so that outward ErrorEvent frames
carry a stable, machine-readable code.
"""

import json
from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    # Authentication & configuration
    AUTH_MISSING = "AUTH_MISSING"
    AUTH_INVALID = "AUTH_INVALID"
    API_KEY_MISSING = "API_KEY_MISSING"
    API_KEY_INVALID = "API_KEY_INVALID"
    CONFIG_ERROR = "CONFIG_ERROR"

    # Validation
    MISSING_FIELD = "MISSING_FIELD"
    INVALID_FIELD = "INVALID_FIELD"
    MODEL_NOT_FOUND = "MODEL_NOT_FOUND"

    # Rate limiting
    RATE_LIMITED = "RATE_LIMITED"

    # Timeouts
    TIMEOUT = "TIMEOUT"
    IDLE_TIMEOUT = "IDLE_TIMEOUT"
    POLL_TIMEOUT = "POLL_TIMEOUT"

    # Upstream
    API_CALL_FAILED = "API_CALL_FAILED"
    STREAM_ERROR = "STREAM_ERROR"
    CANCELLED = "CANCELLED"
    STALE_CONTINUITY = "STALE_CONTINUITY"
    TOOL_LOOP_LIMIT = "TOOL_LOOP_LIMIT"
    INTERRUPTED = "INTERRUPTED"

    # Provider-specific
    OPENAI_NOT_CONFIGURED = "OPENAI_NOT_CONFIGURED"
    ANTHROPIC_NOT_CONFIGURED = "ANTHROPIC_NOT_CONFIGURED"

    # Generic
    INTERNAL_ERROR = "INTERNAL_ERROR"


@dataclass(frozen=True, slots=True)
class ErrorMeta:
    http_status: int
    recoverable: bool
    user_message: str


ERROR_METADATA: dict[ErrorCode, ErrorMeta] = {
    ErrorCode.AUTH_MISSING: ErrorMeta(401, False, "Authentication required"),
    ErrorCode.AUTH_INVALID: ErrorMeta(401, False, "Invalid or expired session"),
    ErrorCode.API_KEY_MISSING: ErrorMeta(400, False, "API key not configured"),
    ErrorCode.API_KEY_INVALID: ErrorMeta(401, False, "Invalid API key"),
    ErrorCode.CONFIG_ERROR: ErrorMeta(500, False, "Server configuration error"),
    ErrorCode.MISSING_FIELD: ErrorMeta(400, False, "Required field missing"),
    ErrorCode.INVALID_FIELD: ErrorMeta(400, False, "Invalid field value"),
    ErrorCode.MODEL_NOT_FOUND: ErrorMeta(400, False, "Model not found or inactive"),
    ErrorCode.RATE_LIMITED: ErrorMeta(429, True, "Rate limited - please wait"),
    ErrorCode.TIMEOUT: ErrorMeta(504, True, "Request timed out"),
    ErrorCode.IDLE_TIMEOUT: ErrorMeta(504, True, "Connection stalled"),
    ErrorCode.POLL_TIMEOUT: ErrorMeta(504, False, "Response took too long"),
    ErrorCode.API_CALL_FAILED: ErrorMeta(502, True, "API call failed"),
    ErrorCode.STREAM_ERROR: ErrorMeta(502, True, "Stream error occurred"),
    ErrorCode.CANCELLED: ErrorMeta(499, False, "Request cancelled"),
    ErrorCode.STALE_CONTINUITY: ErrorMeta(409, True, "Conversation state expired"),
    ErrorCode.TOOL_LOOP_LIMIT: ErrorMeta(200, False, "tool loop did not converge"),
    ErrorCode.INTERRUPTED: ErrorMeta(200, True, "Waiting for user input"),
    ErrorCode.OPENAI_NOT_CONFIGURED: ErrorMeta(
        400, False, "OpenAI API key not configured. Add your key in Settings."
    ),
    ErrorCode.ANTHROPIC_NOT_CONFIGURED: ErrorMeta(
        400, False, "Anthropic API key not configured. Add your key in Settings."
    ),
    ErrorCode.INTERNAL_ERROR: ErrorMeta(500, True, "Internal server error"),
}


def build_error_payload(
    code: ErrorCode,
    details: str | None = None,
    **extra: object,
) -> dict[str, object]:
    """Standardized error body used by HTTP responses and ErrorEvent frames."""
    meta = ERROR_METADATA[code]
    payload: dict[str, object] = {
        "error": details or meta.user_message,
        "error_code": code.value,
        "recoverable": meta.recoverable,
    }
    payload.update(extra)
    return payload


class TurnloopError(Exception):
    """Base exception for all turnloop errors."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str = "", *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class TransportError(TurnloopError):
    """Network failure reaching the upstream service."""

    code = ErrorCode.API_CALL_FAILED

    def __init__(self, message: str = "", *, retryable: bool = True) -> None:
        super().__init__(message, retryable=retryable)


class UpstreamErrorKind(StrEnum):
    RATE_LIMITED = "rate_limited"
    INVALID_CONTINUITY = "invalid_continuity"
    SERVER_ERROR = "server_error"
    TIMEOUT = "timeout"
    CLIENT_ERROR = "client_error"


_KIND_CODES: dict[UpstreamErrorKind, ErrorCode] = {
    UpstreamErrorKind.RATE_LIMITED: ErrorCode.RATE_LIMITED,
    UpstreamErrorKind.INVALID_CONTINUITY: ErrorCode.STALE_CONTINUITY,
    UpstreamErrorKind.SERVER_ERROR: ErrorCode.API_CALL_FAILED,
    UpstreamErrorKind.TIMEOUT: ErrorCode.TIMEOUT,
    UpstreamErrorKind.CLIENT_ERROR: ErrorCode.API_CALL_FAILED,
}


class UpstreamError(TurnloopError):
    """Error response classified from the upstream service."""

    def __init__(
        self,
        message: str = "",
        *,
        kind: UpstreamErrorKind = UpstreamErrorKind.SERVER_ERROR,
        status_code: int = 0,
        upstream_code: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message,
            retryable=kind in {UpstreamErrorKind.RATE_LIMITED, UpstreamErrorKind.SERVER_ERROR},
        )
        self.kind = kind
        self.status_code = status_code
        self.upstream_code = upstream_code
        self.payload = payload or {}

    @property
    def code(self) -> ErrorCode:  # type: ignore[override]
        return _KIND_CODES[self.kind]


class ToolExecutionError(TurnloopError):
    """A tool raised while executing; embedded as that call's result content."""


class ProtocolParseError(TurnloopError):
    """Malformed upstream stream frame."""

    code = ErrorCode.STREAM_ERROR


class ConfigError(TurnloopError):
    """Invalid or missing configuration."""

    code = ErrorCode.CONFIG_ERROR


class CredentialError(TurnloopError):
    """No usable credential for the requested provider."""

    code = ErrorCode.API_KEY_MISSING

    def __init__(self, message: str = "", *, code: ErrorCode | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


_STALE_CONTINUITY_MARKERS = (
    "no tool output found",
    "cannot continue from response",
    "previous response with id",
)


def _parse_error_body(body_text: str) -> dict[str, Any]:
    try:
        parsed = json.loads(body_text)
    except (json.JSONDecodeError, TypeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def classify_upstream_error(status_code: int, body_text: str) -> UpstreamError:
    """Map an upstream HTTP failure onto the UpstreamError taxonomy."""
    payload = _parse_error_body(body_text)
    error_obj = payload.get("error")
    message = ""
    upstream_code: str | None = None
    if isinstance(error_obj, dict):
        raw_message = error_obj.get("message")
        if isinstance(raw_message, str):
            message = raw_message.strip()
        raw_code = error_obj.get("code")
        if isinstance(raw_code, str) and raw_code:
            upstream_code = raw_code
    elif isinstance(error_obj, str):
        message = error_obj.strip()
    if not message:
        raw_message = payload.get("message")
        if isinstance(raw_message, str) and raw_message.strip():
            message = raw_message.strip()
        else:
            message = (body_text or "").strip()[:200] or f"upstream returned {status_code}"

    lower = message.lower()
    if upstream_code == "invalid_previous_response_id" or (
        status_code in {400, 404} and any(marker in lower for marker in _STALE_CONTINUITY_MARKERS)
    ):
        kind = UpstreamErrorKind.INVALID_CONTINUITY
    elif status_code == 429:
        kind = UpstreamErrorKind.RATE_LIMITED
    elif status_code in {408, 504}:
        kind = UpstreamErrorKind.TIMEOUT
    elif status_code >= 500:
        kind = UpstreamErrorKind.SERVER_ERROR
    else:
        kind = UpstreamErrorKind.CLIENT_ERROR
    return UpstreamError(
        message,
        kind=kind,
        status_code=status_code,
        upstream_code=upstream_code,
        payload=payload,
    )
