import json

import pytest

from turnloop.errors import (
    ERROR_METADATA,
    ConfigError,
    CredentialError,
    ErrorCode,
    ProtocolParseError,
    ToolExecutionError,
    TransportError,
    TurnloopError,
    UpstreamError,
    UpstreamErrorKind,
    build_error_payload,
    classify_upstream_error,
)


@pytest.mark.parametrize(
    "exc_class",
    [TransportError, UpstreamError, ToolExecutionError, ProtocolParseError, ConfigError],
)
def test_all_errors_share_base(exc_class: type[TurnloopError]) -> None:
    assert issubclass(exc_class, TurnloopError)
    assert isinstance(exc_class("boom"), Exception)


def test_every_code_has_metadata() -> None:
    assert set(ERROR_METADATA) == set(ErrorCode)


def test_build_error_payload_defaults_to_user_message() -> None:
    payload = build_error_payload(ErrorCode.POLL_TIMEOUT)
    assert payload == {
        "error": "Response took too long",
        "error_code": "POLL_TIMEOUT",
        "recoverable": False,
    }


def test_build_error_payload_details_and_extra() -> None:
    payload = build_error_payload(ErrorCode.API_CALL_FAILED, "boom", upstream_status=503)
    assert payload["error"] == "boom"
    assert payload["upstream_status"] == 503


def test_credential_error_code_override() -> None:
    assert CredentialError("x").code is ErrorCode.API_KEY_MISSING
    exc = CredentialError("x", code=ErrorCode.ANTHROPIC_NOT_CONFIGURED)
    assert exc.code is ErrorCode.ANTHROPIC_NOT_CONFIGURED


def _body(message: str, code: str | None = None) -> str:
    error: dict[str, str] = {"message": message}
    if code:
        error["code"] = code
    return json.dumps({"error": error})


def test_classify_rate_limited() -> None:
    exc = classify_upstream_error(429, _body("Slow down"))
    assert exc.kind is UpstreamErrorKind.RATE_LIMITED
    assert exc.code is ErrorCode.RATE_LIMITED
    assert exc.retryable is True
    assert str(exc) == "Slow down"


@pytest.mark.parametrize(
    ("status", "body"),
    [
        (400, _body("Invalid id", "invalid_previous_response_id")),
        (400, _body("No tool output found for function call call_1.")),
        (400, _body("Cannot continue from response resp_1")),
        (404, _body("Previous response with id 'resp_1' not found.")),
    ],
)
def test_classify_invalid_continuity(status: int, body: str) -> None:
    exc = classify_upstream_error(status, body)
    assert exc.kind is UpstreamErrorKind.INVALID_CONTINUITY
    assert exc.code is ErrorCode.STALE_CONTINUITY
    assert exc.status_code == status


def test_classify_server_timeout_and_client_errors() -> None:
    assert classify_upstream_error(504, "").kind is UpstreamErrorKind.TIMEOUT
    assert classify_upstream_error(408, "").kind is UpstreamErrorKind.TIMEOUT
    assert classify_upstream_error(500, "oops").kind is UpstreamErrorKind.SERVER_ERROR
    client = classify_upstream_error(400, _body("bad model", "model_not_found"))
    assert client.kind is UpstreamErrorKind.CLIENT_ERROR
    assert client.upstream_code == "model_not_found"
    assert client.retryable is False


def test_classify_non_json_body_keeps_text() -> None:
    exc = classify_upstream_error(502, "<html>bad gateway</html>")
    assert str(exc) == "<html>bad gateway</html>"
    assert exc.payload == {}


def test_classify_empty_body_mentions_status() -> None:
    exc = classify_upstream_error(503, "")
    assert "503" in str(exc)
