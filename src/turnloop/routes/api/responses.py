"""Background response resumption: poll or cancel an upstream job by id."""

import logging

from fastapi import APIRouter, Depends, HTTPException

from turnloop.auth.dependencies import UserContext, require_auth
from turnloop.errors import (
    ERROR_METADATA,
    CredentialError,
    ErrorCode,
    TransportError,
    UpstreamError,
    build_error_payload,
)
from turnloop.providers.base import ProviderAdapter, ResponseSnapshot
from turnloop.providers.factory import build_adapter
from turnloop.providers.openai_responses import is_response_token
from turnloop.routes.api.chat import TurnServices, get_turn_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/responses", tags=["api-responses"])


def _adapter_for(ctx: UserContext, services: TurnServices) -> ProviderAdapter:
    api_key = services.credentials.resolve("openai", ctx.principal)
    try:
        return build_adapter("openai", api_key, services.store, transport=services.transport)
    except CredentialError as exc:
        raise HTTPException(
            status_code=ERROR_METADATA[exc.code].http_status,
            detail=build_error_payload(exc.code),
        ) from exc


def _check_id(response_id: str) -> None:
    if not is_response_token(response_id):
        raise HTTPException(
            status_code=400,
            detail=build_error_payload(ErrorCode.INVALID_FIELD, "response_id must start with resp_"),
        )


def _upstream_failure(exc: UpstreamError | TransportError) -> HTTPException:
    code = exc.code
    status_code = 502
    if isinstance(exc, UpstreamError) and exc.status_code in {404, 429}:
        status_code = exc.status_code
    return HTTPException(
        status_code=status_code,
        detail=build_error_payload(
            code,
            str(exc) or None,
            upstream_status=getattr(exc, "status_code", None) or None,
        ),
    )


def _snapshot_body(snapshot: ResponseSnapshot) -> dict[str, object]:
    body: dict[str, object] = {
        "response_id": snapshot.id,
        "status": snapshot.status,
        "output_text": snapshot.text or "",
        "reasoning": list(snapshot.reasoning),
    }
    if snapshot.usage is not None:
        body["usage"] = {
            "input_tokens": snapshot.usage.input_tokens,
            "output_tokens": snapshot.usage.output_tokens,
        }
    if snapshot.error_message:
        body["error"] = snapshot.error_message
    return body


@router.get("/{response_id}")
async def get_response(
    response_id: str,
    ctx: UserContext = Depends(require_auth),  # noqa: B008
    services: TurnServices = Depends(get_turn_services),  # noqa: B008
) -> dict[str, object]:
    _check_id(response_id)
    adapter = _adapter_for(ctx, services)
    try:
        snapshot = await adapter.retrieve(response_id)
    except (UpstreamError, TransportError) as exc:
        logger.warning("Polling %s failed: %s", response_id, exc)
        raise _upstream_failure(exc) from exc
    return _snapshot_body(snapshot)


@router.post("/{response_id}/cancel")
async def cancel_response(
    response_id: str,
    ctx: UserContext = Depends(require_auth),  # noqa: B008
    services: TurnServices = Depends(get_turn_services),  # noqa: B008
) -> dict[str, object]:
    _check_id(response_id)
    adapter = _adapter_for(ctx, services)
    try:
        snapshot = await adapter.cancel(response_id)
    except (UpstreamError, TransportError) as exc:
        logger.warning("Cancelling %s failed: %s", response_id, exc)
        raise _upstream_failure(exc) from exc
    logger.info("Cancel requested for %s: status=%s", response_id, snapshot.status)
    return {"response_id": snapshot.id or response_id, "status": snapshot.status}
