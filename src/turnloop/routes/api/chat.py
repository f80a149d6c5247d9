"""Chat turn route: one inbound request, one NDJSON event stream."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx
from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from slowapi import Limiter
from slowapi.util import get_remote_address

from turnloop.auth.dependencies import UserContext, require_auth
from turnloop.config import Settings, get_settings
from turnloop.conversations.store import PURPOSES, SqliteConversationStore
from turnloop.errors import ERROR_METADATA, CredentialError, ErrorCode
from turnloop.events.emitter import EventEmitter
from turnloop.events.models import ErrorEvent
from turnloop.ids import is_uuid
from turnloop.orchestrator.loop import LoopController, TurnInput, TurnOutcome
from turnloop.providers.credentials import CredentialResolver
from turnloop.providers.factory import build_adapter, resolve_provider_id
from turnloop.tools.dispatcher import LegacyHandler, build_dispatcher
from turnloop.tools.question import register_question_tools
from turnloop.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

router = APIRouter(tags=["api-chat"])
_limiter = Limiter(key_func=get_remote_address)

# Turns outlive the HTTP response when the caller disconnects.
_background_turns: set[asyncio.Task[TurnOutcome]] = set()


class ChatInput(BaseModel):
    family_id: str | None = None
    participant_id: str | None = None
    purpose: str = "chat"
    user_message: Any = None
    model: str | None = None
    tools: list[dict[str, Any]] | None = None
    instructions: str = ""
    reasoning_effort: str | None = None
    max_output_tokens: int | None = None
    family_tree: dict[str, Any] | None = None


@dataclass(slots=True)
class TurnServices:
    store: SqliteConversationStore
    registry: ToolRegistry
    credentials: CredentialResolver
    transport: httpx.AsyncBaseTransport | None = None
    legacy_handler: LegacyHandler | None = None


def default_registry() -> ToolRegistry:
    registry = ToolRegistry()
    register_question_tools(registry)
    return registry


def get_turn_services() -> TurnServices:
    return TurnServices(
        store=SqliteConversationStore(),
        registry=default_registry(),
        credentials=CredentialResolver(),
    )


def _validation_error(payload: ChatInput, settings: Settings) -> ErrorEvent | None:
    if not payload.family_id:
        return ErrorEvent(message="family_id is required", code=ErrorCode.MISSING_FIELD.value)
    if not is_uuid(payload.family_id):
        return ErrorEvent(
            message="family_id must be a UUID", code=ErrorCode.INVALID_FIELD.value
        )
    if payload.purpose not in PURPOSES:
        return ErrorEvent(
            message=f"purpose must be one of {', '.join(sorted(PURPOSES))}",
            code=ErrorCode.INVALID_FIELD.value,
        )
    message = payload.user_message
    if not isinstance(message, str) or not message.strip():
        return ErrorEvent(message="user_message is required", code=ErrorCode.MISSING_FIELD.value)
    if len(message) > settings.max_user_message_chars:
        return ErrorEvent(
            message=f"user_message exceeds {settings.max_user_message_chars} characters",
            code=ErrorCode.INVALID_FIELD.value,
        )
    return None


def _single_error_stream(event: ErrorEvent) -> StreamingResponse:
    emitter = EventEmitter()
    emitter.emit(event)
    emitter.close()
    return StreamingResponse(emitter.frames(), media_type="application/x-ndjson")


@router.post("/chat")
@_limiter.limit(lambda: get_settings().chat_rate_limit)
async def chat(
    request: Request,
    payload: ChatInput,
    ctx: UserContext = Depends(require_auth),  # noqa: B008
    services: TurnServices = Depends(get_turn_services),  # noqa: B008
) -> StreamingResponse:
    """Run one turn and stream its events as NDJSON frames ending in ``done``."""
    settings = get_settings()
    invalid = _validation_error(payload, settings)
    if invalid is not None:
        logger.info("Rejected chat request: %s", invalid.message)
        return _single_error_stream(invalid)

    model = (payload.model or settings.default_model).strip()
    provider_id = resolve_provider_id(model)
    api_key = services.credentials.resolve(provider_id, ctx.principal)
    try:
        adapter = build_adapter(provider_id, api_key, services.store, transport=services.transport)
    except CredentialError as exc:
        return _single_error_stream(
            ErrorEvent(message=ERROR_METADATA[exc.code].user_message, code=exc.code.value)
        )
    dispatcher = build_dispatcher(
        settings.tool_dispatch_mode, services.registry, services.legacy_handler
    )
    controller = LoopController(adapter, services.store, dispatcher, settings=settings)
    tools = (
        payload.tools
        if payload.tools is not None
        else services.registry.schemas(purpose=payload.purpose)
    )
    turn = TurnInput(
        family_id=payload.family_id or "",
        participant_id=payload.participant_id or ctx.user_id,
        purpose=payload.purpose,
        user_message=str(payload.user_message),
        model=model,
        tools=list(tools),
        instructions=payload.instructions,
        reasoning_effort=payload.reasoning_effort,
        max_output_tokens=payload.max_output_tokens,
        tenant_id=ctx.tenant_id,
        family_tree=payload.family_tree,
    )

    emitter = EventEmitter(heartbeat_interval=settings.heartbeat_interval_seconds)
    task = asyncio.create_task(controller.run(turn, emitter))
    _background_turns.add(task)
    task.add_done_callback(_background_turns.discard)
    return StreamingResponse(emitter.frames(), media_type="application/x-ndjson")


def pending_turns() -> list[asyncio.Task[TurnOutcome]]:
    return [task for task in _background_turns if not task.done()]
