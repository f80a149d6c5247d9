"""FastAPI entrypoint."""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from turnloop.config import get_settings, validate_settings_for_env
from turnloop.db.migrations.runner import run_migrations
from turnloop.errors import ErrorCode, build_error_payload
from turnloop.logging import configure_logging
from turnloop.routes.api import router as api_router
from turnloop.routes.api.chat import pending_turns
from turnloop.routes.health import router as health_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    validate_settings_for_env(settings)
    configure_logging(settings.log_level)
    applied = run_migrations()
    if applied:
        logger.info("Applied migrations: %s", ", ".join(applied))
    yield
    pending = pending_turns()
    if pending:
        logger.info("Waiting for %d in-flight turn(s) to finish", len(pending))
        await asyncio.wait(pending, timeout=float(settings.upstream_timeout_seconds))


limiter = Limiter(key_func=get_remote_address)

app = FastAPI(title="Turnloop Orchestrator", version="0.1.0", lifespan=lifespan)
app.state.limiter = limiter


@app.exception_handler(RateLimitExceeded)
async def _rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content=build_error_payload(ErrorCode.RATE_LIMITED, details=str(exc.detail)),
    )


settings = get_settings()
cors_origins = [item.strip() for item in settings.web_cors_origins.split(",") if item.strip()]
if cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
app.include_router(health_router)
app.include_router(api_router)


def run() -> None:
    import uvicorn

    uvicorn.run(
        "turnloop.main:app",
        host=settings.bind_host,
        port=settings.bind_port,
        log_config=None,
    )
