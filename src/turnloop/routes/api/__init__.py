"""API router aggregation."""

from fastapi import APIRouter

from turnloop.routes.api import chat, responses

router = APIRouter(prefix="/api", tags=["api"])
router.include_router(chat.router)
router.include_router(responses.router)
