"""API router for v1 endpoints."""

from fastapi import APIRouter

from coach_engine.api import support_actions, support_sessions

router = APIRouter()

# Real-time support coaching sessions
router.include_router(support_sessions.router, prefix="/support/sessions", tags=["support"])
router.include_router(support_actions.router, prefix="/support/actions", tags=["support"])
