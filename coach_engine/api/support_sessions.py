"""
Support session endpoints: drive the coaching engine and stream its events.

Event ingestion endpoints return immediately; suggestions arrive on the
SSE stream (``GET /support/sessions/{session_id}/events``).
"""

import asyncio
import json
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from coach_engine.api.deps import get_event_broker, get_support_engine
from coach_engine.core.event_sink import SessionEventBroker
from coach_engine.core.logging import get_logger
from coach_engine.core.schemas_support import Speaker
from coach_engine.core.support_engine import SupportEngine

logger = get_logger(__name__)

router = APIRouter()

HEARTBEAT_SECONDS = 15.0


class TranscriptTurnRequest(BaseModel):
    """One finalized transcript turn."""

    speaker: Speaker = Field(..., description="AGENT or CUSTOMER")
    text: str = Field(..., min_length=1, description="Turn text")


class SpeakingSignalRequest(BaseModel):
    """In-progress speech; only CUSTOMER signals affect the engine."""

    speaker: Speaker
    text: str | None = Field(default=None, description="Latest partial transcript")


class ActionResultRequest(BaseModel):
    action_name: str = Field(..., min_length=1)
    output: Any = None


class AcceptedResponse(BaseModel):
    session_id: str
    accepted: bool = True


@router.post("/{session_id}/start", response_model=AcceptedResponse)
async def start_session(session_id: str, engine: SupportEngine = Depends(get_support_engine)):
    """Create the session and begin loading its context."""
    engine.start(session_id)
    return AcceptedResponse(session_id=session_id)


@router.post("/{session_id}/session-start", response_model=AcceptedResponse)
async def mark_session_started(session_id: str, engine: SupportEngine = Depends(get_support_engine)):
    """Mark the conversation as started (emits the initial suggestion)."""
    engine.emit_session_start(session_id)
    return AcceptedResponse(session_id=session_id)


@router.post("/{session_id}/transcript", response_model=AcceptedResponse)
async def push_transcript(
    session_id: str,
    request: TranscriptTurnRequest,
    engine: SupportEngine = Depends(get_support_engine),
):
    engine.push_transcript(session_id, request.speaker, request.text)
    return AcceptedResponse(session_id=session_id)


@router.post("/{session_id}/speaking", response_model=AcceptedResponse)
async def signal_speaking(
    session_id: str,
    request: SpeakingSignalRequest,
    engine: SupportEngine = Depends(get_support_engine),
):
    engine.signal_speaking(session_id, request.speaker, request.text)
    return AcceptedResponse(session_id=session_id)


@router.post("/{session_id}/action-result", response_model=AcceptedResponse)
async def feed_action_result(
    session_id: str,
    request: ActionResultRequest,
    engine: SupportEngine = Depends(get_support_engine),
):
    engine.feed_action_result(session_id, request.action_name, request.output)
    return AcceptedResponse(session_id=session_id)


@router.post("/{session_id}/stop", response_model=AcceptedResponse)
async def stop_session(session_id: str, engine: SupportEngine = Depends(get_support_engine)):
    engine.stop(session_id)
    return AcceptedResponse(session_id=session_id)


@router.get("/{session_id}/state")
async def get_session_state(session_id: str, engine: SupportEngine = Depends(get_support_engine)) -> dict:
    """
    Diagnostic snapshot of a live session.

    Raises:
        HTTPException 404: If the session is not live
    """
    snapshot = engine.snapshot(session_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return snapshot


def format_sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


async def stream_session_events(
    broker: SessionEventBroker,
    session_id: str,
    is_disconnected: Callable[[], Awaitable[bool]],
    heartbeat_seconds: float = HEARTBEAT_SECONDS,
) -> AsyncIterator[str]:
    """
    Yield SSE frames for one session until the client disconnects.

    SSE format:
    event: {event name}
    data: {json payload}

    """
    queue = broker.subscribe(session_id)
    try:
        while not await is_disconnected():
            try:
                message = await asyncio.wait_for(queue.get(), timeout=heartbeat_seconds)
            except asyncio.TimeoutError:
                yield ": keep-alive\n\n"
                continue
            yield format_sse(message["event"], message["data"])
    finally:
        broker.unsubscribe(session_id, queue)
        logger.debug(f"SSE subscriber closed for session {session_id}")


@router.get("/{session_id}/events")
async def session_events(
    session_id: str,
    request: Request,
    broker: SessionEventBroker = Depends(get_event_broker),
):
    """Server-Sent Events stream of engine events for one session."""
    return StreamingResponse(
        stream_session_events(broker, session_id, request.is_disconnected),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )
