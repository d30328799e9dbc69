"""Event delivery from the engine to whoever is subscribed to a session.

``EventSink`` is the engine-facing contract: best-effort, at-most-once, no
acknowledgement. ``SessionEventBroker`` is the in-process implementation that
fans events out to asyncio queues, one per subscriber (the SSE endpoint).
"""

import asyncio
from collections import defaultdict
from typing import Any, Protocol

from coach_engine.core.logging import get_logger

logger = get_logger(__name__)

SUBSCRIBER_QUEUE_SIZE = 256


class EventSink(Protocol):
    def emit(self, session_id: str, event: str, payload: dict[str, Any]) -> None: ...


class SessionEventBroker:
    """Fan-out of session events to subscriber queues."""

    def __init__(self, queue_size: int = SUBSCRIBER_QUEUE_SIZE):
        self._queue_size = queue_size
        self._subscribers: dict[str, set[asyncio.Queue]] = defaultdict(set)

    def subscribe(self, session_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers[session_id].add(queue)
        logger.debug(f"Subscriber added for session {session_id}")
        return queue

    def unsubscribe(self, session_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(session_id)
        if not queues:
            return
        queues.discard(queue)
        if not queues:
            del self._subscribers[session_id]

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscribers.get(session_id, ()))

    def emit(self, session_id: str, event: str, payload: dict[str, Any]) -> None:
        """Push to every subscriber. A full queue drops the event for that subscriber."""
        message = {"event": event, "data": payload}
        for queue in list(self._subscribers.get(session_id, ())):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning(f"Dropping {event} for slow subscriber on session {session_id}")
