"""Process-wide engine wiring, overridable through FastAPI dependency overrides."""

import asyncio
from functools import lru_cache, partial
from typing import Any

from coach_engine.core.action_runner import ActionRunner
from coach_engine.core.config import get_settings
from coach_engine.core.event_sink import SessionEventBroker
from coach_engine.core.knowledge_retrieval import retrieve_relevant
from coach_engine.core.llm import OpenAIGateway
from coach_engine.core.logging import get_logger
from coach_engine.core.schemas_support import SessionContext
from coach_engine.core.support_engine import EngineTimings, SupportEngine
from coach_engine.db.support_context import load_session_context
from coach_engine.db.support_suggestions import insert_support_suggestion

logger = get_logger(__name__)


async def load_session_context_async(session_id: str) -> SessionContext | None:
    return await asyncio.to_thread(load_session_context, session_id)


@lru_cache
def get_event_broker() -> SessionEventBroker:
    return SessionEventBroker()


def _feed_action_result(session_id: str, action_name: str, output: Any) -> None:
    get_support_engine().feed_action_result(session_id, action_name, output)


@lru_cache
def get_action_runner() -> ActionRunner:
    """Runner for proposed actions; completed runs feed back into the engine."""
    return ActionRunner(sink=get_event_broker(), on_result=_feed_action_result)


@lru_cache
def get_support_engine() -> SupportEngine:
    """Build the singleton engine from settings."""
    settings = get_settings()

    semantic_retriever = None
    if settings.SEMANTIC_RETRIEVAL_ENABLED:
        semantic_retriever = partial(
            retrieve_relevant,
            limit=settings.RAG_LIMIT,
            similarity_threshold=settings.RAG_SIMILARITY_THRESHOLD,
            timeout_ms=settings.RAG_TIMEOUT_MS,
            embed_timeout_ms=settings.RAG_EMBED_TIMEOUT_MS,
        )

    engine = SupportEngine(
        sink=get_event_broker(),
        gateway=OpenAIGateway.from_settings(),
        context_loader=load_session_context_async,
        suggestion_writer=insert_support_suggestion,
        action_proposer=get_action_runner().propose,
        semantic_retriever=semantic_retriever,
        timings=EngineTimings.from_settings(settings),
        tick_temperature=settings.TICK_TEMPERATURE,
        retry_temperature=settings.RETRY_TEMPERATURE,
    )
    logger.info(
        f"Support engine ready (semantic retrieval {'on' if semantic_retriever else 'off'})"
    )
    return engine
