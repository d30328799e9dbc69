"""Append-only support suggestion log."""

import time
from typing import Any

from coach_engine.core.logging import get_logger
from coach_engine.db.supabase_client import get_supabase

logger = get_logger(__name__)


def insert_support_suggestion(
    session_id: str,
    text: str,
    intent: str,
    meta: dict[str, Any] | None = None,
    kind: str = "PRIMARY",
    rank: int = 0,
    ts_ms: int | None = None,
) -> dict[str, Any]:
    """
    Record one emitted suggestion.

    Args:
        session_id: Support session ID
        text: Suggestion text as shown to the agent
        intent: Moment tag at emission time
        meta: Extra fields (issue type, resolution status)
        kind: Suggestion kind (PRIMARY for the main line)
        rank: Position among suggestions of the same kind
        ts_ms: Emission timestamp in epoch ms (defaults to now)

    Returns:
        Inserted row

    Raises:
        Exception: If database operation fails
    """
    supabase = get_supabase()

    row = {
        "session_id": session_id,
        "ts_ms": ts_ms if ts_ms is not None else int(time.time() * 1000),
        "kind": kind,
        "rank": rank,
        "text": text,
        "intent": intent,
        "meta_json": meta or {},
    }

    try:
        response = supabase.table("support_suggestions").insert(row).execute()

        if not response.data:
            raise ValueError("No data returned from suggestion insert")

        logger.debug(f"Persisted {kind} suggestion for session {session_id}")
        return response.data[0]

    except Exception as e:
        logger.error(f"Failed to insert suggestion for session {session_id}: {e}")
        raise
