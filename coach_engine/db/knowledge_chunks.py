"""Vector search over an org's stored knowledge chunks."""

from typing import Any

from coach_engine.core.logging import get_logger
from coach_engine.db.supabase_client import get_supabase

logger = get_logger(__name__)


def match_knowledge_chunks(
    org_id: str,
    query_embedding: list[float],
    similarity_threshold: float,
    match_count: int,
) -> list[dict[str, Any]]:
    """
    Nearest stored chunks for an org, ordered by cosine distance.

    Strict org scoping happens inside the ``match_embedding_chunks`` RPC;
    chunks from other orgs are never returned.

    Args:
        org_id: Organization ID
        query_embedding: Query vector
        similarity_threshold: Minimum ``1 - cosine_distance``
        match_count: Max rows to return

    Returns:
        Rows with id, field, chunk_text, metadata, similarity

    Raises:
        Exception: If the RPC fails
    """
    supabase = get_supabase()

    try:
        response = supabase.rpc(
            "match_embedding_chunks",
            {
                "query_embedding": query_embedding,
                "match_threshold": similarity_threshold,
                "match_count": match_count,
                "filter_org_id": org_id,
            },
        ).execute()

        rows = response.data or []
        logger.debug(f"Matched {len(rows)} knowledge chunks for org {org_id}")
        return rows

    except Exception as e:
        logger.error(f"Knowledge chunk match failed for org {org_id}: {e}")
        raise
