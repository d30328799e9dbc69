"""Semantic knowledge retrieval with a hard latency budget.

Pipeline: embed query (hard timeout) → vector match (2× over-fetch) →
diversity filter → truncate.

Graceful degradation: an embedding timeout, an embedding error or a storage
error all yield an empty list. Callers always keep a lexical fallback.

Usage:
    from coach_engine.core.knowledge_retrieval import retrieve_relevant

    chunks = await retrieve_relevant(
        org_id="8c1f...",
        query_text="CUSTOMER: I was charged twice for my plan",
        limit=8,
    )
"""

from __future__ import annotations

import asyncio

from coach_engine.core.embeddings import embed_with_timeout
from coach_engine.core.logging import get_logger
from coach_engine.core.schemas_support import KnowledgeChunk, KnowledgeSnippet

logger = get_logger(__name__)

DEFAULT_LIMIT = 8
DEFAULT_SIMILARITY_THRESHOLD = 0.25
DEFAULT_TIMEOUT_MS = 150
EMBED_TIMEOUT_CAP_MS = 80
DIVERSITY_THRESHOLD = 0.92
OVERFETCH_FACTOR = 2
CHUNK_TEXT_CHARS = 500


# =============================================================================
# Diversity filter
# =============================================================================


def jaccard_similarity(a: str, b: str) -> float:
    """Word-set Jaccard similarity; a fast lexical proxy for semantic overlap."""
    words_a = set(a.lower().split())
    words_b = set(b.lower().split())
    union = words_a | words_b
    if not union:
        return 0.0
    return len(words_a & words_b) / len(union)


def apply_diversity_filter(
    candidates: list[KnowledgeChunk],
    limit: int,
    threshold: float = DIVERSITY_THRESHOLD,
) -> list[KnowledgeChunk]:
    """
    Greedy near-duplicate removal over score-ordered candidates.

    A candidate is kept only if its Jaccard similarity to every already kept
    candidate is at most ``threshold``. Stops once ``limit`` are kept.

    Args:
        candidates: Chunks, any order (sorted by score descending here)
        limit: Max chunks to keep
        threshold: Similarity above which a candidate counts as a duplicate

    Returns:
        Kept chunks in descending score order
    """
    ordered = sorted(candidates, key=lambda c: c.score, reverse=True)
    selected: list[KnowledgeChunk] = []

    for candidate in ordered:
        if len(selected) >= limit:
            break
        is_duplicate = any(
            jaccard_similarity(kept.chunk_text, candidate.chunk_text) > threshold for kept in selected
        )
        if not is_duplicate:
            selected.append(candidate)

    return selected


def chunks_to_snippets(chunks: list[KnowledgeChunk]) -> list[KnowledgeSnippet]:
    """Adapt semantic chunks to the snippet shape the prompt builder uses."""
    return [KnowledgeSnippet(field=c.field, text=c.chunk_text, score=c.score) for c in chunks]


# =============================================================================
# Retrieval
# =============================================================================


def _row_to_chunk(row: dict) -> KnowledgeChunk:
    return KnowledgeChunk(
        id=str(row.get("id", "")),
        field=row.get("field") or "knowledge",
        chunk_text=(row.get("chunk_text") or "")[:CHUNK_TEXT_CHARS],
        score=float(row.get("similarity", 0.0)),
        metadata=row.get("metadata") or {},
    )


async def retrieve_relevant(
    org_id: str,
    query_text: str,
    *,
    limit: int = DEFAULT_LIMIT,
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    embed_timeout_ms: int = EMBED_TIMEOUT_CAP_MS,
) -> list[KnowledgeChunk]:
    """
    Retrieve the most relevant, mutually distinct chunks for a query.

    Args:
        org_id: Organization whose corpus is searched
        query_text: Conversation context to match
        limit: Max chunks to return
        similarity_threshold: Minimum vector similarity
        timeout_ms: Overall latency budget; the embed call gets the smaller
            of this and ``embed_timeout_ms``
        embed_timeout_ms: Hard cap on the embedding call

    Returns:
        Up to ``limit`` chunks; empty on any failure
    """
    if not query_text.strip():
        return []

    from coach_engine.db.knowledge_chunks import match_knowledge_chunks

    try:
        embedding = await embed_with_timeout(query_text, min(timeout_ms, embed_timeout_ms))
        if not embedding:
            logger.warning(f"Embedding unavailable for org {org_id}, semantic retrieval skipped")
            return []

        rows = await asyncio.to_thread(
            match_knowledge_chunks,
            org_id,
            embedding,
            similarity_threshold,
            limit * OVERFETCH_FACTOR,
        )

        candidates = [_row_to_chunk(row) for row in rows]
        selected = apply_diversity_filter(candidates, limit)

        logger.debug(
            f"Semantic retrieval: {len(candidates)} candidates → {len(selected)} chunks for org {org_id}"
        )
        return selected

    except Exception as e:
        logger.warning(f"Semantic retrieval failed for org {org_id}: {e}")
        return []
