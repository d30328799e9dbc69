"""OpenAI embeddings generation with validation."""

import asyncio

from openai import OpenAI

from coach_engine.core.config import get_settings
from coach_engine.core.logging import get_logger

logger = get_logger(__name__)


def _get_client() -> OpenAI:
    """Get OpenAI client instance."""
    settings = get_settings()
    return OpenAI(api_key=settings.OPENAI_API_KEY, base_url=settings.OPENAI_BASE_URL)


def embed_texts(texts: list[str]) -> list[list[float]]:
    """
    Generate embeddings for a list of texts using OpenAI.

    Args:
        texts: List of text strings to embed

    Returns:
        List of embedding vectors (each vector is list of floats)

    Raises:
        ValueError: If embedding dimension doesn't match expected EMBEDDING_DIM
        Exception: If OpenAI API call fails
    """
    if not texts:
        return []

    settings = get_settings()
    client = _get_client()

    try:
        response = client.embeddings.create(
            model=settings.EMBEDDING_MODEL,
            input=texts,
        )

        embeddings = []
        for i, embedding_obj in enumerate(response.data):
            embedding = embedding_obj.embedding

            # Validate dimension
            if len(embedding) != settings.EMBEDDING_DIM:
                raise ValueError(
                    f"Embedding dimension mismatch for text {i}: "
                    f"expected {settings.EMBEDDING_DIM}, got {len(embedding)}"
                )

            embeddings.append(embedding)

        logger.debug(
            f"Generated {len(embeddings)} embeddings using {settings.EMBEDDING_MODEL}",
            extra={"extra_data": {"model": settings.EMBEDDING_MODEL, "count": len(embeddings)}},
        )

        return embeddings

    except Exception as e:
        logger.error(f"Failed to generate embeddings: {e}")
        raise


async def embed_texts_async(texts: list[str]) -> list[list[float]]:
    """Async wrapper around embed_texts using thread pool."""
    return await asyncio.to_thread(embed_texts, texts)


async def embed_with_timeout(text: str, timeout_ms: int) -> list[float] | None:
    """
    Embed a single text, giving up after ``timeout_ms``.

    Used in the per-turn hot path where a slow embedding call must never
    hold up a suggestion. Returns None on timeout or API failure.
    """
    try:
        embeddings = await asyncio.wait_for(embed_texts_async([text]), timeout=timeout_ms / 1000)
    except asyncio.TimeoutError:
        logger.warning(f"Embedding timed out after {timeout_ms}ms")
        return None
    except Exception as e:
        logger.warning(f"embed_with_timeout failed: {e}")
        return None

    return embeddings[0] if embeddings else None
