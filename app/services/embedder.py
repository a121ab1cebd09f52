# =============================================================================
# Embedding Service — Query Vectors for Knowledge-Base Lookup
# =============================================================================
#
# Generates query embeddings using any OpenAI-compatible embedding API.
# The domain agents embed the incoming question and hand the vector to
# their knowledge-base retriever.
#
# DESIGN DECISION: OpenAI SDK with configurable base_url.
# Most providers expose the OpenAI embeddings endpoint, so base_url is the
# only thing that changes between them.
#
# DESIGN DECISION: Sync client. Callers run it via asyncio.to_thread() so
# the event loop is never blocked.
# =============================================================================

from __future__ import annotations

import logging

from openai import OpenAI

from app.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Embedding Client — Lazy Singleton
# ---------------------------------------------------------------------------
# The OpenAI client manages its own HTTP connection pool and is thread-safe.
# Lazy initialization avoids import-time failures when no API key is set.
#
# API key resolution order:
#   1. OPENAI_API_KEY (explicit embedding key)
#   2. LLM_API_KEY (shared key for LLM + embeddings)
# ---------------------------------------------------------------------------

_client: OpenAI | None = None


def _get_client() -> OpenAI:
    """Lazily initialize and cache the embedding client."""
    global _client
    if _client is None:
        resolved_key = settings.openai_api_key or settings.llm_api_key
        if not resolved_key:
            raise ValueError(
                "No API key configured for embeddings. "
                "Set OPENAI_API_KEY or LLM_API_KEY in .env"
            )

        client_kwargs: dict = {"api_key": resolved_key}
        if settings.embedding_base_url:
            client_kwargs["base_url"] = settings.embedding_base_url

        _client = OpenAI(**client_kwargs)

        logger.info(
            "Initialized embedding client (model=%s, base_url=%s)",
            settings.embedding_model,
            settings.embedding_base_url or "https://api.openai.com/v1",
        )
    return _client


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def embed_query(text: str) -> list[float]:
    """
    Generate an embedding for a single query string.

    Raises:
        ValueError: If no embedding API key is configured.
        openai.APIError: If the embedding API call fails.
    """
    client = _get_client()

    create_kwargs: dict = {
        "model": settings.embedding_model,
        "input": [text],
    }
    if settings.embedding_dimensions:
        create_kwargs["dimensions"] = settings.embedding_dimensions

    response = client.embeddings.create(**create_kwargs)

    logger.debug(
        "Query embedded: %d prompt tokens",
        response.usage.prompt_tokens if response.usage else 0,
    )
    return response.data[0].embedding
