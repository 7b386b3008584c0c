"""Embedding client: text in, fixed-length vector out.

Wraps any LangChain ``Embeddings`` implementation (Google
``text-embedding-004`` in production) behind a single ``embed(text)`` call,
with an LRU cache for repeated utterances and latency metrics.  The spam
gate, the semantic cache and the catalog mapper all embed the same user
prompt within one turn, so the cache saves two of three API calls.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from langchain_core.embeddings import Embeddings
from langchain_google_genai import GoogleGenerativeAIEmbeddings

from booking_orchestrator.config import EMBEDDING_DIMENSION, EMBEDDING_MODEL, GOOGLE_API_KEY
from booking_orchestrator.services.metrics import timed

logger = logging.getLogger(__name__)

DEFAULT_CACHE_SIZE = 512


class EmbeddingError(Exception):
    """Raised when the provider fails or returns a malformed vector."""


class EmbeddingClient:
    """Deterministic ``embed(text) -> list[float]`` facade with caching."""

    def __init__(
        self,
        base: Embeddings,
        *,
        dimension: int = EMBEDDING_DIMENSION,
        cache_size: int = DEFAULT_CACHE_SIZE,
    ) -> None:
        self._base = base
        self.dimension = dimension
        self._cached = lru_cache(maxsize=cache_size)(self._embed_uncached)

    def _embed_uncached(self, text: str) -> tuple[float, ...]:
        with timed("gemini", "embed_query"):
            vector = self._base.embed_query(text)
        if len(vector) != self.dimension:
            raise EmbeddingError(
                f"Expected a {self.dimension}-dim vector, got {len(vector)}"
            )
        return tuple(float(v) for v in vector)

    def embed(self, text: str) -> list[float]:
        """Embed *text*.  Raises ``EmbeddingError`` on provider failure."""
        text = (text or "").strip()
        if not text:
            raise EmbeddingError("Cannot embed empty text")
        try:
            return list(self._cached(text))
        except EmbeddingError:
            raise
        except Exception as exc:
            logger.warning("Embedding provider failed: %s", exc)
            raise EmbeddingError(str(exc)) from exc

    def embed_many(self, texts: list[str]) -> list[list[float]]:
        """Embed several texts (used when seeding collections)."""
        return [self.embed(t) for t in texts]

    def cache_info(self):
        return self._cached.cache_info()


def build_embedding_client(cache_size: int = DEFAULT_CACHE_SIZE) -> EmbeddingClient:
    """Create the production embedding client backed by Google GenAI."""
    base = GoogleGenerativeAIEmbeddings(
        model=EMBEDDING_MODEL,
        google_api_key=GOOGLE_API_KEY,
        task_type="semantic_similarity",
    )
    logger.info("Embedding client ready (model=%s, dim=%d)", EMBEDDING_MODEL, EMBEDDING_DIMENSION)
    return EmbeddingClient(base, dimension=EMBEDDING_DIMENSION, cache_size=cache_size)
