"""
Embedding Client  —  Bounded Calls to the Embedding Service
═════════════════════════════════════════════════════════════

Thin wrapper over a LangChain ``Embeddings`` implementation
(OpenAIEmbeddings by default):

  • Every call is bounded by ``timeout_seconds`` (asyncio.wait_for).
  • Every returned vector is checked against the configured dimension;
    the vectors are compared with vectors already stored, so a model or
    dimension mismatch must fail loudly rather than corrupt retrieval.
  • Provider errors, timeouts and bad vectors all surface as
    EmbeddingServiceError. There is no retry loop: ingestion maps the error
    to ``failed`` and an operator re-runs it with an explicit reprocess,
    which keeps a metered service from being hammered by automatic retries.

Batching (``batch_size`` texts per provider call) is an optimization only.

OpenAI embedding model selection:
  text-embedding-3-small  → 1536 dims  (default, cost-efficient)
  text-embedding-3-large  → 3072 dims  (higher accuracy, ~6× cost)
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

from langchain_core.embeddings import Embeddings

from policy_rag.core.config import settings
from policy_rag.core.errors import EmbeddingServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def get_embedding_model() -> Embeddings:
    """Return the configured OpenAI embedding model."""
    from langchain_openai import OpenAIEmbeddings

    return OpenAIEmbeddings(
        model=settings.embedding_model,
        api_key=settings.openai_api_key,
        dimensions=settings.embedding_dimensions,
        max_retries=0,
    )


class EmbeddingClient:
    """
    Stateless apart from its configuration; safe to share between requests.

    Usage:
        client = EmbeddingClient()                       # OpenAI from settings
        client = EmbeddingClient(model=FakeEmbeddings()) # tests
        vector  = await client.embed("How many vacation days?")
        vectors = await client.embed_many([chunk.text for chunk in spans])
    """

    def __init__(
        self,
        model:           Optional[Embeddings] = None,
        *,
        dimensions:      Optional[int]   = None,
        timeout_seconds: Optional[float] = None,
        batch_size:      Optional[int]   = None,
    ) -> None:
        self._model      = model
        self._dimensions = dimensions or settings.embedding_dimensions
        self._timeout    = timeout_seconds or settings.embedding_timeout_seconds
        self._batch_size = batch_size or settings.embedding_batch_size

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def model(self) -> Embeddings:
        # Lazy: constructing OpenAIEmbeddings needs an API key, which the API
        # process does not have until the first search.
        if self._model is None:
            self._model = get_embedding_model()
        return self._model

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def embed(self, text: str) -> list[float]:
        """Embed a single query string."""
        vector = await self._bounded(lambda: self.model.aembed_query(text), what="query")
        return self._validate(vector)

    async def embed_many(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed texts in order, ``batch_size`` per provider call."""
        if not texts:
            return []

        t0 = time.monotonic()
        vectors: list[list[float]] = []
        for offset in range(0, len(texts), self._batch_size):
            batch = list(texts[offset : offset + self._batch_size])
            result = await self._bounded(
                lambda: self.model.aembed_documents(batch),
                what=f"batch@{offset}",
            )
            if len(result) != len(batch):
                raise EmbeddingServiceError(
                    f"Embedding service returned {len(result)} vectors for {len(batch)} inputs"
                )
            vectors.extend(self._validate(v) for v in result)

        logger.info(
            "Embedded | texts=%d batches=%d dims=%d elapsed_ms=%.0f",
            len(texts),
            math.ceil(len(texts) / self._batch_size),
            self._dimensions,
            (time.monotonic() - t0) * 1000,
        )
        return vectors

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _bounded(self, call: Callable[[], Awaitable[T]], *, what: str) -> T:
        # call() runs inside the try so client construction errors map too
        try:
            return await asyncio.wait_for(call(), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.error("Embedding timeout | call=%s timeout=%.1fs", what, self._timeout)
            raise EmbeddingServiceError(
                f"Embedding service did not respond within {self._timeout:g}s"
            ) from None
        except EmbeddingServiceError:
            raise
        except Exception as exc:
            logger.error("Embedding error | call=%s error=%s: %s", what, type(exc).__name__, exc)
            raise EmbeddingServiceError(
                f"Embedding service error ({type(exc).__name__}): {exc}"
            ) from exc

    def _validate(self, vector: Sequence[float]) -> list[float]:
        if len(vector) != self._dimensions:
            raise EmbeddingServiceError(
                f"Embedding has {len(vector)} dimensions, expected {self._dimensions}"
            )
        values = [float(v) for v in vector]
        if not all(math.isfinite(v) for v in values):
            raise EmbeddingServiceError("Embedding contains non-finite values")
        return values
