"""
Retrieval Engine — organization-scoped similarity search

search(query_text, organization_id, threshold, top_k):

  1. Refuse outright when there is no organization (never "search everything")
  2. Embed the query (failure → RetrievalError, which is NOT "zero results")
  3. Load the organization's chunks whose document is published AND enabled
     (TenantStore.searchable_chunks filters on chunk.organization_id)
  4. similarity = 1 − cosine distance, computed with numpy
  5. Keep similarity > threshold
  6. Order by similarity desc, then (document_id, sequence_index) asc
  7. Cut to top_k

Every hit's organization_id is re-checked against the requested one before
it leaves this module. A mismatch means the store returned another tenant's
row, which is a programming error: it raises IsolationViolation instead of
being quietly filtered out.

The result is side-effect free and serializable to plain text via
format_context() for the answer generator.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional, Union

import numpy as np
from langchain_core.documents import Document as LCDocument

from policy_rag.core.config import settings
from policy_rag.core.errors import (
    EmbeddingServiceError,
    IsolationViolation,
    OrganizationRequired,
    RetrievalError,
    ValidationFailed,
)
from policy_rag.processing.embeddings import EmbeddingClient
from policy_rag.store.tenant_store import SearchableChunk, TenantStore

logger = logging.getLogger(__name__)

NOT_FOUND_MESSAGE = "I couldn't find this in the policy documents."


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SearchHit:
    chunk_id:        uuid.UUID
    document_id:     uuid.UUID
    organization_id: uuid.UUID
    sequence_index:  int
    text:            str
    similarity:      float
    title:           str
    category:        Optional[str] = None
    description:     Optional[str] = None


@dataclass
class SearchResult:
    """
    ``found`` is False when the search ran but nothing cleared the
    threshold. A search that could not run raises RetrievalError instead.
    """
    query:           str
    organization_id: uuid.UUID
    threshold:       float
    top_k:           int
    hits:            list[SearchHit] = field(default_factory=list)
    candidates:      int   = 0      # chunks scored before thresholding
    elapsed_ms:      float = 0.0

    @property
    def found(self) -> bool:
        return bool(self.hits)

    def format_context(self) -> str:
        return format_context(self.hits)

    def as_documents(self) -> list[LCDocument]:
        """Hits as LangChain Documents, for chains that consume a retriever's output."""
        return [
            LCDocument(
                page_content=hit.text,
                metadata={
                    "chunk_id":        str(hit.chunk_id),
                    "document_id":     str(hit.document_id),
                    "organization_id": str(hit.organization_id),
                    "sequence_index":  hit.sequence_index,
                    "title":           hit.title,
                    "category":        hit.category,
                    "score":           hit.similarity,
                },
            )
            for hit in self.hits
        ]


def format_context(hits: list[SearchHit]) -> str:
    """
    Plain-text context block for the answer generator:

        [Document 1] Leave Policy (87.3% match)
        Employees receive 15 vacation days per year...

        ---

        [Document 2] ...
    """
    blocks = [
        f"[Document {n}] {hit.title} ({hit.similarity * 100:.1f}% match)\n{hit.text}"
        for n, hit in enumerate(hits, start=1)
    ]
    return "\n\n---\n\n".join(blocks)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class RetrievalEngine:
    """
    Read-only; any number of concurrent searches may share one instance.

    Usage:
        engine = RetrievalEngine(store, EmbeddingClient())
        result = await engine.search("How many vacation days?", org_id, threshold=0.5)
        if not result.found:
            ...  # fall back to NOT_FOUND_MESSAGE
    """

    def __init__(self, store: TenantStore, embeddings: EmbeddingClient) -> None:
        self._store      = store
        self._embeddings = embeddings

    async def search(
        self,
        query_text: str,
        organization_id: Optional[Union[uuid.UUID, str]],
        threshold: Optional[float] = None,
        top_k: Optional[int] = None,
    ) -> SearchResult:
        org_id    = self._require_organization(organization_id)
        threshold = settings.retrieval_default_threshold if threshold is None else threshold
        top_k     = settings.retrieval_default_top_k if top_k is None else top_k
        self._validate_params(query_text, threshold, top_k)

        t0 = time.monotonic()

        # ── Step 1: Embed the query ──────────────────────────────────────
        try:
            query_vector = await self._embeddings.embed(query_text)
        except EmbeddingServiceError as exc:
            logger.error("Search embedding failed | org=%s error=%s", org_id, exc.message)
            raise RetrievalError(f"Search is temporarily unavailable: {exc.message}") from exc

        # ── Step 2: Candidate chunks (published + enabled, this org only) ─
        candidates = await self._store.searchable_chunks(org_id)
        for chunk in candidates:
            self._check_isolation(org_id, chunk)
        candidates = [c for c in candidates if len(c.embedding) == len(query_vector)]

        # ── Step 3: Score, threshold, order, cut ─────────────────────────
        scored = self._score(query_vector, candidates)
        kept = [(sim, c) for sim, c in scored if sim > threshold]
        kept.sort(key=lambda item: (-item[0], item[1].document_id, item[1].sequence_index))

        hits: list[SearchHit] = []
        for similarity, chunk in kept[:top_k]:
            hits.append(
                SearchHit(
                    chunk_id=chunk.chunk_id,
                    document_id=chunk.document_id,
                    organization_id=chunk.organization_id,
                    sequence_index=chunk.sequence_index,
                    text=chunk.text,
                    similarity=round(similarity, 6),
                    title=chunk.title,
                    category=chunk.category,
                    description=chunk.description,
                )
            )

        elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "Search | org=%s candidates=%d above_threshold=%d returned=%d "
            "threshold=%.2f top_k=%d elapsed_ms=%.0f",
            org_id, len(candidates), len(kept), len(hits), threshold, top_k, elapsed_ms,
        )
        return SearchResult(
            query=query_text,
            organization_id=org_id,
            threshold=threshold,
            top_k=top_k,
            hits=hits,
            candidates=len(candidates),
            elapsed_ms=elapsed_ms,
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _require_organization(organization_id) -> uuid.UUID:
        if organization_id is None or organization_id == "":
            raise OrganizationRequired("Search requires an organization context.")
        if isinstance(organization_id, uuid.UUID):
            return organization_id
        try:
            return uuid.UUID(str(organization_id))
        except ValueError:
            raise OrganizationRequired(f"Invalid organization id: {organization_id!r}") from None

    @staticmethod
    def _check_isolation(org_id: uuid.UUID, chunk: SearchableChunk) -> None:
        if chunk.organization_id != org_id:
            logger.critical(
                "ISOLATION VIOLATION | requested_org=%s chunk=%s chunk_org=%s",
                org_id, chunk.chunk_id, chunk.organization_id,
            )
            raise IsolationViolation(f"Chunk {chunk.chunk_id} belongs to another organization")

    @staticmethod
    def _validate_params(query_text: str, threshold: float, top_k: int) -> None:
        if not query_text or not query_text.strip():
            raise ValidationFailed("Query must not be empty.", field="query")
        if not 0.0 <= threshold <= 1.0:
            raise ValidationFailed(
                f"threshold must be between 0.0 and 1.0, got {threshold}", field="threshold",
            )
        if not 1 <= top_k <= settings.retrieval_max_top_k:
            raise ValidationFailed(
                f"top_k must be between 1 and {settings.retrieval_max_top_k}, got {top_k}",
                field="top_k",
            )

    @staticmethod
    def _score(
        query_vector: list[float], candidates: list[SearchableChunk],
    ) -> list[tuple[float, SearchableChunk]]:
        """Cosine similarity of the query against every candidate, in one matrix product."""
        if not candidates:
            return []

        matrix = np.asarray([c.embedding for c in candidates], dtype=np.float64)
        query  = np.asarray(query_vector, dtype=np.float64)

        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        dots  = matrix @ query
        # Zero vectors score 0 instead of NaN.
        sims = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)
        return [(float(s), c) for s, c in zip(sims, candidates)]
