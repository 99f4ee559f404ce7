"""
Ingestion Pipeline — Processing State Machine

    pending ──claim──► processing ──complete──► completed
                            │                      │
                            └──fail──► failed      │
                                         │         │
                 pending ◄──reprocess────┴─────────┘

process(organization_id, document_id):
  1. Claim: conditional UPDATE pending → processing, only for published
     documents. Zero rows → another worker owns it, it was deleted, or it
     is not published → SKIPPED.
  2. Download the stored file (organization-prefixed key).
  3. Extract text (TextExtractor; terminal failures, never retried).
  4. Chunk (fixed windows with overlap).
  5. Embed every chunk (timeout-bounded).
  6. Complete: in ONE transaction, conditional on the document still being
     ``processing``, delete previous chunks and insert the new ones. If the
     document was deleted mid-flight nothing is written → ABORTED.

Any failure in 2–5 marks the document failed with a human-readable message.
Prior chunks from an earlier successful run survive a failed reprocess,
because chunks are only replaced in step 6.

The pipeline never retries on its own. Recovery is an explicit reprocess
(completed|failed → pending) or the sweeper below.

Sweeper (Celery beat, see workers/tasks.py), per organization:
  • published documents left ``pending`` longer than STALE_PENDING_MINUTES
    are re-published to the queue (broker was down at upload time);
  • documents ``processing`` longer than STUCK_PROCESSING_MINUTES are marked
    failed (the worker died mid-run).
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Protocol, Union

from policy_rag.core.config import settings
from policy_rag.core.errors import IsolationViolation, NotFound, PolicyRagError
from policy_rag.models.base import utcnow
from policy_rag.models.documents import Document, LifecycleStatus
from policy_rag.processing.chunking import chunk_text
from policy_rag.processing.embeddings import EmbeddingClient
from policy_rag.processing.extractor import TextExtractor
from policy_rag.storage.blob import BlobStore
from policy_rag.store.tenant_store import TenantStore

logger = logging.getLogger(__name__)

IdLike = Union[uuid.UUID, str]


class PipelineOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED    = "failed"
    SKIPPED   = "skipped"    # claim matched zero rows
    ABORTED   = "aborted"    # document deleted while processing


@dataclass
class PipelineResult:
    outcome:         PipelineOutcome
    document_id:     uuid.UUID
    organization_id: uuid.UUID
    chunk_count:     int = 0
    extracted_text_length: int = 0
    error:           Optional[str] = None
    elapsed_ms:      float = 0.0

    def as_dict(self) -> dict:
        return {
            "status":                self.outcome.value,
            "document_id":           str(self.document_id),
            "organization_id":       str(self.organization_id),
            "chunk_count":           self.chunk_count,
            "extracted_text_length": self.extracted_text_length,
            "error":                 self.error,
        }


class TaskPublisherProtocol(Protocol):
    async def publish_ingestion_task(
        self, document_id: uuid.UUID, organization_id: uuid.UUID,
    ) -> None: ...


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class IngestionPipeline:
    """
    One run per (organization, document). Collaborators are injected so
    workers use S3 + OpenAI and tests use in-memory fakes.
    """

    def __init__(
        self,
        store:      TenantStore,
        blobs:      BlobStore,
        embeddings: EmbeddingClient,
        extractor:  Optional[TextExtractor] = None,
        *,
        chunk_size:      Optional[int] = None,
        chunk_overlap:   Optional[int] = None,
        min_chunk_chars: Optional[int] = None,
    ) -> None:
        self._store      = store
        self._blobs      = blobs
        self._embeddings = embeddings
        self._extractor  = extractor or TextExtractor()
        self._chunk_size      = chunk_size or settings.chunk_size
        self._chunk_overlap   = settings.chunk_overlap if chunk_overlap is None else chunk_overlap
        self._min_chunk_chars = settings.min_chunk_chars if min_chunk_chars is None else min_chunk_chars

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def process(self, organization_id: IdLike, document_id: IdLike) -> PipelineResult:
        org_id = uuid.UUID(str(organization_id))
        doc_id = uuid.UUID(str(document_id))
        t0 = time.monotonic()

        def result(outcome: PipelineOutcome, **kwargs) -> PipelineResult:
            return PipelineResult(
                outcome=outcome,
                document_id=doc_id,
                organization_id=org_id,
                elapsed_ms=(time.monotonic() - t0) * 1000,
                **kwargs,
            )

        # ---- Step 1: Claim ---------------------------------------------
        if not await self._store.claim_for_processing(org_id, doc_id):
            logger.info("Processing skipped (not claimable) | doc=%s org=%s", doc_id, org_id)
            return result(PipelineOutcome.SKIPPED)

        logger.info("Processing | doc=%s org=%s", doc_id, org_id)

        try:
            await self._store.record_activity(
                org_id, "document.processing_started", resource=f"document:{doc_id}",
            )
            doc = await self._store.get_document(org_id, doc_id)

            # ---- Step 2: Download ------------------------------------------
            data = await self._blobs.get(org_id, doc.storage_key)

            # ---- Step 3: Extract (CPU-bound; off the event loop) ------------
            loop = asyncio.get_running_loop()
            extraction = await loop.run_in_executor(
                None, self._extractor.extract, data, doc.media_type,
            )

            # ---- Step 4: Chunk -----------------------------------------------
            spans = chunk_text(
                extraction.text,
                size=self._chunk_size,
                overlap=self._chunk_overlap,
                min_chunk_chars=self._min_chunk_chars,
            )
            logger.info("Chunked | doc=%s chunks=%d chars=%d", doc_id, len(spans), len(extraction.text))

            # ---- Step 5: Embed -----------------------------------------------
            vectors = await self._embeddings.embed_many([span.text for span in spans])

            # ---- Step 6: Complete (chunk swap, conditional) -----------------
            completed = await self._store.complete_processing(
                org_id,
                doc_id,
                chunks=[(span.text, vector) for span, vector in zip(spans, vectors)],
                extracted_text_length=len(extraction.text),
            )

        except NotFound:
            logger.warning("Document vanished after claim | doc=%s org=%s", doc_id, org_id)
            return result(PipelineOutcome.ABORTED)
        except IsolationViolation as exc:
            await self._fail(org_id, doc_id, "Internal isolation check failed.", exc.error_code)
            raise
        except PolicyRagError as exc:
            return await self._fail(org_id, doc_id, exc.message, exc.error_code, result=result)
        except Exception as exc:
            logger.exception("Unexpected processing error | doc=%s org=%s", doc_id, org_id)
            message = f"Unexpected error during processing ({type(exc).__name__}): {exc}"
            return await self._fail(org_id, doc_id, message, "INTERNAL_ERROR", result=result)

        if not completed:
            logger.warning(
                "Processing aborted: document deleted or reset mid-flight | doc=%s org=%s",
                doc_id, org_id,
            )
            return result(PipelineOutcome.ABORTED)

        await self._store.record_activity(
            org_id,
            "document.processing_completed",
            resource=f"document:{doc_id}",
            details={
                "chunk_count":           len(spans),
                "extracted_text_length": len(extraction.text),
                "strategy":              extraction.strategy,
                "page_count":            extraction.page_count,
            },
        )
        outcome = result(
            PipelineOutcome.COMPLETED,
            chunk_count=len(spans),
            extracted_text_length=len(extraction.text),
        )
        logger.info(
            "Processing complete | doc=%s org=%s chunks=%d elapsed_ms=%.0f",
            doc_id, org_id, outcome.chunk_count, outcome.elapsed_ms,
        )
        return outcome

    # ------------------------------------------------------------------
    # Reprocess
    # ------------------------------------------------------------------

    async def request_reprocess(
        self, organization_id: IdLike, document_id: IdLike, *, user_id: Optional[str] = None,
    ) -> Document:
        """
        completed|failed → pending. Raises InvalidTransition otherwise.
        The caller enqueues the document afterwards.
        """
        doc = await self._store.reset_for_reprocess(organization_id, document_id)
        await self._store.record_activity(
            doc.organization_id,
            "document.reprocess_requested",
            user_id=user_id,
            resource=f"document:{doc.id}",
        )
        logger.info("Reprocess requested | doc=%s org=%s user=%s", doc.id, doc.organization_id, user_id)
        return doc

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _fail(self, org_id, doc_id, message: str, error_code: str, *, result=None):
        marked = await self._store.mark_failed(org_id, doc_id, message)
        if not marked:
            logger.warning("Failure not recorded, document gone | doc=%s org=%s", doc_id, org_id)
            return result(PipelineOutcome.ABORTED) if result else None

        logger.error(
            "Processing failed | doc=%s org=%s code=%s error=%s",
            doc_id, org_id, error_code, message,
        )
        try:
            await self._store.record_activity(
                org_id,
                "document.processing_failed",
                resource=f"document:{doc_id}",
                details={"error": message, "error_code": error_code},
                success=False,
            )
        except Exception:
            # The failed status is already committed.
            logger.exception("Audit write failed | doc=%s org=%s action=processing_failed", doc_id, org_id)
        return result(PipelineOutcome.FAILED, error=message) if result else None


# ---------------------------------------------------------------------------
# Sweeper
# ---------------------------------------------------------------------------

@dataclass
class SweepReport:
    requeued:       list[uuid.UUID] = field(default_factory=list)
    timed_out:      list[uuid.UUID] = field(default_factory=list)
    organizations:  int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "organizations": self.organizations,
            "requeued":      len(self.requeued),
            "timed_out":     len(self.timed_out),
        }


async def sweep_documents(
    store:     TenantStore,
    publisher: TaskPublisherProtocol,
    *,
    now: Optional[datetime] = None,
    stale_pending_minutes:    Optional[int] = None,
    stuck_processing_minutes: Optional[int] = None,
) -> SweepReport:
    """
    Re-queue stale pending documents and fail stuck processing ones,
    organization by organization.
    """
    now = now or utcnow()
    stale_minutes = settings.stale_pending_minutes if stale_pending_minutes is None else stale_pending_minutes
    stuck_minutes = settings.stuck_processing_minutes if stuck_processing_minutes is None else stuck_processing_minutes
    timeout_message = (
        f"Processing timed out after {stuck_minutes} minutes. "
        "Reprocess the document to try again."
    )

    report = SweepReport()
    for org_id in await store.list_organization_ids():
        report.organizations += 1

        stuck = await store.fail_stuck_processing(
            org_id, now - timedelta(minutes=stuck_minutes), timeout_message,
        )
        for doc_id in stuck:
            logger.warning("Stuck document failed | doc=%s org=%s", doc_id, org_id)
            await store.record_activity(
                org_id,
                "document.processing_timed_out",
                resource=f"document:{doc_id}",
                details={"timeout_minutes": stuck_minutes},
                success=False,
            )
        report.timed_out.extend(stuck)

        stale = await store.list_stale_pending(org_id, now - timedelta(minutes=stale_minutes))
        for doc_id in stale:
            try:
                await publisher.publish_ingestion_task(document_id=doc_id, organization_id=org_id)
            except Exception as exc:
                logger.error("Re-queue failed | doc=%s org=%s error=%s", doc_id, org_id, exc)
                continue
            logger.info("Re-queued stale document | doc=%s org=%s", doc_id, org_id)
            report.requeued.append(doc_id)

    logger.info(
        "Sweep done | orgs=%d requeued=%d timed_out=%d",
        report.organizations, len(report.requeued), len(report.timed_out),
    )
    return report


def is_published(document: Document) -> bool:
    return document.lifecycle_status == LifecycleStatus.PUBLISHED.value
