"""
Celery Tasks — Document Processing

Task: process_document(document_id, organization_id)
  Runs IngestionPipeline.process. The pipeline owns every state change
  (claim → completed | failed) so the task never retries on its own:
  a failed document stays failed until an admin reprocesses it.

Task: sweep_documents (Celery beat, every 60 s)
  Fails documents stuck in ``processing`` and re-queues published
  documents left ``pending`` (broker unavailable at upload time).

Each task run gets its own engine: asyncio.run() creates a fresh event
loop per task and async connection pools cannot cross loops.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

from celery import Task

from policy_rag.core.config import settings
from policy_rag.db.session import build_engine, build_session_factory
from policy_rag.processing.embeddings import EmbeddingClient
from policy_rag.services.ingestion import TaskPublisher
from policy_rag.services.pipeline import IngestionPipeline, sweep_documents as run_sweep
from policy_rag.storage.blob import S3BlobStore
from policy_rag.store.tenant_store import TenantStore
from policy_rag.workers.celery_app import celery_app

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    import concurrent.futures
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


async def _with_store(work: Callable[[TenantStore], Awaitable[T]]) -> T:
    engine = build_engine(settings.database_url)
    try:
        return await work(TenantStore(build_session_factory(engine)))
    finally:
        await engine.dispose()


# ---------------------------------------------------------------------------
# Main processing task
# ---------------------------------------------------------------------------

@celery_app.task(
    name="policy_rag.workers.tasks.process_document",
    bind=True,
    acks_late=True,
    reject_on_worker_lost=True,
    soft_time_limit=270,
    time_limit=330,
)
def process_document(
    self: Task,
    *,
    document_id:     str,
    organization_id: str,
) -> dict[str, Any]:
    """download → extract → chunk → embed → persist, for one document."""

    async def _work(store: TenantStore) -> dict[str, Any]:
        pipeline = IngestionPipeline(store, S3BlobStore(), EmbeddingClient())
        result = await pipeline.process(organization_id, document_id)
        return result.as_dict()

    return run_async(_with_store(_work))


# ---------------------------------------------------------------------------
# Sweeper: runs every 60 seconds via Celery Beat
# ---------------------------------------------------------------------------

@celery_app.task(
    name="policy_rag.workers.tasks.sweep_documents",
    acks_late=True,
    soft_time_limit=55,
    time_limit=60,
)
def sweep_documents() -> dict[str, int]:
    async def _work(store: TenantStore) -> dict[str, int]:
        report = await run_sweep(store, TaskPublisher())
        return report.as_dict()

    return run_async(_with_store(_work))


# ---------------------------------------------------------------------------
# Health check task
# ---------------------------------------------------------------------------

@celery_app.task(name="policy_rag.workers.tasks.health_check")
def health_check() -> dict[str, str]:
    return {"status": "ok", "worker": "healthy"}
