"""
Document Service — upload and administrative operations

Upload flow (POST /api/v1/documents/upload):
  1. Validate title, size and file type (magic bytes, never Content-Type)
  2. Store the bytes under organizations/<org_id>/documents/<doc_id><ext>
  3. Insert the document row (processing_status=pending)
  4. Write an audit log entry
  5. If the document is published, publish a processing task
  6. Return immediately; processing happens in a Celery worker

Administrative operations: list / get / edit metadata / toggle enabled /
reprocess / delete / list chunks / stats. Each one is scoped to the caller's
verified organization; a document of another organization is reported
exactly like a missing one.

Security invariants enforced here:
  - organization_id always comes from CallerContext (membership-verified),
    never from the request body.
  - Storage keys are constructed server-side; the filename is sanitized
    before it is stored for display.

Audit events written:
  - document.uploaded / document.upload_failed / document.queue_failed
  - document.updated / document.enabled_changed / document.deleted
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from typing import Any, Optional, Sequence

from policy_rag.auth.context import CallerContext
from policy_rag.core.config import settings
from policy_rag.core.errors import StorageError, ValidationFailed
from policy_rag.models.documents import Chunk, Document, LifecycleStatus, ProcessingStatus
from policy_rag.processing.extractor import (
    SUPPORTED_MEDIA_TYPES,
    detect_media_type,
    get_extension,
)
from policy_rag.services.pipeline import IngestionPipeline, TaskPublisherProtocol, is_published
from policy_rag.storage.blob import BlobStore, document_key
from policy_rag.store.tenant_store import TenantStore

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS: frozenset[str] = frozenset({".pdf", ".docx", ".txt", ".md", ".markdown"})
MAX_TITLE_LENGTH = 255
MAX_TAGS = 20


def _sanitize_filename(filename: str) -> str:
    """
    Strip path components and replace unsafe characters.
    Returns only the basename with OS-safe characters.
    """
    basename = filename.replace("\\", "/").rsplit("/", 1)[-1]
    safe = re.sub(r"[^a-zA-Z0-9._\-]", "_", basename)
    return safe[:200]


def _clean_tags(tags: Optional[Sequence[str]]) -> list[str]:
    cleaned: list[str] = []
    for tag in tags or []:
        tag = tag.strip()
        if tag and tag not in cleaned:
            cleaned.append(tag[:50])
    if len(cleaned) > MAX_TAGS:
        raise ValidationFailed(f"At most {MAX_TAGS} tags are allowed.", field="tags")
    return cleaned


def _validate_title(title: str) -> str:
    title = (title or "").strip()
    if not title or len(title) > MAX_TITLE_LENGTH:
        raise ValidationFailed(
            f"Title must be 1-{MAX_TITLE_LENGTH} characters.",
            error_code="INVALID_TITLE",
            field="title",
        )
    return title


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class DocumentService:
    """
    Stateless service object, one per request.
    All dependencies are injected (testable, no hidden globals).
    """

    def __init__(
        self,
        store:     TenantStore,
        blobs:     BlobStore,
        publisher: TaskPublisherProtocol,
        pipeline:  IngestionPipeline,
    ) -> None:
        self._store     = store
        self._blobs     = blobs
        self._publisher = publisher
        self._pipeline  = pipeline

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    async def upload(
        self,
        caller:   CallerContext,
        *,
        filename: str,
        data:     bytes,
        title:    str,
        description: Optional[str] = None,
        category:    Optional[str] = None,
        tags:        Optional[Sequence[str]] = None,
        lifecycle_status: str = LifecycleStatus.DRAFT.value,
        enabled: bool = True,
    ) -> tuple[Document, bool]:
        """Store the file and the document row. Returns the document and whether a task was queued."""
        org_id = caller.organization_id

        # ---- Step 1: Validate ---------------------------------------------
        title = _validate_title(title)
        tags  = _clean_tags(tags)
        lifecycle = self._validate_lifecycle(lifecycle_status)

        if not filename or not data:
            raise ValidationFailed(
                "No file was provided in the request.", error_code="MISSING_FILE", field="file",
            )
        if len(data) > settings.max_upload_bytes:
            raise ValidationFailed(
                f"Uploaded file is {len(data):,} bytes; limit is {settings.max_upload_bytes:,} bytes.",
                error_code="FILE_TOO_LARGE",
                field="file",
            )

        media_type = detect_media_type(filename, data[:8])
        ext = get_extension(filename)
        if media_type not in SUPPORTED_MEDIA_TYPES or ext not in ALLOWED_EXTENSIONS:
            raise ValidationFailed(
                f"'{filename}' has an unsupported type '{media_type}'. Allowed: PDF, DOCX, TXT, MD.",
                error_code="UNSUPPORTED_FILE_TYPE",
                field="file",
            )

        safe_filename = _sanitize_filename(filename)
        document_id   = uuid.uuid4()
        key = document_key(org_id, document_id, ext)

        logger.info(
            "Upload start | org=%s user=%s file=%s size=%d type=%s",
            org_id, caller.user_id, safe_filename, len(data), media_type,
        )

        # ---- Step 2: Store the bytes --------------------------------------
        try:
            await self._blobs.put(org_id, key, data, media_type)
        except StorageError as exc:
            await self._store.record_activity(
                org_id,
                "document.upload_failed",
                user_id=caller.user_id,
                resource=f"document:{document_id}",
                details={"error": exc.message, "stage": "storage"},
                success=False,
            )
            raise

        # ---- Step 3: Persist the row --------------------------------------
        try:
            doc = await self._store.create_document(
                org_id,
                document_id=document_id,
                title=title,
                description=description,
                category=category,
                tags=tags,
                file_name=safe_filename,
                storage_key=key,
                media_type=media_type,
                byte_size=len(data),
                lifecycle_status=lifecycle,
                enabled=enabled,
                uploaded_by=caller.user_id,
            )
        except Exception:
            # Do not leave an orphaned blob behind.
            logger.exception("Document insert failed, removing blob | org=%s key=%s", org_id, key)
            try:
                await self._blobs.delete(org_id, key)
            except StorageError:
                logger.error("Orphan blob cleanup failed | org=%s key=%s", org_id, key)
            raise

        # ---- Step 4: Audit ------------------------------------------------
        await self._store.record_activity(
            org_id,
            "document.uploaded",
            user_id=caller.user_id,
            resource=f"document:{document_id}",
            details={
                "title":            title,
                "file_name":        safe_filename,
                "size_bytes":       len(data),
                "media_type":       media_type,
                "lifecycle_status": lifecycle,
            },
        )

        # ---- Step 5: Enqueue (published only) -----------------------------
        queued = False
        if is_published(doc):
            queued = await self._enqueue(doc, caller)

        return doc, queued

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_documents(self, caller: CallerContext, **filters: Any) -> tuple[list[Document], int]:
        return await self._store.list_documents(caller.organization_id, **filters)

    async def get_document(self, caller: CallerContext, document_id: uuid.UUID) -> Document:
        return await self._store.get_document(caller.organization_id, document_id)

    async def list_chunks(self, caller: CallerContext, document_id: uuid.UUID) -> list[Chunk]:
        return await self._store.list_chunks(caller.organization_id, document_id)

    async def stats(self, caller: CallerContext) -> dict[str, Any]:
        return await self._store.document_stats(caller.organization_id)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def update_metadata(
        self, caller: CallerContext, document_id: uuid.UUID, changes: dict[str, Any],
    ) -> Document:
        """
        Editorial change. Publishing a document that is still ``pending``
        hands it to the pipeline.
        """
        if not changes:
            raise ValidationFailed("No changes supplied.")
        if "title" in changes:
            changes["title"] = _validate_title(changes["title"])
        if "tags" in changes:
            changes["tags"] = _clean_tags(changes["tags"])
        if "lifecycle_status" in changes:
            changes["lifecycle_status"] = self._validate_lifecycle(changes["lifecycle_status"])

        before = await self._store.get_document(caller.organization_id, document_id)
        doc = await self._store.update_document_metadata(caller.organization_id, document_id, changes)

        await self._store.record_activity(
            caller.organization_id,
            "document.updated",
            user_id=caller.user_id,
            resource=f"document:{doc.id}",
            details={"fields": sorted(changes), "version": doc.version},
        )

        became_published = is_published(doc) and not is_published(before)
        if became_published and doc.processing_status == ProcessingStatus.PENDING.value:
            await self._enqueue(doc, caller)
        return doc

    async def set_enabled(self, caller: CallerContext, document_id: uuid.UUID, enabled: bool) -> Document:
        doc = await self._store.set_enabled(caller.organization_id, document_id, enabled)
        await self._store.record_activity(
            caller.organization_id,
            "document.enabled_changed",
            user_id=caller.user_id,
            resource=f"document:{doc.id}",
            details={"enabled": enabled},
        )
        return doc

    async def reprocess(self, caller: CallerContext, document_id: uuid.UUID) -> Document:
        doc = await self._pipeline.request_reprocess(
            caller.organization_id, document_id, user_id=caller.user_id,
        )
        if is_published(doc):
            await self._enqueue(doc, caller)
        return doc

    async def delete(self, caller: CallerContext, document_id: uuid.UUID) -> None:
        """
        Remove the row and its chunks, then the blob. A pipeline run in
        flight for this document fails its completion step and writes nothing.
        """
        key = await self._store.delete_document(caller.organization_id, document_id)
        try:
            await self._blobs.delete(caller.organization_id, key)
        except StorageError as exc:
            # The row is gone; an unreachable blob is only a storage-cost issue.
            logger.error("Blob delete failed | org=%s key=%s error=%s", caller.organization_id, key, exc)

        await self._store.record_activity(
            caller.organization_id,
            "document.deleted",
            user_id=caller.user_id,
            resource=f"document:{document_id}",
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _enqueue(self, doc: Document, caller: CallerContext) -> bool:
        try:
            await self._publisher.publish_ingestion_task(
                document_id=doc.id, organization_id=doc.organization_id,
            )
            return True
        except Exception as exc:
            # Non-fatal: the document is stored and the sweeper re-queues
            # published documents left pending.
            logger.error("Failed to publish processing task | doc=%s error=%s", doc.id, exc)
            await self._store.record_activity(
                doc.organization_id,
                "document.queue_failed",
                user_id=caller.user_id,
                resource=f"document:{doc.id}",
                details={"error": str(exc)},
                success=False,
            )
            return False

    @staticmethod
    def _validate_lifecycle(value: str) -> str:
        try:
            return LifecycleStatus(value).value
        except ValueError:
            raise ValidationFailed(
                f"lifecycle_status must be one of: draft, published, archived (got '{value}').",
                field="lifecycle_status",
            ) from None


# ---------------------------------------------------------------------------
# Task publisher: thin abstraction over Celery apply_async()
# Injected into DocumentService so it can be replaced in tests.
# ---------------------------------------------------------------------------

class TaskPublisher:
    """
    Sends the document processing task to the Celery broker.
    Import is deferred so the broker connection is not required at module load time.
    """

    async def publish_ingestion_task(
        self,
        document_id:     uuid.UUID,
        organization_id: uuid.UUID,
    ) -> None:
        """Dispatch process_document in a thread executor to keep the event loop free."""
        from policy_rag.workers.tasks import process_document

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            lambda: process_document.apply_async(
                kwargs={
                    "document_id":     str(document_id),
                    "organization_id": str(organization_id),
                },
            ),
        )
        logger.info(
            "Processing task published | doc=%s org=%s",
            document_id, organization_id,
        )
