"""
Tenant Store — the single persistence gateway for tenant data.

Every method that reads or writes Documents, Chunks or AuditLogs takes an
explicit ``organization_id`` and adds it to the WHERE clause itself. There is
no "query everything" method: a missing organization_id raises
IsolationViolation before any SQL is issued. Organization and Membership
lookups are the only unscoped reads, because they define the boundary.

State transitions of the ingestion pipeline are conditional UPDATEs whose
rowcount is the source of truth:

  claim_for_processing   pending    → processing   WHERE pending AND published
  complete_processing    processing → completed    WHERE processing (then swap chunks)
  mark_failed            processing → failed       WHERE processing
  reset_for_reprocess    completed|failed → pending

Zero rows affected means the document was claimed by another worker, was
deleted, or is no longer eligible; the caller decides what that means.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Sequence, Union

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from policy_rag.core.errors import (
    InvalidTransition,
    IsolationViolation,
    NotFound,
    ValidationFailed,
)
from policy_rag.models.base import utcnow
from policy_rag.models.documents import (
    AuditLog,
    Chunk,
    Document,
    LifecycleStatus,
    ProcessingStatus,
)
from policy_rag.models.tenancy import Membership, Organization, Role

logger = logging.getLogger(__name__)

IdLike = Union[uuid.UUID, str]

# Fields a metadata edit may touch. Everything else is owned by the pipeline.
EDITABLE_FIELDS = frozenset({"title", "description", "category", "tags", "lifecycle_status"})


@dataclass(frozen=True)
class SearchableChunk:
    """A chunk eligible for retrieval, joined with its parent's display fields."""

    chunk_id:        uuid.UUID
    document_id:     uuid.UUID
    organization_id: uuid.UUID
    sequence_index:  int
    text:            str
    embedding:       list
    title:           str
    category:        Optional[str]
    description:     Optional[str]


def _require_org(organization_id: Optional[IdLike]) -> uuid.UUID:
    if organization_id is None or organization_id == "":
        raise IsolationViolation("Tenant data access attempted without an organization_id")
    if isinstance(organization_id, uuid.UUID):
        return organization_id
    try:
        return uuid.UUID(str(organization_id))
    except ValueError:
        raise IsolationViolation(f"Malformed organization_id: {organization_id!r}") from None


def _as_document_id(document_id: IdLike) -> uuid.UUID:
    if isinstance(document_id, uuid.UUID):
        return document_id
    try:
        return uuid.UUID(str(document_id))
    except ValueError:
        raise NotFound("Document", document_id) from None


def _escape_like(text: str) -> str:
    """Make LIKE wildcards in user input match literally (escape char: backslash)."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class TenantStore:
    """Persistence for Organizations, Memberships, Documents, Chunks and AuditLogs."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = session_factory

    # ------------------------------------------------------------------
    # Organizations & memberships (the boundary itself)
    # ------------------------------------------------------------------

    async def create_organization(
        self, name: str, organization_id: Optional[uuid.UUID] = None,
    ) -> Organization:
        org = Organization(id=organization_id or uuid.uuid4(), name=name)
        async with self._sessions() as session, session.begin():
            session.add(org)
        logger.info("Organization created | org=%s name=%s", org.id, name)
        return org

    async def list_organization_ids(self) -> list[uuid.UUID]:
        async with self._sessions() as session:
            result = await session.execute(select(Organization.id).order_by(Organization.created_at))
            return list(result.scalars())

    async def add_membership(
        self, user_id: str, organization_id: IdLike, role: Union[Role, str] = Role.EMPLOYEE,
    ) -> Membership:
        org_id = _require_org(organization_id)
        role_value = Role(role).value
        membership = Membership(user_id=user_id, organization_id=org_id, role=role_value)
        async with self._sessions() as session, session.begin():
            session.add(membership)
        logger.info("Membership added | user=%s org=%s role=%s", user_id, org_id, role_value)
        return membership

    async def get_membership(self, user_id: str, organization_id: IdLike) -> Optional[Membership]:
        org_id = _require_org(organization_id)
        async with self._sessions() as session:
            result = await session.execute(
                select(Membership).where(
                    Membership.user_id == user_id,
                    Membership.organization_id == org_id,
                )
            )
            return result.scalar_one_or_none()

    async def list_memberships_for_user(self, user_id: str) -> list[Membership]:
        async with self._sessions() as session:
            result = await session.execute(
                select(Membership).where(Membership.user_id == user_id)
            )
            return list(result.scalars())

    # ------------------------------------------------------------------
    # Documents: CRUD
    # ------------------------------------------------------------------

    async def create_document(
        self,
        organization_id: IdLike,
        *,
        title:       str,
        file_name:   str,
        storage_key: str,
        media_type:  str,
        byte_size:   int,
        document_id: Optional[uuid.UUID] = None,
        description: Optional[str] = None,
        category:    Optional[str] = None,
        tags:        Optional[list[str]] = None,
        lifecycle_status: Union[LifecycleStatus, str] = LifecycleStatus.DRAFT,
        enabled:     bool = True,
        uploaded_by: Optional[str] = None,
    ) -> Document:
        org_id = _require_org(organization_id)
        doc = Document(
            id=document_id or uuid.uuid4(),
            organization_id=org_id,
            title=title,
            description=description,
            category=category,
            tags=list(tags or []),
            version=1,
            storage_key=storage_key,
            file_name=file_name,
            media_type=media_type,
            byte_size=byte_size,
            lifecycle_status=LifecycleStatus(lifecycle_status).value,
            enabled=enabled,
            processing_status=ProcessingStatus.PENDING.value,
            uploaded_by=uploaded_by,
        )
        async with self._sessions() as session, session.begin():
            session.add(doc)
        return doc

    async def get_document(self, organization_id: IdLike, document_id: IdLike) -> Document:
        org_id = _require_org(organization_id)
        doc_id = _as_document_id(document_id)
        async with self._sessions() as session:
            doc = await self._load_document(session, org_id, doc_id)
        if doc is None:
            raise NotFound("Document", doc_id)
        return doc

    async def list_documents(
        self,
        organization_id: IdLike,
        *,
        lifecycle_status:  Optional[str] = None,
        processing_status: Optional[str] = None,
        category: Optional[str] = None,
        search:   Optional[str] = None,
        enabled:  Optional[bool] = None,
        limit:  int = 50,
        offset: int = 0,
    ) -> tuple[list[Document], int]:
        """Filtered, newest-first page of the organization's documents plus the total count."""
        org_id = _require_org(organization_id)
        conditions = [Document.organization_id == org_id]
        if lifecycle_status:
            conditions.append(Document.lifecycle_status == lifecycle_status)
        if processing_status:
            conditions.append(Document.processing_status == processing_status)
        if category:
            conditions.append(Document.category == category)
        if enabled is not None:
            conditions.append(Document.enabled == enabled)
        if search:
            pattern = f"%{_escape_like(search.strip().lower())}%"
            conditions.append(
                or_(
                    func.lower(Document.title).like(pattern, escape="\\"),
                    func.lower(func.coalesce(Document.description, "")).like(pattern, escape="\\"),
                    func.lower(Document.file_name).like(pattern, escape="\\"),
                )
            )

        async with self._sessions() as session:
            total = await session.scalar(
                select(func.count()).select_from(Document).where(*conditions)
            )
            result = await session.execute(
                select(Document)
                .where(*conditions)
                .order_by(Document.created_at.desc(), Document.id)
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars()), int(total or 0)

    async def update_document_metadata(
        self, organization_id: IdLike, document_id: IdLike, changes: dict[str, Any],
    ) -> Document:
        """Apply an editorial change and bump ``version``. Pipeline-owned fields are rejected."""
        org_id = _require_org(organization_id)
        doc_id = _as_document_id(document_id)

        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValidationFailed(
                f"Fields not editable: {', '.join(sorted(unknown))}",
                field=sorted(unknown)[0],
            )
        if "lifecycle_status" in changes:
            changes = {**changes, "lifecycle_status": LifecycleStatus(changes["lifecycle_status"]).value}

        async with self._sessions() as session, session.begin():
            doc = await self._load_document(session, org_id, doc_id, for_update=True)
            if doc is None:
                raise NotFound("Document", doc_id)
            for field, value in changes.items():
                setattr(doc, field, value)
            doc.version = doc.version + 1
            doc.updated_at = utcnow()
        return doc

    async def set_enabled(
        self, organization_id: IdLike, document_id: IdLike, enabled: bool,
    ) -> Document:
        org_id = _require_org(organization_id)
        doc_id = _as_document_id(document_id)
        async with self._sessions() as session, session.begin():
            doc = await self._load_document(session, org_id, doc_id, for_update=True)
            if doc is None:
                raise NotFound("Document", doc_id)
            doc.enabled = enabled
            doc.updated_at = utcnow()
        return doc

    async def delete_document(self, organization_id: IdLike, document_id: IdLike) -> str:
        """Delete the document and its chunks. Returns the storage key so the caller can remove the blob."""
        org_id = _require_org(organization_id)
        doc_id = _as_document_id(document_id)
        async with self._sessions() as session, session.begin():
            doc = await self._load_document(session, org_id, doc_id, for_update=True)
            if doc is None:
                raise NotFound("Document", doc_id)
            storage_key = doc.storage_key
            # Explicit chunk delete: SQLite does not enforce ON DELETE CASCADE by default.
            await session.execute(
                delete(Chunk).where(Chunk.organization_id == org_id, Chunk.document_id == doc_id)
            )
            await session.execute(
                delete(Document).where(Document.organization_id == org_id, Document.id == doc_id)
            )
        logger.info("Document deleted | doc=%s org=%s", doc_id, org_id)
        return storage_key

    # ------------------------------------------------------------------
    # Processing state machine
    # ------------------------------------------------------------------

    async def claim_for_processing(self, organization_id: IdLike, document_id: IdLike) -> bool:
        """pending → processing. False if already claimed, deleted, or not published."""
        org_id = _require_org(organization_id)
        doc_id = _as_document_id(document_id)
        now = utcnow()
        async with self._sessions() as session, session.begin():
            result = await session.execute(
                update(Document)
                .where(
                    Document.organization_id == org_id,
                    Document.id == doc_id,
                    Document.processing_status == ProcessingStatus.PENDING.value,
                    Document.lifecycle_status == LifecycleStatus.PUBLISHED.value,
                )
                .values(
                    processing_status=ProcessingStatus.PROCESSING.value,
                    processing_started_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def complete_processing(
        self,
        organization_id: IdLike,
        document_id: IdLike,
        *,
        chunks: Sequence[tuple[str, list[float]]],
        extracted_text_length: int,
    ) -> bool:
        """
        processing → completed, replacing every prior chunk in the same transaction.

        ``chunks`` is (text, embedding) in sequence order; sequence_index is the
        position. Returns False, writing nothing, when the document was deleted
        or left ``processing`` while the pipeline ran.
        """
        org_id = _require_org(organization_id)
        doc_id = _as_document_id(document_id)
        now = utcnow()
        async with self._sessions() as session, session.begin():
            result = await session.execute(
                update(Document)
                .where(
                    Document.organization_id == org_id,
                    Document.id == doc_id,
                    Document.processing_status == ProcessingStatus.PROCESSING.value,
                )
                .values(
                    processing_status=ProcessingStatus.COMPLETED.value,
                    processing_error=None,
                    processed_at=now,
                    extracted_text_length=extracted_text_length,
                    chunk_count=len(chunks),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False

            await session.execute(
                delete(Chunk).where(Chunk.organization_id == org_id, Chunk.document_id == doc_id)
            )
            session.add_all(
                Chunk(
                    document_id=doc_id,
                    organization_id=org_id,
                    sequence_index=index,
                    text=text,
                    embedding=[float(v) for v in embedding],
                )
                for index, (text, embedding) in enumerate(chunks)
            )
        return True

    async def mark_failed(self, organization_id: IdLike, document_id: IdLike, error: str) -> bool:
        """processing → failed. Existing chunks are left untouched."""
        org_id = _require_org(organization_id)
        doc_id = _as_document_id(document_id)
        async with self._sessions() as session, session.begin():
            result = await session.execute(
                update(Document)
                .where(
                    Document.organization_id == org_id,
                    Document.id == doc_id,
                    Document.processing_status == ProcessingStatus.PROCESSING.value,
                )
                .values(
                    processing_status=ProcessingStatus.FAILED.value,
                    processing_error=error[:2000],
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def reset_for_reprocess(self, organization_id: IdLike, document_id: IdLike) -> Document:
        """completed|failed → pending. Any other state raises InvalidTransition."""
        org_id = _require_org(organization_id)
        doc_id = _as_document_id(document_id)
        async with self._sessions() as session, session.begin():
            result = await session.execute(
                update(Document)
                .where(
                    Document.organization_id == org_id,
                    Document.id == doc_id,
                    Document.processing_status.in_(
                        (ProcessingStatus.COMPLETED.value, ProcessingStatus.FAILED.value)
                    ),
                )
                .values(
                    processing_status=ProcessingStatus.PENDING.value,
                    processing_error=None,
                    processing_started_at=None,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            doc = await self._load_document(session, org_id, doc_id)
            if doc is None:
                raise NotFound("Document", doc_id)
            if result.rowcount != 1:
                raise InvalidTransition(
                    f"Document {doc_id} is '{doc.processing_status}'; "
                    "only completed or failed documents can be reprocessed."
                )
        return doc

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    async def list_chunks(self, organization_id: IdLike, document_id: IdLike) -> list[Chunk]:
        org_id = _require_org(organization_id)
        doc_id = _as_document_id(document_id)
        async with self._sessions() as session:
            if await self._load_document(session, org_id, doc_id) is None:
                raise NotFound("Document", doc_id)
            result = await session.execute(
                select(Chunk)
                .where(Chunk.organization_id == org_id, Chunk.document_id == doc_id)
                .order_by(Chunk.sequence_index)
            )
            return list(result.scalars())

    async def searchable_chunks(self, organization_id: IdLike) -> list[SearchableChunk]:
        """Chunks of the organization's published, enabled documents."""
        org_id = _require_org(organization_id)
        stmt = (
            select(
                Chunk.id,
                Chunk.document_id,
                Chunk.organization_id,
                Chunk.sequence_index,
                Chunk.text,
                Chunk.embedding,
                Document.title,
                Document.category,
                Document.description,
            )
            .join(Document, Document.id == Chunk.document_id)
            .where(
                Chunk.organization_id == org_id,
                Document.lifecycle_status == LifecycleStatus.PUBLISHED.value,
                Document.enabled.is_(True),
            )
        )
        async with self._sessions() as session:
            result = await session.execute(stmt)
            return [SearchableChunk(*row) for row in result.all()]

    # ------------------------------------------------------------------
    # Sweeper queries
    # ------------------------------------------------------------------

    async def list_stale_pending(self, organization_id: IdLike, older_than: datetime) -> list[uuid.UUID]:
        """Published documents sitting in ``pending`` since before ``older_than``."""
        org_id = _require_org(organization_id)
        async with self._sessions() as session:
            result = await session.execute(
                select(Document.id).where(
                    Document.organization_id == org_id,
                    Document.processing_status == ProcessingStatus.PENDING.value,
                    Document.lifecycle_status == LifecycleStatus.PUBLISHED.value,
                    Document.updated_at < older_than,
                )
            )
            return list(result.scalars())

    async def fail_stuck_processing(
        self, organization_id: IdLike, older_than: datetime, error: str,
    ) -> list[uuid.UUID]:
        """Mark documents claimed before ``older_than`` and still ``processing`` as failed."""
        org_id = _require_org(organization_id)
        async with self._sessions() as session, session.begin():
            result = await session.execute(
                select(Document.id).where(
                    Document.organization_id == org_id,
                    Document.processing_status == ProcessingStatus.PROCESSING.value,
                    Document.processing_started_at < older_than,
                )
            )
            stuck = list(result.scalars())
            if stuck:
                await session.execute(
                    update(Document)
                    .where(
                        Document.organization_id == org_id,
                        Document.id.in_(stuck),
                        Document.processing_status == ProcessingStatus.PROCESSING.value,
                    )
                    .values(
                        processing_status=ProcessingStatus.FAILED.value,
                        processing_error=error,
                        updated_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
        return stuck

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    async def document_stats(self, organization_id: IdLike) -> dict[str, Any]:
        """Counts by lifecycle and processing status, plus chunk diagnostics."""
        org_id = _require_org(organization_id)
        async with self._sessions() as session:
            lifecycle_rows = await session.execute(
                select(Document.lifecycle_status, func.count())
                .where(Document.organization_id == org_id)
                .group_by(Document.lifecycle_status)
            )
            processing_rows = await session.execute(
                select(Document.processing_status, func.count())
                .where(Document.organization_id == org_id)
                .group_by(Document.processing_status)
            )
            total_chunks = await session.scalar(
                select(func.count()).select_from(Chunk).where(Chunk.organization_id == org_id)
            )
            documents_with_chunks = await session.scalar(
                select(func.count(func.distinct(Chunk.document_id))).where(
                    Chunk.organization_id == org_id
                )
            )
            enabled_count = await session.scalar(
                select(func.count()).select_from(Document).where(
                    Document.organization_id == org_id,
                    Document.enabled.is_(True),
                )
            )

        by_lifecycle  = {status.value: 0 for status in LifecycleStatus}
        by_processing = {status.value: 0 for status in ProcessingStatus}
        by_lifecycle.update({status: count for status, count in lifecycle_rows.all()})
        by_processing.update({status: count for status, count in processing_rows.all()})

        total_documents = sum(by_lifecycle.values())
        documents_with_chunks = int(documents_with_chunks or 0)
        total_chunks = int(total_chunks or 0)
        return {
            "total_documents":       total_documents,
            "enabled_documents":     int(enabled_count or 0),
            "by_lifecycle_status":   by_lifecycle,
            "by_processing_status":  by_processing,
            "total_chunks":          total_chunks,
            "documents_with_chunks": documents_with_chunks,
            "avg_chunks_per_document": (
                round(total_chunks / documents_with_chunks, 2) if documents_with_chunks else 0.0
            ),
        }

    # ------------------------------------------------------------------
    # Activity log
    # ------------------------------------------------------------------

    async def record_activity(
        self,
        organization_id: IdLike,
        action: str,
        *,
        user_id:  Optional[str] = None,
        resource: Optional[str] = None,
        details:  Optional[dict] = None,
        success:  bool = True,
    ) -> None:
        org_id = _require_org(organization_id)
        async with self._sessions() as session, session.begin():
            session.add(
                AuditLog(
                    organization_id=org_id,
                    user_id=user_id,
                    action=action,
                    resource=resource,
                    details=details or {},
                    success=success,
                )
            )

    async def recent_activity(self, organization_id: IdLike, limit: int = 50) -> list[AuditLog]:
        org_id = _require_org(organization_id)
        async with self._sessions() as session:
            result = await session.execute(
                select(AuditLog)
                .where(AuditLog.organization_id == org_id)
                .order_by(AuditLog.id.desc())
                .limit(limit)
            )
            return list(result.scalars())

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _load_document(
        session: AsyncSession,
        org_id: uuid.UUID,
        doc_id: uuid.UUID,
        *,
        for_update: bool = False,
    ) -> Optional[Document]:
        stmt = select(Document).where(Document.organization_id == org_id, Document.id == doc_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        return result.scalar_one_or_none()
