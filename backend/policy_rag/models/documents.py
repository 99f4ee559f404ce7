"""
SQLAlchemy ORM Models — Documents, Chunks & Audit Logs

Tenant scoping is NOT enforced by the models: there is no row-level
security. Every read and write goes through store/tenant_store.py, which
requires an organization_id on each method and adds the WHERE clause.

Two status columns live on Document and are independent:

  lifecycle_status  (editorial)   draft | published | archived
  processing_status (pipeline)    pending → processing → completed
                                                       ↘ failed

Chunk.organization_id is a deliberate denormalized copy of the parent
document's organization_id so retrieval filters chunks by tenant with a
single indexed predicate.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from policy_rag.models.base import Base, utcnow


class LifecycleStatus(str, Enum):
    DRAFT     = "draft"
    PUBLISHED = "published"
    ARCHIVED  = "archived"


class ProcessingStatus(str, Enum):
    PENDING    = "pending"
    PROCESSING = "processing"
    COMPLETED  = "completed"
    FAILED     = "failed"


# ---------------------------------------------------------------------------
# Document model: documents
# ---------------------------------------------------------------------------

class Document(Base):
    """A policy file and its ingestion state."""

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "lifecycle_status IN ('draft', 'published', 'archived')",
            name="documents_lifecycle_status_check",
        ),
        CheckConstraint(
            "processing_status IN ('pending', 'processing', 'completed', 'failed')",
            name="documents_processing_status_check",
        ),
        Index("idx_documents_organization_id", "organization_id"),
        Index("idx_documents_org_processing",  "organization_id", "processing_status"),
        Index("idx_documents_org_lifecycle",   "organization_id", "lifecycle_status", "enabled"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Tenant scope: set once from the caller's verified membership
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    uploaded_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Editorial metadata
    title:       Mapped[str]           = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category:    Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tags:        Mapped[list]          = mapped_column(JSON, nullable=False, default=list)
    version:     Mapped[int]           = mapped_column(Integer, nullable=False, default=1)

    # Stored file
    storage_key: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="organizations/<org_id>/documents/<doc_id><ext>",
    )
    file_name:  Mapped[str] = mapped_column(Text, nullable=False)
    media_type: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Detected server-side from magic bytes, never the client Content-Type",
    )
    byte_size: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Editorial state + retrieval switch
    lifecycle_status: Mapped[str] = mapped_column(
        Text, nullable=False, default=LifecycleStatus.DRAFT.value,
    )
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Ingestion state machine
    processing_status: Mapped[str] = mapped_column(
        Text, nullable=False, default=ProcessingStatus.PENDING.value,
    )
    processing_error: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated only when processing_status='failed'",
    )
    processing_started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    extracted_text_length: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    chunk_count:           Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} org={self.organization_id} "
            f"lifecycle={self.lifecycle_status} processing={self.processing_status}>"
        )


# ---------------------------------------------------------------------------
# Chunk model: chunks
# ---------------------------------------------------------------------------

class Chunk(Base):
    """
    One overlapping slice of a document's extracted text plus its embedding.
    Created only by the ingestion pipeline; never updated.
    """

    __tablename__ = "chunks"
    __table_args__ = (
        UniqueConstraint("document_id", "sequence_index", name="uq_chunks_position"),
        Index("idx_chunks_organization_id", "organization_id"),
        Index("idx_chunks_document_id",     "document_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    sequence_index: Mapped[int]  = mapped_column(Integer, nullable=False)
    text:           Mapped[str]  = mapped_column(Text, nullable=False)
    embedding:      Mapped[list] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )


# ---------------------------------------------------------------------------
# AuditLog model: audit_logs
# ---------------------------------------------------------------------------

class AuditLog(Base):
    """
    Append-only activity trail, written for uploads, edits, deletions and
    every processing state transition. user_id is NULL for system actions.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("idx_audit_logs_organization_id", "organization_id"),
        Index("idx_audit_logs_created_at",      "created_at"),
    )

    # SQLite only autoincrements INTEGER PRIMARY KEY
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )

    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    action: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="e.g. document.uploaded, document.processing_failed",
    )
    resource: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="e.g. document:<uuid>",
    )
    details: Mapped[dict] = mapped_column(
        "metadata",
        JSON,
        nullable=False,
        default=dict,
    )
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<AuditLog id={self.id} org={self.organization_id} "
            f"action={self.action!r} success={self.success}>"
        )
