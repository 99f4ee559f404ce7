"""
Document API — Pydantic Request/Response Schemas

Covers /api/v1/documents/*:
  - Upload response (202 Accepted)
  - Document detail / list / stats / chunks
  - Metadata edit and enabled toggle bodies
  - The uniform ErrorResponse envelope used by every 4xx/5xx

Design decisions:
  - document_id is always server-generated (UUID4); never client-supplied.
  - organization_id in responses echoes the caller's verified organization.
  - lifecycle_status (editorial) and processing_status (pipeline) are
    separate fields; a document can be published and still pending.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from policy_rag.models.documents import LifecycleStatus, ProcessingStatus


# ---------------------------------------------------------------------------
# Document views
# ---------------------------------------------------------------------------

class DocumentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:                UUID
    organization_id:   UUID
    title:             str
    description:       Optional[str] = None
    category:          Optional[str] = None
    tags:              list[str] = Field(default_factory=list)
    version:           int
    file_name:         str
    media_type:        str
    byte_size:         int
    lifecycle_status:  LifecycleStatus
    enabled:           bool
    processing_status: ProcessingStatus
    processing_error:  Optional[str] = Field(None, description="Set only when processing_status is 'failed'")
    processed_at:      Optional[datetime] = None
    extracted_text_length: int = 0
    chunk_count:       int = 0
    uploaded_by:       Optional[str] = None
    created_at:        datetime
    updated_at:        datetime


class DocumentUploadResponse(BaseModel):
    """
    Returned immediately after a successful upload.
    HTTP 202 — the file is stored but processing is async.
    """
    document_id:       UUID             = Field(..., description="Server-generated document UUID")
    status:            str              = Field("uploaded", description="Upload phase status")
    processing_status: ProcessingStatus = Field(
        ProcessingStatus.PENDING,
        description="Pipeline state — poll GET /documents/{id} for updates",
    )
    queued:            bool             = Field(..., description="True when a processing task was published")
    storage_key:       str              = Field(..., description="Organization-prefixed object key")
    organization_id:   UUID
    title:             str
    lifecycle_status:  LifecycleStatus
    byte_size:         int
    media_type:        str              = Field(..., description="Detected media type (magic bytes)")
    created_at:        datetime


class DocumentListResponse(BaseModel):
    items:  list[DocumentResponse]
    total:  int
    limit:  int
    offset: int


class DocumentUpdateRequest(BaseModel):
    """PATCH body. Omitted fields are left unchanged; every applied edit bumps ``version``."""
    model_config = ConfigDict(extra="forbid")

    title:            Optional[str] = Field(None, min_length=1, max_length=255)
    description:      Optional[str] = Field(None, max_length=5000)
    category:         Optional[str] = Field(None, max_length=100)
    tags:             Optional[list[str]] = None
    lifecycle_status: Optional[LifecycleStatus] = None


class EnabledRequest(BaseModel):
    enabled: bool


class ChunkResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id:             UUID
    document_id:    UUID
    sequence_index: int
    text:           str
    created_at:     datetime


class DocumentStatsResponse(BaseModel):
    total_documents:         int
    enabled_documents:       int
    by_lifecycle_status:     dict[str, int]
    by_processing_status:    dict[str, int]
    total_chunks:            int
    documents_with_chunks:   int
    avg_chunks_per_document: float


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   Optional[str] = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str           = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: Optional[str]     = Field(None, description="Trace ID for log correlation")


# ---------------------------------------------------------------------------
# Pre-defined error factories (keeps auth dependencies thin)
# ---------------------------------------------------------------------------

class AuthErrors:
    """Factories for the authentication / authorization error cases."""

    @staticmethod
    def unauthorized(reason: str = "Missing or invalid Authorization header.") -> ErrorResponse:
        return ErrorResponse(
            error_code="UNAUTHORIZED",
            message="Authentication required. Provide a valid Bearer token.",
            details=[ErrorDetail(field=None, message=reason, code="UNAUTHORIZED")],
        )

    @staticmethod
    def token_expired() -> ErrorResponse:
        return ErrorResponse(
            error_code="TOKEN_EXPIRED",
            message="Your access token has expired. Please re-authenticate.",
            details=[],
        )

    @staticmethod
    def organization_required() -> ErrorResponse:
        return ErrorResponse(
            error_code="ORGANIZATION_REQUIRED",
            message="Select an organization with the X-Organization-ID header.",
            details=[
                ErrorDetail(
                    field="X-Organization-ID",
                    message="Header is missing or not a valid organization id.",
                    code="ORGANIZATION_REQUIRED",
                )
            ],
        )

    @staticmethod
    def not_a_member() -> ErrorResponse:
        return ErrorResponse(
            error_code="NOT_A_MEMBER",
            message="You are not a member of this organization.",
            details=[],
        )

    @staticmethod
    def forbidden(required_role: str, actual_role: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="FORBIDDEN",
            message=f"Insufficient permissions. Role '{required_role}' or above is required.",
            details=[
                ErrorDetail(
                    field=None,
                    message=f"Your role in this organization is '{actual_role}'.",
                    code="FORBIDDEN",
                )
            ],
        )
