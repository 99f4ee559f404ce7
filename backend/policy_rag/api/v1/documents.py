"""
Document Administration API Router
/api/v1/documents/*

Implements:
  - Multipart upload (manager+) → 202, processing is asynchronous
  - List / detail (employee+), stats and chunk inspection (manager+)
  - Metadata + lifecycle edits and the enabled toggle (manager+)
  - Reprocess and delete (admin)

Request lifecycle:
  ┌─────────────────────────────────────────────────────────┐
  │ 1. JWT verification → subject (no client-supplied org)  │
  │ 2. X-Organization-ID → membership lookup → role         │
  │ 3. RBAC gate (per route minimum role)                   │
  │ 4. DocumentService call, scoped to the caller's org     │
  │ 5. PolicyRagError → ErrorResponse (see main.py)         │
  └─────────────────────────────────────────────────────────┘

Documents belonging to another organization are reported exactly like
missing ones (404).
"""

from __future__ import annotations

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, File, Form, Query, Response, UploadFile, status
from fastapi.responses import JSONResponse

from policy_rag.auth.context import CallerContext
from policy_rag.auth.dependencies import Documents
from policy_rag.auth.rbac import RequireAdmin, RequireEmployee, RequireManager
from policy_rag.models.documents import LifecycleStatus, ProcessingStatus
from policy_rag.schemas.documents import (
    ChunkResponse,
    DocumentListResponse,
    DocumentResponse,
    DocumentStatsResponse,
    DocumentUpdateRequest,
    DocumentUploadResponse,
    EnabledRequest,
    ErrorResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["Documents"],
)

_AUTH_RESPONSES = {
    401: {"model": ErrorResponse, "description": "Missing or invalid JWT"},
    403: {"model": ErrorResponse, "description": "No organization, not a member, or insufficient role"},
}
_NOT_FOUND = {404: {"model": ErrorResponse, "description": "Document not found in your organization"}}


# ---------------------------------------------------------------------------
# POST /documents/upload
# ---------------------------------------------------------------------------

@router.post(
    "/upload",
    response_model=DocumentUploadResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Upload a policy document",
    description=(
        "Accepts PDF, DOCX, TXT or Markdown files. Returns 202 immediately; "
        "published documents are queued for processing. "
        "Poll GET /documents/{id} for processing_status."
    ),
    responses={
        **_AUTH_RESPONSES,
        400: {"model": ErrorResponse, "description": "Invalid title, missing file or unsupported type"},
        413: {"model": ErrorResponse, "description": "File exceeds the upload limit"},
        502: {"model": ErrorResponse, "description": "Blob storage unavailable"},
    },
)
async def upload_document(
    service:     Documents,
    file:        UploadFile = File(..., description="Document file (PDF, DOCX, TXT, MD)"),
    title:       str = Form(..., description="Display title"),
    description: Optional[str] = Form(None),
    category:    Optional[str] = Form(None),
    tags:        Optional[str] = Form(None, description="Comma-separated tags"),
    lifecycle_status: str = Form(LifecycleStatus.DRAFT.value),
    enabled:     bool = Form(True),
    caller:      CallerContext = RequireManager,
) -> JSONResponse:
    """
    Security properties enforced here:
      - organization_id comes from the verified membership, never the form
      - file type is detected from magic bytes, not the client Content-Type
    """
    data = await file.read()
    tag_list = [t for t in (tags or "").split(",") if t.strip()]

    doc, queued = await service.upload(
        caller,
        filename=file.filename or "",
        data=data,
        title=title,
        description=description,
        category=category,
        tags=tag_list,
        lifecycle_status=lifecycle_status,
        enabled=enabled,
    )

    body = DocumentUploadResponse(
        document_id=doc.id,
        processing_status=ProcessingStatus(doc.processing_status),
        queued=queued,
        storage_key=doc.storage_key,
        organization_id=doc.organization_id,
        title=doc.title,
        lifecycle_status=LifecycleStatus(doc.lifecycle_status),
        byte_size=doc.byte_size,
        media_type=doc.media_type,
        created_at=doc.created_at,
    )
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=body.model_dump(mode="json"),
        headers={
            "X-Document-ID": str(doc.id),
            "Location":      f"/api/v1/documents/{doc.id}",
        },
    )


# ---------------------------------------------------------------------------
# GET /documents: list (organization-scoped)
# ---------------------------------------------------------------------------

@router.get(
    "",
    response_model=DocumentListResponse,
    summary="List documents in the organization",
    responses=_AUTH_RESPONSES,
)
async def list_documents(
    service: Documents,
    lifecycle_status:  Optional[LifecycleStatus]  = Query(None),
    processing_status: Optional[ProcessingStatus] = Query(None),
    category: Optional[str]  = Query(None, max_length=100),
    search:   Optional[str]  = Query(None, max_length=200, description="Matches title, description or file name"),
    enabled:  Optional[bool] = Query(None),
    limit:    int = Query(50, ge=1, le=200),
    offset:   int = Query(0, ge=0),
    caller:   CallerContext = RequireEmployee,
) -> DocumentListResponse:
    docs, total = await service.list_documents(
        caller,
        lifecycle_status=lifecycle_status.value if lifecycle_status else None,
        processing_status=processing_status.value if processing_status else None,
        category=category,
        search=search,
        enabled=enabled,
        limit=limit,
        offset=offset,
    )
    return DocumentListResponse(
        items=[DocumentResponse.model_validate(d) for d in docs],
        total=total,
        limit=limit,
        offset=offset,
    )


# ---------------------------------------------------------------------------
# GET /documents/stats  (declared before /{document_id})
# ---------------------------------------------------------------------------

@router.get(
    "/stats",
    response_model=DocumentStatsResponse,
    summary="Document counts and RAG diagnostics",
    responses=_AUTH_RESPONSES,
)
async def document_stats(
    service: Documents,
    caller:  CallerContext = RequireManager,
) -> DocumentStatsResponse:
    return DocumentStatsResponse(**await service.stats(caller))


# ---------------------------------------------------------------------------
# GET / PATCH / DELETE /documents/{document_id}
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}",
    response_model=DocumentResponse,
    summary="Document detail and processing status",
    responses={**_AUTH_RESPONSES, **_NOT_FOUND},
)
async def get_document(
    document_id: UUID,
    service: Documents,
    caller:  CallerContext = RequireEmployee,
) -> DocumentResponse:
    doc = await service.get_document(caller, document_id)
    return DocumentResponse.model_validate(doc)


@router.patch(
    "/{document_id}",
    response_model=DocumentResponse,
    summary="Edit metadata or lifecycle status",
    description="Every applied edit increments the document version. Publishing a pending document queues it.",
    responses={**_AUTH_RESPONSES, **_NOT_FOUND, 400: {"model": ErrorResponse}},
)
async def update_document(
    document_id: UUID,
    body:    DocumentUpdateRequest,
    service: Documents,
    caller:  CallerContext = RequireManager,
) -> DocumentResponse:
    changes = body.model_dump(exclude_unset=True)
    if "lifecycle_status" in changes and changes["lifecycle_status"] is not None:
        changes["lifecycle_status"] = LifecycleStatus(changes["lifecycle_status"]).value
    doc = await service.update_metadata(caller, document_id, changes)
    return DocumentResponse.model_validate(doc)


@router.post(
    "/{document_id}/enabled",
    response_model=DocumentResponse,
    summary="Include or exclude a document from search",
    responses={**_AUTH_RESPONSES, **_NOT_FOUND},
)
async def set_document_enabled(
    document_id: UUID,
    body:    EnabledRequest,
    service: Documents,
    caller:  CallerContext = RequireManager,
) -> DocumentResponse:
    doc = await service.set_enabled(caller, document_id, body.enabled)
    return DocumentResponse.model_validate(doc)


@router.post(
    "/{document_id}/reprocess",
    response_model=DocumentResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Reset a completed or failed document to pending",
    responses={
        **_AUTH_RESPONSES,
        **_NOT_FOUND,
        409: {"model": ErrorResponse, "description": "Document is pending or processing"},
    },
)
async def reprocess_document(
    document_id: UUID,
    service: Documents,
    caller:  CallerContext = RequireAdmin,
) -> DocumentResponse:
    doc = await service.reprocess(caller, document_id)
    return DocumentResponse.model_validate(doc)


@router.delete(
    "/{document_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a document, its chunks and its stored file",
    responses={**_AUTH_RESPONSES, **_NOT_FOUND},
)
async def delete_document(
    document_id: UUID,
    service: Documents,
    caller:  CallerContext = RequireAdmin,
) -> Response:
    await service.delete(caller, document_id)
    logger.info("Document deleted | doc=%s org=%s user=%s", document_id, caller.organization_id, caller.user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/{document_id}/chunks",
    response_model=list[ChunkResponse],
    summary="Inspect a document's chunks in sequence order",
    responses={**_AUTH_RESPONSES, **_NOT_FOUND},
)
async def list_document_chunks(
    document_id: UUID,
    service: Documents,
    caller:  CallerContext = RequireManager,
) -> list[ChunkResponse]:
    chunks = await service.list_chunks(caller, document_id)
    return [ChunkResponse.model_validate(c) for c in chunks]
