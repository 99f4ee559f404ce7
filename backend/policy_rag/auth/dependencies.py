"""
Composed FastAPI Dependencies

Wires the request context: verified token → organization membership →
CallerContext, plus the service objects route handlers operate through.
Route handlers import from here, never from db/session, storage/blob or
processing/embeddings directly.

This is the single wiring point for the entire request context; tests
replace the factories below with ``app.dependency_overrides``.
"""

from __future__ import annotations

import logging
import uuid
from functools import lru_cache
from typing import Annotated, Optional

from fastapi import Depends, Header, HTTPException, status

from policy_rag.auth.context import CallerContext
from policy_rag.auth.token import TokenPayload, get_current_user
from policy_rag.db.session import get_session_factory
from policy_rag.processing.embeddings import EmbeddingClient
from policy_rag.rag.retriever import RetrievalEngine
from policy_rag.schemas.documents import AuthErrors
from policy_rag.services.ingestion import DocumentService, TaskPublisher
from policy_rag.services.pipeline import IngestionPipeline
from policy_rag.storage.blob import BlobStore, S3BlobStore
from policy_rag.store.tenant_store import TenantStore

logger = logging.getLogger(__name__)

ORGANIZATION_HEADER = "X-Organization-ID"


# ---------------------------------------------------------------------------
# 1. Process-wide collaborators (cached; overridden in tests)
# ---------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_tenant_store() -> TenantStore:
    return TenantStore(get_session_factory())


@lru_cache(maxsize=1)
def get_blob_store() -> BlobStore:
    return S3BlobStore()


@lru_cache(maxsize=1)
def get_embedding_client() -> EmbeddingClient:
    return EmbeddingClient()


def get_task_publisher() -> TaskPublisher:
    return TaskPublisher()


# ---------------------------------------------------------------------------
# 2. Per-request services
# ---------------------------------------------------------------------------

def get_pipeline(
    store:      Annotated[TenantStore, Depends(get_tenant_store)],
    blobs:      Annotated[BlobStore, Depends(get_blob_store)],
    embeddings: Annotated[EmbeddingClient, Depends(get_embedding_client)],
) -> IngestionPipeline:
    return IngestionPipeline(store, blobs, embeddings)


def get_document_service(
    store:     Annotated[TenantStore, Depends(get_tenant_store)],
    blobs:     Annotated[BlobStore, Depends(get_blob_store)],
    publisher: Annotated[TaskPublisher, Depends(get_task_publisher)],
    pipeline:  Annotated[IngestionPipeline, Depends(get_pipeline)],
) -> DocumentService:
    return DocumentService(store, blobs, publisher, pipeline)


def get_retrieval_engine(
    store:      Annotated[TenantStore, Depends(get_tenant_store)],
    embeddings: Annotated[EmbeddingClient, Depends(get_embedding_client)],
) -> RetrievalEngine:
    return RetrievalEngine(store, embeddings)


# ---------------------------------------------------------------------------
# 3. Caller context: token subject + organization membership
# ---------------------------------------------------------------------------

async def get_caller(
    user:  Annotated[TokenPayload, Depends(get_current_user)],
    store: Annotated[TenantStore, Depends(get_tenant_store)],
    x_organization_id: Annotated[Optional[str], Header(alias=ORGANIZATION_HEADER)] = None,
) -> CallerContext:
    """
    Resolve which organization the request acts on and the caller's role in it.

    403 ORGANIZATION_REQUIRED when the header is missing or malformed,
    403 NOT_A_MEMBER when the subject has no membership in that organization.
    """
    try:
        organization_id = uuid.UUID((x_organization_id or "").strip())
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=AuthErrors.organization_required().model_dump(),
        ) from None

    membership = await store.get_membership(user.sub, organization_id)
    if membership is None:
        logger.warning(
            "Membership denied | user=%s org=%s", user.sub, organization_id,
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=AuthErrors.not_a_member().model_dump(),
        )

    return CallerContext(
        user_id=user.sub,
        organization_id=organization_id,
        role=membership.role,
        email=user.email,
    )


# ---------------------------------------------------------------------------
# Type aliases for cleaner route signatures
# ---------------------------------------------------------------------------

Documents         = Annotated[DocumentService, Depends(get_document_service)]
Retrieval         = Annotated[RetrievalEngine, Depends(get_retrieval_engine)]
