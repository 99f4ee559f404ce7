"""
Search API — organization-scoped policy search

POST /api/v1/search

Consumed by the chat layer: the response carries ranked hits plus a
plain-text ``context`` block ready for the answer generator. Zero hits is
a normal 200 with ``found=false`` and the fallback message; a search that
could not run (embedding service down) is a 503.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter

from policy_rag.auth.context import CallerContext
from policy_rag.auth.dependencies import Retrieval
from policy_rag.auth.rbac import RequireEmployee
from policy_rag.rag.retriever import NOT_FOUND_MESSAGE
from policy_rag.schemas.documents import ErrorResponse
from policy_rag.schemas.search import SearchHitResponse, SearchRequest, SearchResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/search", tags=["Search"])


@router.post(
    "",
    response_model=SearchResponse,
    summary="Search the organization's published policy documents",
    responses={
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        503: {"model": ErrorResponse, "description": "Embedding service unavailable"},
    },
)
async def search(
    body:   SearchRequest,
    engine: Retrieval,
    caller: CallerContext = RequireEmployee,
) -> SearchResponse:
    result = await engine.search(
        body.query,
        caller.organization_id,
        threshold=body.threshold,
        top_k=body.top_k,
    )

    return SearchResponse(
        found=result.found,
        message=None if result.found else NOT_FOUND_MESSAGE,
        threshold=result.threshold,
        top_k=result.top_k,
        hits=[
            SearchHitResponse(
                chunk_id=hit.chunk_id,
                document_id=hit.document_id,
                sequence_index=hit.sequence_index,
                text=hit.text,
                similarity=hit.similarity,
                title=hit.title,
                category=hit.category,
                description=hit.description,
            )
            for hit in result.hits
        ],
        context=result.format_context(),
    )
