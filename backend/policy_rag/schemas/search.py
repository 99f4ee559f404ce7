"""Search API schemas — POST /api/v1/search."""

from __future__ import annotations

from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from policy_rag.core.config import settings


class SearchRequest(BaseModel):
    query:     str             = Field(..., min_length=1, max_length=2000)
    threshold: Optional[float] = Field(
        None, ge=0.0, le=1.0,
        description="Minimum similarity (exclusive). Defaults to the configured threshold.",
    )
    top_k:     Optional[int]   = Field(None, ge=1, description="Defaults to the configured top_k; capped by retrieval_max_top_k.")

    @field_validator("top_k")
    @classmethod
    def top_k_within_limit(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v > settings.retrieval_max_top_k:
            raise ValueError(f"top_k must be at most {settings.retrieval_max_top_k}")
        return v


class SearchHitResponse(BaseModel):
    chunk_id:       UUID
    document_id:    UUID
    sequence_index: int
    text:           str
    similarity:     float
    title:          str
    category:       Optional[str] = None
    description:    Optional[str] = None


class SearchResponse(BaseModel):
    found:     bool
    message:   Optional[str] = Field(None, description="Fallback text when nothing cleared the threshold")
    threshold: float
    top_k:     int
    hits:      list[SearchHitResponse]
    context:   str = Field("", description="Plain-text context block for the answer generator")
