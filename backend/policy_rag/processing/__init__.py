"""
Document Processing Package
════════════════════════════

The building blocks of ingestion:

  Text Extraction → Chunking → Embedding

Modules
───────
  extractor.py   Media-type dispatch to pypdf / python-docx / plain text
  chunking.py    Fixed-window overlapping chunker
  embeddings.py  Timeout-bounded wrapper around a LangChain Embeddings model

Orchestration (claiming, persistence, state transitions) lives in
policy_rag.services.pipeline; nothing in this package touches the database.
"""

from policy_rag.processing.chunking import TextSpan, chunk_text, reconstruct_text
from policy_rag.processing.embeddings import EmbeddingClient
from policy_rag.processing.extractor import (
    ExtractionResult,
    TextExtractor,
    detect_media_type,
)

__all__ = [
    "EmbeddingClient",
    "ExtractionResult",
    "TextExtractor",
    "TextSpan",
    "chunk_text",
    "detect_media_type",
    "reconstruct_text",
]
