"""
RAG package — query-time retrieval.

Answer generation is a separate consumer: it takes SearchResult.format_context()
(or SearchResult.as_documents() for LangChain chains) plus the user's question.
"""

from policy_rag.rag.retriever import (
    NOT_FOUND_MESSAGE,
    RetrievalEngine,
    SearchHit,
    SearchResult,
    format_context,
)

__all__ = [
    "NOT_FOUND_MESSAGE",
    "RetrievalEngine",
    "SearchHit",
    "SearchResult",
    "format_context",
]
