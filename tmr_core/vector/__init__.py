"""Embedding-based nearest-neighbor retrieval."""

from tmr_core.vector.retriever import VectorRetriever
from tmr_core.vector.store import (
    SQLiteVectorStore,
    VectorFilters,
    VectorHit,
    VectorSearchError,
    VectorSetupReport,
    VectorStore,
    VectorStoreConfigurationError,
    cosine_similarity,
)

__all__ = [
    "SQLiteVectorStore",
    "VectorFilters",
    "VectorHit",
    "VectorRetriever",
    "VectorSearchError",
    "VectorSetupReport",
    "VectorStore",
    "VectorStoreConfigurationError",
    "cosine_similarity",
]
