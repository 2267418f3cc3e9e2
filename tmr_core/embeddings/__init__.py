"""Embedding providers and their failure taxonomy."""

from tmr_core.embeddings.cached import CachedEmbeddingProvider
from tmr_core.embeddings.errors import (
    EmbeddingAuthError,
    EmbeddingFatalError,
    EmbeddingProviderError,
    EmbeddingQuotaError,
    EmbeddingRateLimitError,
    EmbeddingTimeoutError,
    EmbeddingTransientError,
)
from tmr_core.embeddings.provider_base import EmbeddingProvider, embedding_input
from tmr_core.embeddings.provider_mock import MockEmbeddingProvider
from tmr_core.embeddings.provider_openai import OpenAIEmbeddingProvider

__all__ = [
    "CachedEmbeddingProvider",
    "EmbeddingAuthError",
    "EmbeddingFatalError",
    "EmbeddingProvider",
    "EmbeddingProviderError",
    "EmbeddingQuotaError",
    "EmbeddingRateLimitError",
    "EmbeddingTimeoutError",
    "EmbeddingTransientError",
    "MockEmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "embedding_input",
]
