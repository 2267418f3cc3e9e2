from __future__ import annotations


class EmbeddingProviderError(RuntimeError):
    """Base exception for embedding provider failures."""


class EmbeddingFatalError(EmbeddingProviderError):
    """Failure that retrying cannot fix; generation jobs abort on it."""


class EmbeddingAuthError(EmbeddingFatalError):
    """Raised when the API key is missing, invalid or not permitted."""


class EmbeddingQuotaError(EmbeddingFatalError):
    """Raised when the account quota or billing limit is exhausted."""


class EmbeddingRateLimitError(EmbeddingProviderError):
    """Raised on HTTP 429 throttling. ``retry_after`` is in seconds when known."""

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class EmbeddingTransientError(EmbeddingProviderError):
    """Server or network failure that may succeed on a later batch."""


class EmbeddingTimeoutError(EmbeddingTransientError):
    """Raised when a provider request exceeds its timeout."""
