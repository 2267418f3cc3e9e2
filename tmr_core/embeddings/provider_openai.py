from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
import logging
from typing import Any

import httpx

from tmr_core.constants import EMBEDDING_DIMENSIONS, EMBEDDING_MODEL
from tmr_core.embeddings.errors import (
    EmbeddingAuthError,
    EmbeddingProviderError,
    EmbeddingQuotaError,
    EmbeddingRateLimitError,
    EmbeddingTimeoutError,
    EmbeddingTransientError,
)
from tmr_core.embeddings.provider_base import EmbeddingProvider, embedding_input
from tmr_core.secret_store import OPENAI_API_KEY, get_secret

logger = logging.getLogger(__name__)

_QUOTA_ERROR_CODES = {"insufficient_quota", "billing_hard_limit_reached"}


def _error_detail(response: httpx.Response) -> tuple[str, str]:
    """Return ``(code, message)`` from an OpenAI error body."""

    try:
        body = response.json()
    except ValueError:
        text = response.text.strip()
        return "", text[:300] if text else "no response body"

    error = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error, dict):
        return "", str(body)[:300]
    code = str(error.get("code") or error.get("type") or "")
    return code, str(error.get("message") or code or "no error message")[:300]


def _retry_after_seconds(response: httpx.Response) -> float | None:
    raw = response.headers.get("retry-after")
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


def raise_for_status(response: httpx.Response) -> None:
    if response.status_code < 400:
        return

    code, detail = _error_detail(response)
    status = response.status_code
    if status in {401, 403}:
        raise EmbeddingAuthError(
            f"Invalid OpenAI API key or insufficient permissions (HTTP {status}): {detail}"
        )
    if status == 402 or code in _QUOTA_ERROR_CODES:
        raise EmbeddingQuotaError(f"OpenAI quota exceeded (HTTP {status}): {detail}")
    if status == 429:
        raise EmbeddingRateLimitError(
            f"OpenAI API rate limit exceeded: {detail}",
            retry_after=_retry_after_seconds(response),
        )
    if status >= 500:
        raise EmbeddingTransientError(f"OpenAI API server error (HTTP {status}): {detail}")
    raise EmbeddingProviderError(f"OpenAI embedding request failed with HTTP {status}: {detail}")


@dataclass(slots=True)
class OpenAIEmbeddingProvider(EmbeddingProvider):
    model: str = EMBEDDING_MODEL
    dimension: int = EMBEDDING_DIMENSIONS
    base_url: str = "https://api.openai.com/v1/embeddings"
    timeout_seconds: float = 30.0
    api_key: str | None = None
    transport: httpx.BaseTransport | None = None

    def _api_key(self) -> str:
        api_key = self.api_key or get_secret(OPENAI_API_KEY)
        if not api_key:
            raise EmbeddingAuthError(
                "OpenAI API key is not configured. Run `tmr set-api-key` or export OPENAI_API_KEY."
            )
        return api_key

    def _request(self, inputs: list[str]) -> list[list[float]]:
        headers = {
            "Authorization": f"Bearer {self._api_key()}",
            "Content-Type": "application/json",
        }
        payload: dict[str, Any] = {"model": self.model, "input": inputs}

        try:
            with httpx.Client(transport=self.transport, timeout=self.timeout_seconds) as client:
                response = client.post(self.base_url, headers=headers, json=payload)
        except httpx.TimeoutException as exc:
            raise EmbeddingTimeoutError(
                f"OpenAI embedding request timed out after {self.timeout_seconds}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise EmbeddingTransientError(f"OpenAI embedding request failed: {exc}") from exc

        raise_for_status(response)

        try:
            data = response.json()["data"]
            ordered = sorted(data, key=lambda item: int(item.get("index", 0)))
            vectors = [[float(value) for value in item["embedding"]] for item in ordered]
        except (ValueError, KeyError, TypeError) as exc:
            raise EmbeddingProviderError("OpenAI embedding response parsing failed.") from exc

        if len(vectors) != len(inputs):
            raise EmbeddingProviderError(
                f"OpenAI returned {len(vectors)} embeddings for {len(inputs)} inputs"
            )
        return vectors

    def embed(self, text: str) -> list[float]:
        normalized = embedding_input(text)
        if not normalized:
            raise ValueError("Text must not be empty")
        return self._request([normalized])[0]

    def embed_batch(self, texts: Sequence[str]) -> list[list[float] | None]:
        normalized = [embedding_input(text) for text in texts]
        pending = [text for text in normalized if text]
        if not pending:
            return [None] * len(normalized)

        logger.debug("Requesting %d embeddings from %s", len(pending), self.model)
        vectors = iter(self._request(pending))
        return [next(vectors) if text else None for text in normalized]
