from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence


class EmbeddingProvider(ABC):
    model: str
    dimension: int

    @abstractmethod
    def embed(self, text: str) -> list[float]:
        """Return the embedding vector for one non-empty text."""

    @abstractmethod
    def embed_batch(self, texts: Sequence[str]) -> list[list[float] | None]:
        """Return vectors aligned with ``texts``; blank inputs map to ``None``."""


def embedding_input(text: str | None) -> str:
    """Canonical text sent to providers and used as the memo key."""

    if not text:
        return ""
    return text.strip().lower()
