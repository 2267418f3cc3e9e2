from __future__ import annotations

from collections import deque
from collections.abc import Sequence
from hashlib import sha256

import numpy as np

from tmr_core.embeddings.provider_base import EmbeddingProvider, embedding_input

CALL_LOG_SIZE = 100


class MockEmbeddingProvider(EmbeddingProvider):
    """Offline provider with deterministic unit vectors.

    Texts sharing words land close together: each word contributes a seeded
    random direction, so overlap in wording gives positive cosine similarity.
    """

    def __init__(self, *, model: str = "mock-embedding-v1", dimension: int = 64) -> None:
        self.model = model
        self.dimension = dimension
        # Recent inputs only, newest last.
        self.calls: deque[list[str]] = deque(maxlen=CALL_LOG_SIZE)

    def _word_vector(self, word: str) -> np.ndarray:
        seed = int.from_bytes(sha256(word.encode("utf-8")).digest()[:8], "big")
        return np.random.default_rng(seed).standard_normal(self.dimension)

    def _vector(self, normalized: str) -> list[float]:
        total = np.zeros(self.dimension)
        for word in normalized.split():
            total += self._word_vector(word)
        norm = float(np.linalg.norm(total))
        if norm == 0.0:
            total[0] = 1.0
            norm = 1.0
        return [float(value) for value in total / norm]

    def embed(self, text: str) -> list[float]:
        normalized = embedding_input(text)
        if not normalized:
            raise ValueError("Text must not be empty")
        self.calls.append([normalized])
        return self._vector(normalized)

    def embed_batch(self, texts: Sequence[str]) -> list[list[float] | None]:
        normalized = [embedding_input(text) for text in texts]
        self.calls.append([text for text in normalized if text])
        return [self._vector(text) if text else None for text in normalized]
