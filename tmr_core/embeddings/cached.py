from __future__ import annotations

from collections.abc import Callable, Sequence
import logging
import time

from tmr_core.constants import EMBEDDING_CACHE_MAX_ENTRIES, EMBEDDING_CACHE_TTL_SECONDS
from tmr_core.embeddings.provider_base import EmbeddingProvider, embedding_input
from tmr_core.memo import TTLMemo

logger = logging.getLogger(__name__)


class CachedEmbeddingProvider(EmbeddingProvider):
    """Memoize embeddings of another provider by canonical input text."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        *,
        max_entries: int = EMBEDDING_CACHE_MAX_ENTRIES,
        ttl_seconds: float = EMBEDDING_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.provider = provider
        self._memo: TTLMemo[str, tuple[float, ...]] = TTLMemo(
            max_entries=max_entries,
            ttl_seconds=ttl_seconds,
            clock=clock,
        )

    @property
    def model(self) -> str:  # type: ignore[override]
        return self.provider.model

    @property
    def dimension(self) -> int:  # type: ignore[override]
        return self.provider.dimension

    def embed(self, text: str) -> list[float]:
        key = embedding_input(text)
        if not key:
            raise ValueError("Text must not be empty")

        cached = self._memo.get(key)
        if cached is not None:
            logger.debug("Embedding cache hit: %.50s", key)
            return list(cached)

        vector = self.provider.embed(key)
        self._memo.put(key, tuple(vector))
        return vector

    def embed_batch(self, texts: Sequence[str]) -> list[list[float] | None]:
        keys = [embedding_input(text) for text in texts]
        results: dict[str, list[float]] = {}
        misses: list[str] = []
        seen: set[str] = set()
        for key in keys:
            if not key or key in seen:
                continue
            seen.add(key)
            cached = self._memo.get(key)
            if cached is not None:
                results[key] = list(cached)
            else:
                misses.append(key)
        cached_count = len(results)

        if misses:
            vectors = self.provider.embed_batch(misses)
            for key, vector in zip(misses, vectors):
                if vector is None:
                    continue
                self._memo.put(key, tuple(vector))
                results[key] = vector

        logger.debug(
            "Embedding batch: %d inputs, %d cached, %d requested",
            len(keys),
            cached_count,
            len(misses),
        )
        return [results.get(key) if key else None for key in keys]

    def clear(self) -> None:
        self._memo.clear()
