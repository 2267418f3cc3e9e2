from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import time
from typing import Generic, TypeVar

from tmr_core.constants import SEARCH_CACHE_MAX_ENTRIES, SEARCH_CACHE_TTL_SECONDS
from tmr_core.memo import TTLMemo
from tmr_core.tm.normalize import normalize_source_text

V = TypeVar("V")


@dataclass(slots=True, frozen=True)
class SearchCacheKey:
    query: str
    source_locale: str
    target_locale: str
    project_id: str
    mode: str
    min_score: int
    vector_similarity: float
    use_vector_search: bool

    @classmethod
    def build(
        cls,
        *,
        source_text: str,
        source_locale: str | None,
        target_locale: str | None,
        project_id: str | None,
        mode: str,
        min_score: int,
        vector_similarity: float,
        use_vector_search: bool,
    ) -> SearchCacheKey:
        return cls(
            query=normalize_source_text(source_text),
            source_locale=(source_locale or "").strip().lower(),
            target_locale=(target_locale or "").strip().lower(),
            project_id=project_id or "",
            mode=mode,
            min_score=int(min_score),
            vector_similarity=round(float(vector_similarity), 4),
            use_vector_search=bool(use_vector_search),
        )

    def as_string(self) -> str:
        return ":".join(
            [
                self.project_id or "global",
                self.source_locale,
                self.target_locale,
                self.mode,
                str(self.min_score),
                str(self.vector_similarity),
                "vector" if self.use_vector_search else "fuzzy",
                self.query,
            ]
        )


@dataclass(slots=True, frozen=True)
class _CachedResults(Generic[V]):
    results: tuple[V, ...]
    limit: int


class SearchCache(Generic[V]):
    """Short-lived memo of ranked search results."""

    def __init__(
        self,
        *,
        max_entries: int = SEARCH_CACHE_MAX_ENTRIES,
        ttl_seconds: float = SEARCH_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._memo: TTLMemo[SearchCacheKey, _CachedResults[V]] = TTLMemo(
            max_entries=max_entries,
            ttl_seconds=ttl_seconds,
            clock=clock,
        )

    def get(self, key: SearchCacheKey, limit: int) -> list[V] | None:
        cached = self._memo.get(key)
        # A smaller stored limit may have truncated results the caller needs.
        if cached is None or cached.limit < limit:
            return None
        return list(cached.results[:limit])

    def put(self, key: SearchCacheKey, results: list[V], limit: int) -> None:
        self._memo.put(key, _CachedResults(results=tuple(results), limit=limit))

    def clear(self) -> None:
        self._memo.clear()

    def __len__(self) -> int:
        return len(self._memo)
