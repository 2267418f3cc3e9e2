from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
import logging
import time

from tmr_core.constants import (
    DEFAULT_MIN_SCORE,
    DEFAULT_SEARCH_LIMIT,
    DEFAULT_VECTOR_SIMILARITY,
    MAX_SEARCH_LIMIT,
    SCOPE_GLOBAL,
    SCOPE_PROJECT,
)
from tmr_core.tm.fuzzy import FuzzyMode, PreparedQuery, compute_fuzzy_score, score_candidates
from tmr_core.tm.locale_match import LocaleFilter, should_widen_locales
from tmr_core.tm.merge import SearchResult, merge_results
from tmr_core.tm.search_cache import SearchCache, SearchCacheKey
from tmr_core.tm.tm_store import EntryStore, TMEntry
from tmr_core.vector.retriever import VectorRetriever
from tmr_core.vector.store import VectorHit

logger = logging.getLogger(__name__)


def clamp_limit(limit: int | None) -> int:
    if limit is None:
        return DEFAULT_SEARCH_LIMIT
    return max(1, min(MAX_SEARCH_LIMIT, int(limit)))


def candidate_take(limit: int) -> int:
    return min(100, max(50, limit * 5))


class HybridSearcher:
    """Fuzzy plus vector TM lookup with a short-lived result cache.

    Vector retrieval and fuzzy scoring run side by side on a shared thread
    pool; any vector failure downgrades the request to fuzzy-only.
    """

    def __init__(
        self,
        entry_store: EntryStore,
        *,
        retriever: VectorRetriever | None = None,
        cache: SearchCache[SearchResult] | None = None,
        max_workers: int = 4,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self.entry_store = entry_store
        self.retriever = retriever
        self.cache = cache
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max(2, max_workers),
            thread_name_prefix="tm-search",
        )

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=True)

    def __enter__(self) -> HybridSearcher:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def search(
        self,
        source_text: str,
        *,
        source_locale: str | None,
        target_locale: str | None,
        project_id: str | None = None,
        limit: int | None = DEFAULT_SEARCH_LIMIT,
        min_score: int = DEFAULT_MIN_SCORE,
        vector_similarity: float = DEFAULT_VECTOR_SIMILARITY,
        mode: str | FuzzyMode = FuzzyMode.STRICT,
        use_vector_search: bool = True,
    ) -> list[SearchResult]:
        if not source_text or not source_text.strip():
            return []

        normalized_limit = clamp_limit(limit)
        fuzzy_mode = mode if isinstance(mode, FuzzyMode) else FuzzyMode.from_request(mode)
        use_vector = use_vector_search and self.retriever is not None
        project_id = project_id or None

        cache_key = SearchCacheKey.build(
            source_text=source_text,
            source_locale=source_locale,
            target_locale=target_locale,
            project_id=project_id,
            mode=fuzzy_mode.value,
            min_score=min_score,
            vector_similarity=vector_similarity,
            use_vector_search=use_vector,
        )
        if self.cache is not None:
            cached = self.cache.get(cache_key, normalized_limit)
            if cached is not None:
                logger.debug("TM search cache hit: %s", cache_key.as_string())
                return cached

        started = time.perf_counter()
        source_filter = LocaleFilter.parse(source_locale)
        target_filter = LocaleFilter.parse(target_locale)
        logger.info(
            "Starting TM search (project=%s, locales=%s->%s, limit=%d, min_score=%d, mode=%s, vector=%s)",
            project_id or "global",
            source_filter.cache_token(),
            target_filter.cache_token(),
            normalized_limit,
            min_score,
            fuzzy_mode.value,
            use_vector,
        )

        vector_future: Future[list[VectorHit]] | None = None
        if use_vector:
            vector_future = self._executor.submit(
                self._vector_search,
                source_text,
                project_id=project_id,
                source_filter=source_filter,
                target_filter=target_filter,
                limit=normalized_limit * 2,
                min_similarity=vector_similarity,
            )
        fuzzy_future = self._executor.submit(
            self._fuzzy_search,
            source_text,
            project_id=project_id,
            source_filter=source_filter,
            target_filter=target_filter,
            limit=normalized_limit,
            min_score=min_score,
            mode=fuzzy_mode,
        )

        vector_hits = vector_future.result() if vector_future is not None else []
        fuzzy_results = fuzzy_future.result()

        vector_results = [SearchResult.from_vector(hit.entry, hit.similarity) for hit in vector_hits]
        fuzzy_results.extend(
            self._score_vector_hits(source_text, vector_hits, fuzzy_results, min_score=min_score)
        )

        results = merge_results(
            vector_results,
            fuzzy_results,
            min_score=min_score,
            min_vector_similarity=vector_similarity,
            limit=normalized_limit,
        )
        if self.cache is not None:
            self.cache.put(cache_key, results, normalized_limit)

        logger.info(
            "TM search returned %d results in %.1f ms",
            len(results),
            (time.perf_counter() - started) * 1000,
        )
        return results

    def _vector_search(
        self,
        source_text: str,
        *,
        project_id: str | None,
        source_filter: LocaleFilter,
        target_filter: LocaleFilter,
        limit: int,
        min_similarity: float,
    ) -> list[VectorHit]:
        if self.retriever is None:
            return []
        try:
            return self.retriever.retrieve(
                source_text,
                project_id=project_id,
                source_locale=source_filter,
                target_locale=target_filter,
                limit=limit,
                min_similarity=min_similarity,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Vector search failed, falling back to fuzzy search: %s", exc)
            return []

    def _fetch_candidates(
        self,
        *,
        project_id: str | None,
        source_filter: LocaleFilter,
        target_filter: LocaleFilter,
        take: int,
    ) -> list[TMEntry]:
        if project_id:
            scopes = [(SCOPE_PROJECT, take), (SCOPE_GLOBAL, take)]
        else:
            scopes = [(SCOPE_GLOBAL, take * 2)]

        candidates: list[TMEntry] = []
        for scope, scope_take in scopes:
            candidates.extend(
                self.entry_store.fetch_candidates(
                    scope=scope,
                    project_id=project_id,
                    source_locale=source_filter,
                    target_locale=target_filter,
                    limit=scope_take,
                )
            )
        return candidates

    def _fuzzy_search(
        self,
        source_text: str,
        *,
        project_id: str | None,
        source_filter: LocaleFilter,
        target_filter: LocaleFilter,
        limit: int,
        min_score: int,
        mode: FuzzyMode,
    ) -> list[SearchResult]:
        take = candidate_take(limit)
        candidates = self._fetch_candidates(
            project_id=project_id,
            source_filter=source_filter,
            target_filter=target_filter,
            take=take,
        )
        if should_widen_locales(
            candidate_count=len(candidates),
            source_locale=source_filter,
            target_locale=target_filter,
            already_widened=False,
        ):
            logger.info(
                "No candidates for locales %s->%s, trying all locales",
                source_filter.tag,
                target_filter.tag,
            )
            candidates = self._fetch_candidates(
                project_id=project_id,
                source_filter=LocaleFilter.any(),
                target_filter=LocaleFilter.any(),
                take=take,
            )

        query = PreparedQuery.build(source_text, mode)
        scored = score_candidates(
            query,
            candidates,
            text_of=lambda entry: entry.source_text,
            min_score=min_score,
            limit=limit,
        )
        results = [SearchResult.from_fuzzy(entry, breakdown) for entry, breakdown in scored]
        logger.debug("Fuzzy search kept %d of %d candidates", len(results), len(candidates))
        return results

    def _score_vector_hits(
        self,
        source_text: str,
        vector_hits: list[VectorHit],
        fuzzy_results: list[SearchResult],
        *,
        min_score: int,
    ) -> list[SearchResult]:
        """Fuzzy-score vector hits the candidate window missed, so they can merge as hybrid."""

        seen = {result.id for result in fuzzy_results}
        extra: list[SearchResult] = []
        for hit in vector_hits:
            if hit.entry.id in seen:
                continue
            breakdown = compute_fuzzy_score(source_text, hit.entry.source_text)
            if breakdown.score >= min_score:
                extra.append(SearchResult.from_fuzzy(hit.entry, breakdown))
                seen.add(hit.entry.id)
        return extra
