from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, replace
import logging
from typing import Any

from tmr_core.constants import METHOD_FUZZY, METHOD_HYBRID, METHOD_VECTOR, SCOPE_PROJECT
from tmr_core.tm.fuzzy import FuzzyBreakdown
from tmr_core.tm.tm_store import TMEntry

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class SearchResult:
    entry: TMEntry
    fuzzy_score: int
    similarity: FuzzyBreakdown
    search_method: str
    vector_similarity: float | None = None

    @property
    def id(self) -> str:
        return self.entry.id

    @property
    def scope(self) -> str:
        return self.entry.scope

    @classmethod
    def from_fuzzy(cls, entry: TMEntry, breakdown: FuzzyBreakdown) -> SearchResult:
        return cls(
            entry=entry,
            fuzzy_score=breakdown.score,
            similarity=breakdown,
            search_method=METHOD_FUZZY,
        )

    @classmethod
    def from_vector(cls, entry: TMEntry, similarity: float) -> SearchResult:
        score = round(similarity * 100)
        return cls(
            entry=entry,
            fuzzy_score=int(score),
            # Vector hits have no textual breakdown; both ratios carry the similarity.
            similarity=FuzzyBreakdown(
                score=int(score),
                levenshtein_ratio=similarity,
                token_overlap_ratio=similarity,
            ),
            search_method=METHOD_VECTOR,
            vector_similarity=similarity,
        )

    def to_dict(self) -> dict[str, Any]:
        payload = self.entry.to_dict()
        payload.update(
            {
                "fuzzy_score": self.fuzzy_score,
                "similarity": self.similarity.to_dict(),
                "scope": self.scope,
                "search_method": self.search_method,
            }
        )
        return payload


def _scope_rank(result: SearchResult) -> int:
    return 0 if result.scope == SCOPE_PROJECT else 1


def merge_results(
    vector_results: Iterable[SearchResult],
    fuzzy_results: Iterable[SearchResult],
    *,
    min_score: int,
    min_vector_similarity: float,
    limit: int,
) -> list[SearchResult]:
    """Deduplicate, label and rank vector and fuzzy results.

    Vector results qualify through either the similarity floor or the fuzzy
    minimum. When both lists contain an entry the result becomes ``hybrid``
    and keeps the higher score; on equal scores the vector record is kept.
    Ordering is all project-scope results first, then descending score, with
    discovery order breaking ties.
    """

    merged: dict[str, SearchResult] = {}

    vector_included = 0
    for result in vector_results:
        similarity = (
            result.vector_similarity
            if result.vector_similarity is not None
            else result.fuzzy_score / 100
        )
        if similarity >= min_vector_similarity or result.fuzzy_score >= min_score:
            if result.id not in merged:
                merged[result.id] = result
                vector_included += 1

    for result in fuzzy_results:
        existing = merged.get(result.id)
        if existing is None:
            merged[result.id] = result
        elif existing.search_method == METHOD_FUZZY:
            if result.fuzzy_score > existing.fuzzy_score:
                merged[result.id] = result
        elif result.fuzzy_score > existing.fuzzy_score:
            merged[result.id] = replace(result, search_method=METHOD_HYBRID)
        else:
            merged[result.id] = replace(existing, search_method=METHOD_HYBRID)

    ranked = sorted(
        merged.values(),
        key=lambda item: (_scope_rank(item), -item.fuzzy_score),
    )

    logger.info(
        "Merged %d vector and fuzzy results (vector=%d, fuzzy=%d, hybrid=%d)",
        len(ranked),
        sum(1 for item in ranked if item.search_method == METHOD_VECTOR),
        sum(1 for item in ranked if item.search_method == METHOD_FUZZY),
        sum(1 for item in ranked if item.search_method == METHOD_HYBRID),
    )
    logger.debug("Vector results kept after floor: %d", vector_included)
    return ranked[: max(0, limit)]
