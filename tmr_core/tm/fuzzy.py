from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from enum import Enum
import logging
from typing import TypeVar

from rapidfuzz.distance import Levenshtein

from tmr_core.constants import HIGH_QUALITY_SCORE
from tmr_core.tm.normalize import normalize_for_matching, split_words, strip_punctuation

LEVENSHTEIN_WEIGHT = 0.7
TOKEN_OVERLAP_WEIGHT = 0.3

logger = logging.getLogger(__name__)

T = TypeVar("T")


class FuzzyMode(str, Enum):
    STRICT = "strict"
    RELAXED = "relaxed"

    @classmethod
    def from_request(cls, mode: str | None) -> FuzzyMode:
        normalized = (mode or "basic").strip().lower()
        if normalized in {"basic", "strict"}:
            return cls.STRICT
        if normalized in {"extended", "relaxed"}:
            return cls.RELAXED
        raise ValueError(f"Unsupported search mode: {mode}")


@dataclass(slots=True, frozen=True)
class PrefilterThresholds:
    max_length_diff: float
    min_word_overlap: float


MODE_THRESHOLDS = {
    FuzzyMode.STRICT: PrefilterThresholds(max_length_diff=0.4, min_word_overlap=0.3),
    FuzzyMode.RELAXED: PrefilterThresholds(max_length_diff=0.6, min_word_overlap=0.15),
}


@dataclass(slots=True, frozen=True)
class FuzzyBreakdown:
    score: int
    levenshtein_ratio: float
    token_overlap_ratio: float

    def to_dict(self) -> dict[str, float]:
        return {
            "score": self.score,
            "levenshtein_ratio": self.levenshtein_ratio,
            "token_overlap_ratio": self.token_overlap_ratio,
        }


EXACT_BREAKDOWN = FuzzyBreakdown(score=100, levenshtein_ratio=1.0, token_overlap_ratio=1.0)
EMPTY_BREAKDOWN = FuzzyBreakdown(score=0, levenshtein_ratio=0.0, token_overlap_ratio=0.0)


@dataclass(slots=True, frozen=True)
class PreparedQuery:
    normalized: str
    words: tuple[str, ...]
    mode: FuzzyMode

    @classmethod
    def build(cls, text: str, mode: FuzzyMode = FuzzyMode.STRICT) -> PreparedQuery:
        normalized = normalize_for_matching(text)
        return cls(
            normalized=normalized,
            words=tuple(strip_punctuation(split_words(normalized))),
            mode=mode,
        )


def length_diff_ratio(left: str, right: str) -> float:
    longest = max(len(left), len(right))
    if longest == 0:
        return 0.0
    return abs(len(left) - len(right)) / longest


def word_overlap_ratio(left_words: Iterable[str], right_words: Iterable[str]) -> float:
    left = list(left_words)
    right = list(right_words)
    right_set = set(right)
    common = sum(1 for word in left if word in right_set)
    return common / max(len(left), len(right), 1)


def composite_score(normalized_left: str, normalized_right: str) -> FuzzyBreakdown:
    if not normalized_left or not normalized_right:
        return EMPTY_BREAKDOWN
    if normalized_left == normalized_right:
        return EXACT_BREAKDOWN

    levenshtein_ratio = max(0.0, Levenshtein.normalized_similarity(normalized_left, normalized_right))

    left_tokens = set(split_words(normalized_left))
    right_tokens = set(split_words(normalized_right))
    union_size = len(left_tokens | right_tokens) or 1
    token_overlap_ratio = len(left_tokens & right_tokens) / union_size

    score = round(
        (levenshtein_ratio * LEVENSHTEIN_WEIGHT + token_overlap_ratio * TOKEN_OVERLAP_WEIGHT) * 100
    )
    return FuzzyBreakdown(
        score=int(score),
        levenshtein_ratio=levenshtein_ratio,
        token_overlap_ratio=token_overlap_ratio,
    )


def compute_fuzzy_score(source: str, candidate: str) -> FuzzyBreakdown:
    """Score two raw strings without pre-filters."""

    return composite_score(normalize_for_matching(source), normalize_for_matching(candidate))


def score_candidate(query: PreparedQuery, candidate_text: str) -> FuzzyBreakdown | None:
    """Return the breakdown, or ``None`` when a cheap pre-filter rejects."""

    candidate = normalize_for_matching(candidate_text)
    if not query.normalized or not candidate:
        return None
    if candidate == query.normalized:
        return EXACT_BREAKDOWN

    thresholds = MODE_THRESHOLDS[query.mode]
    length_diff = length_diff_ratio(query.normalized, candidate)
    if length_diff > thresholds.max_length_diff:
        logger.debug(
            "Fuzzy pre-filter rejected on length (diff=%.2f > %.2f): %.60s",
            length_diff,
            thresholds.max_length_diff,
            candidate,
        )
        return None

    candidate_words = strip_punctuation(split_words(candidate))
    overlap = word_overlap_ratio(query.words, candidate_words)
    if overlap < thresholds.min_word_overlap:
        logger.debug(
            "Fuzzy pre-filter rejected on word overlap (%.2f < %.2f): %.60s",
            overlap,
            thresholds.min_word_overlap,
            candidate,
        )
        return None

    return composite_score(query.normalized, candidate)


def score_candidates(
    query: PreparedQuery,
    candidates: Iterable[T],
    *,
    text_of: Callable[[T], str],
    min_score: int,
    limit: int,
) -> Iterator[tuple[T, FuzzyBreakdown]]:
    """Yield ``(candidate, breakdown)`` pairs scoring at least ``min_score``.

    Stops early once ``limit * 2`` results were produced and at least one of
    them scored ``HIGH_QUALITY_SCORE`` or better.
    """

    produced = 0
    seen_high_quality = False
    for candidate in candidates:
        breakdown = score_candidate(query, text_of(candidate))
        if breakdown is not None and breakdown.score >= min_score:
            produced += 1
            seen_high_quality = seen_high_quality or breakdown.score >= HIGH_QUALITY_SCORE
            yield candidate, breakdown
        if produced >= limit * 2 and seen_high_quality:
            return
