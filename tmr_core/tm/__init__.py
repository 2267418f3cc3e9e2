"""Translation memory storage, fuzzy scoring and result ranking."""

from tmr_core.tm.fuzzy import FuzzyBreakdown, FuzzyMode, compute_fuzzy_score
from tmr_core.tm.locale_match import LocaleFilter, LocaleMatchKind
from tmr_core.tm.merge import SearchResult, merge_results
from tmr_core.tm.normalize import normalize_for_matching, normalize_source_text, normalized_source_hash
from tmr_core.tm.search_cache import SearchCache, SearchCacheKey
from tmr_core.tm.tm_store import (
    EmbeddingCoverage,
    EmbeddingRecord,
    EntryPage,
    EntryStore,
    SQLiteEntryStore,
    TMEntry,
    TMEntryNotFoundError,
)

__all__ = [
    "EmbeddingCoverage",
    "EmbeddingRecord",
    "EntryPage",
    "EntryStore",
    "FuzzyBreakdown",
    "FuzzyMode",
    "LocaleFilter",
    "LocaleMatchKind",
    "SQLiteEntryStore",
    "SearchCache",
    "SearchCacheKey",
    "SearchResult",
    "TMEntry",
    "TMEntryNotFoundError",
    "compute_fuzzy_score",
    "merge_results",
    "normalize_for_matching",
    "normalize_source_text",
    "normalized_source_hash",
]
