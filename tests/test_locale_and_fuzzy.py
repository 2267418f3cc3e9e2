from __future__ import annotations

import pytest

from tmr_core.tm.fuzzy import (
    FuzzyMode,
    PreparedQuery,
    compute_fuzzy_score,
    score_candidate,
    score_candidates,
)
from tmr_core.tm.locale_match import LocaleFilter, LocaleMatchKind, should_widen_locales
from tmr_core.tm.normalize import (
    has_mojibake,
    normalize_for_matching,
    normalize_source_text,
    normalized_source_hash,
    repair_mojibake,
)


@pytest.mark.parametrize("raw", [None, "", "  ", "*", " * "])
def test_blank_or_wildcard_locale_means_any(raw: str | None) -> None:
    locale_filter = LocaleFilter.parse(raw)

    assert locale_filter.kind is LocaleMatchKind.ANY
    assert not locale_filter.is_concrete
    assert locale_filter.matches("xx-YY")
    assert locale_filter.cache_token() == "*"


def test_prefix_locale_matches_region_variants_in_both_directions() -> None:
    english = LocaleFilter.parse("EN")

    assert english.kind is LocaleMatchKind.PREFIX
    assert english.matches("en")
    assert english.matches("en-US")
    assert english.matches("EN-gb")
    assert not english.matches("eng")
    assert not english.matches("fr-FR")
    assert not english.matches(None)

    us_english = LocaleFilter.parse("en-US")
    assert us_english.matches("en")
    assert us_english.matches("en-us")
    assert not us_english.matches("en-GB")


def test_exact_locale_requires_same_tag() -> None:
    exact = LocaleFilter.exact("de-DE")

    assert exact.matches("de-de")
    assert not exact.matches("de")
    assert exact.cache_token() == "exact:de-de"

    with pytest.raises(ValueError):
        LocaleFilter.exact("*")


def test_locale_widening_only_for_concrete_locales_without_candidates() -> None:
    english = LocaleFilter.parse("en")
    german = LocaleFilter.parse("de")

    assert should_widen_locales(
        candidate_count=0,
        source_locale=english,
        target_locale=german,
        already_widened=False,
    )
    assert not should_widen_locales(
        candidate_count=3,
        source_locale=english,
        target_locale=german,
        already_widened=False,
    )
    assert not should_widen_locales(
        candidate_count=0,
        source_locale=english,
        target_locale=german,
        already_widened=True,
    )
    assert not should_widen_locales(
        candidate_count=0,
        source_locale=LocaleFilter.any(),
        target_locale=german,
        already_widened=False,
    )


def test_normalization_collapses_whitespace_and_case() -> None:
    assert normalize_source_text("  Hello   WORLD \n") == "hello world"
    assert normalized_source_hash("Hello world") == normalized_source_hash("  hello   WORLD ")
    assert normalize_for_matching(None) == ""


def test_double_encoded_cyrillic_is_repaired_before_matching() -> None:
    garbled = "Привет мир".encode("utf-8").decode("cp866")

    assert has_mojibake(garbled)
    assert repair_mojibake(garbled) == "Привет мир"
    assert normalize_for_matching(garbled) == "привет мир"
    assert repair_mojibake("Plain text") == "Plain text"


def test_fuzzy_score_is_weighted_levenshtein_and_token_overlap() -> None:
    exact = compute_fuzzy_score("Save game now", "  save GAME now ")
    assert exact.score == 100
    assert exact.levenshtein_ratio == 1.0
    assert exact.token_overlap_ratio == 1.0

    close = compute_fuzzy_score("Open the door", "Open the doors")
    assert close.token_overlap_ratio == pytest.approx(0.5)
    assert close.levenshtein_ratio == pytest.approx(13 / 14)
    assert close.score == 80

    assert compute_fuzzy_score("", "anything").score == 0


def test_prefilter_thresholds_depend_on_mode() -> None:
    candidate = "Save the game right now"

    strict = PreparedQuery.build("save the game", FuzzyMode.from_request("basic"))
    relaxed = PreparedQuery.build("save the game", FuzzyMode.from_request("extended"))

    assert score_candidate(strict, candidate) is None
    breakdown = score_candidate(relaxed, candidate)
    assert breakdown is not None
    assert 0 < breakdown.score < 100

    with pytest.raises(ValueError):
        FuzzyMode.from_request("fuzzy-ish")


def test_prefilter_rejects_candidates_without_shared_words() -> None:
    query = PreparedQuery.build("Open settings menu", FuzzyMode.STRICT)

    assert score_candidate(query, "Close tutorial page") is None


def test_scoring_stops_early_after_enough_high_quality_matches() -> None:
    query = PreparedQuery.build("Hello world", FuzzyMode.STRICT)
    candidates = ["hello world" for _ in range(10)]

    scored = list(
        score_candidates(query, candidates, text_of=lambda text: text, min_score=50, limit=2)
    )

    assert len(scored) == 4
    assert all(breakdown.score == 100 for _, breakdown in scored)


def test_scoring_respects_min_score() -> None:
    query = PreparedQuery.build("Open the door", FuzzyMode.STRICT)

    scored = list(
        score_candidates(
            query,
            ["Open the doors", "Open the door"],
            text_of=lambda text: text,
            min_score=90,
            limit=10,
        )
    )

    assert [text for text, _ in scored] == ["Open the door"]
