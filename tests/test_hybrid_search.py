from __future__ import annotations

from collections.abc import Iterator, Sequence
from pathlib import Path

import pytest

from tmr_core.db.schema import initialize_database
from tmr_core.embeddings.errors import EmbeddingTransientError
from tmr_core.embeddings.provider_base import EmbeddingProvider
from tmr_core.embeddings.provider_mock import MockEmbeddingProvider
from tmr_core.tm.merge import SearchResult
from tmr_core.tm.search_cache import SearchCache
from tmr_core.tm.tm_search import HybridSearcher, candidate_take, clamp_limit
from tmr_core.tm.tm_store import EmbeddingCoverage, SQLiteEntryStore
from tmr_core.vector.retriever import VectorRetriever
from tmr_core.vector.store import (
    SQLiteVectorStore,
    VectorFilters,
    VectorHit,
    VectorSetupReport,
    VectorStore,
)

DIMENSION = 16


class _ConstantProvider(EmbeddingProvider):
    def __init__(self) -> None:
        self.model = "constant"
        self.dimension = 3

    def embed(self, text: str) -> list[float]:
        return [1.0, 0.0, 0.0]

    def embed_batch(self, texts: Sequence[str]) -> list[list[float] | None]:
        return [[1.0, 0.0, 0.0] for _ in texts]


class _FailingProvider(EmbeddingProvider):
    def __init__(self, error: Exception) -> None:
        self.model = "failing"
        self.dimension = DIMENSION
        self.error = error

    def embed(self, text: str) -> list[float]:
        raise self.error

    def embed_batch(self, texts: Sequence[str]) -> list[list[float] | None]:
        raise self.error


class _FixedHitsStore(VectorStore):
    def __init__(self, hits: list[VectorHit]) -> None:
        self.hits = hits
        self.filters: list[VectorFilters] = []

    def nearest_neighbors(
        self,
        vector: Sequence[float],
        filters: VectorFilters,
        *,
        min_similarity: float,
        limit: int,
    ) -> list[VectorHit]:
        self.filters.append(filters)
        return [hit for hit in self.hits if hit.similarity >= min_similarity][:limit]

    def verify(self) -> VectorSetupReport:
        return VectorSetupReport(
            coverage=EmbeddingCoverage.from_counts(total=len(self.hits), with_embedding=len(self.hits)),
            dimension=3,
            missing_embedding_index="unused",
        )


@pytest.fixture
def store(tmp_path: Path) -> Iterator[SQLiteEntryStore]:
    engine = initialize_database(tmp_path / "tm.db")
    try:
        yield SQLiteEntryStore(engine, dimension=DIMENSION)
    finally:
        engine.dispose()


def _add(
    store: SQLiteEntryStore,
    source_text: str,
    target_text: str,
    *,
    project_id: str | None = None,
    source_locale: str = "en",
    target_locale: str = "fr",
) -> str:
    entry = store.add_entry(
        source_locale=source_locale,
        target_locale=target_locale,
        source_text=source_text,
        target_text=target_text,
        project_id=project_id,
    )
    return entry.id


def test_limit_helpers_clamp_and_size_candidate_window() -> None:
    assert clamp_limit(None) == 25
    assert clamp_limit(0) == 1
    assert clamp_limit(500) == 100
    assert candidate_take(1) == 50
    assert candidate_take(15) == 75
    assert candidate_take(100) == 100


def test_exact_source_returns_fuzzy_match_with_full_score(store: SQLiteEntryStore) -> None:
    hello_id = _add(store, "Hello world", "Bonjour le monde")
    _add(store, "Open settings menu", "Ouvrir le menu des paramètres")

    with HybridSearcher(store) as searcher:
        results = searcher.search("Hello world", source_locale="en", target_locale="fr")

    assert results
    assert results[0].id == hello_id
    assert results[0].fuzzy_score == 100
    assert results[0].search_method == "fuzzy"
    assert results[0].entry.target_text == "Bonjour le monde"


def test_blank_query_returns_nothing(store: SQLiteEntryStore) -> None:
    _add(store, "Hello world", "Bonjour le monde")

    with HybridSearcher(store) as searcher:
        assert searcher.search("   ", source_locale="en", target_locale="fr") == []


def test_vector_neighbor_surfaces_when_fuzzy_finds_nothing(store: SQLiteEntryStore) -> None:
    entry_id = _add(store, "Sign off from profile", "Se déconnecter du profil")
    entry = store.get_entry(entry_id)
    vector_store = _FixedHitsStore([VectorHit(entry=entry, similarity=0.82)])
    retriever = VectorRetriever(_ConstantProvider(), vector_store)

    with HybridSearcher(store, retriever=retriever) as searcher:
        results = searcher.search(
            "Log out of your account",
            source_locale="en",
            target_locale="fr",
            min_score=50,
            vector_similarity=0.5,
        )

    assert [result.id for result in results] == [entry_id]
    assert results[0].search_method == "vector"
    assert results[0].fuzzy_score == 82
    assert results[0].vector_similarity == pytest.approx(0.82)
    assert vector_store.filters[0].project_id is None


def test_entry_found_by_both_searches_is_hybrid(store: SQLiteEntryStore) -> None:
    provider = MockEmbeddingProvider(dimension=DIMENSION)
    entry_id = _add(store, "Hello world", "Bonjour le monde")
    store.write_embedding(entry_id, provider.embed("Hello world"), provider.model)
    retriever = VectorRetriever(provider, SQLiteVectorStore(store.engine, dimension=DIMENSION))

    with HybridSearcher(store, retriever=retriever) as searcher:
        results = searcher.search("Hello world", source_locale="en", target_locale="fr")

    assert len(results) == 1
    assert results[0].id == entry_id
    assert results[0].search_method == "hybrid"
    assert results[0].fuzzy_score == 100


@pytest.mark.parametrize(
    "error",
    [
        EmbeddingTransientError("provider unavailable"),
        OSError("connection reset by peer"),
        RuntimeError("vector backend crashed"),
    ],
)
def test_provider_failure_degrades_to_fuzzy_only(store: SQLiteEntryStore, error: Exception) -> None:
    hello_id = _add(store, "Hello world", "Bonjour le monde")
    retriever = VectorRetriever(
        _FailingProvider(error),
        SQLiteVectorStore(store.engine, dimension=DIMENSION),
    )

    with HybridSearcher(store, retriever=retriever) as searcher:
        results = searcher.search("Hello world", source_locale="en", target_locale="fr")

    assert [result.id for result in results] == [hello_id]
    assert results[0].search_method == "fuzzy"


def test_project_entries_rank_before_global_and_global_only_without_project(
    store: SQLiteEntryStore,
) -> None:
    global_id = _add(store, "Save the game", "Sauvegarder la partie")
    project_id = _add(store, "Save the game", "Enregistrer la partie", project_id="p1")
    _add(store, "Save the game", "Partie sauvegardée", project_id="p2")

    with HybridSearcher(store) as searcher:
        project_results = searcher.search(
            "Save the game",
            source_locale="en",
            target_locale="fr",
            project_id="p1",
        )
        global_results = searcher.search("Save the game", source_locale="en", target_locale="fr")

    assert [result.id for result in project_results] == [project_id, global_id]
    assert [result.scope for result in project_results] == ["project", "global"]
    assert [result.id for result in global_results] == [global_id]


def test_search_widens_locales_when_nothing_matches(store: SQLiteEntryStore) -> None:
    entry_id = _add(store, "Hello world", "Bonjour le monde", source_locale="en", target_locale="fr")

    with HybridSearcher(store) as searcher:
        widened = searcher.search("Hello world", source_locale="de", target_locale="it")
        wildcard = searcher.search("Hello world", source_locale="*", target_locale="*")

    assert [result.id for result in widened] == [entry_id]
    assert [result.id for result in wildcard] == [entry_id]


def test_extended_mode_reaches_candidates_strict_mode_filters_out(store: SQLiteEntryStore) -> None:
    entry_id = _add(store, "Save the game right now", "Sauvegarder la partie maintenant")

    with HybridSearcher(store) as searcher:
        strict = searcher.search(
            "Save the game",
            source_locale="en",
            target_locale="fr",
            mode="basic",
        )
        extended = searcher.search(
            "Save the game",
            source_locale="en",
            target_locale="fr",
            mode="extended",
        )

    assert strict == []
    assert [result.id for result in extended] == [entry_id]


def test_repeated_search_is_served_from_cache_until_cleared(store: SQLiteEntryStore) -> None:
    entry_id = _add(store, "Hello world", "Bonjour le monde")
    cache: SearchCache[SearchResult] = SearchCache(max_entries=10, ttl_seconds=30.0)

    with HybridSearcher(store, cache=cache) as searcher:
        first = searcher.search("Hello world", source_locale="en", target_locale="fr")
        store.delete_entry(entry_id)
        cached = searcher.search("  hello   WORLD ", source_locale="en", target_locale="fr")
        cache.clear()
        fresh = searcher.search("Hello world", source_locale="en", target_locale="fr")

    assert [result.id for result in first] == [entry_id]
    assert [result.id for result in cached] == [entry_id]
    assert fresh == []
