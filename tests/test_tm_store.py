from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from pathlib import Path

import pytest

from tmr_core.db.engine import create_sqlite_engine
from tmr_core.db.migrations import MISSING_EMBEDDING_INDEX, _migration_v1, _set_schema_version
from tmr_core.db.schema import initialize_database
from tmr_core.tm.locale_match import LocaleFilter
from tmr_core.tm.tm_store import (
    EmbeddingCoverage,
    SQLiteEntryStore,
    TMEntryNotFoundError,
    is_valid_vector,
)

DIMENSION = 4


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
    *,
    target_text: str | None = None,
    source_locale: str = "en-US",
    target_locale: str = "de-DE",
    project_id: str | None = None,
) -> str:
    entry = store.add_entry(
        source_locale=source_locale,
        target_locale=target_locale,
        source_text=source_text,
        target_text=target_text or f"{source_text} (de)",
        project_id=project_id,
    )
    return entry.id


def test_migration_v2_adds_embedding_columns_to_v1_database(tmp_path: Path) -> None:
    db_path = tmp_path / "v1.db"
    engine = create_sqlite_engine(db_path)
    try:
        with engine.begin() as connection:
            _migration_v1(connection)
            _set_schema_version(connection, 1)
    finally:
        engine.dispose()

    migrated_engine = initialize_database(db_path)
    migrated_engine.dispose()

    conn = sqlite3.connect(db_path)
    try:
        schema_version = conn.execute(
            "SELECT value FROM schema_meta WHERE key='schema_version'"
        ).fetchone()
        columns = {row[1] for row in conn.execute("PRAGMA table_info(tm_entries)").fetchall()}
        index_row = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='index' AND name=?",
            (MISSING_EMBEDDING_INDEX,),
        ).fetchone()
    finally:
        conn.close()

    assert schema_version is not None
    assert schema_version[0] == "2"
    assert {"source_embedding", "embedding_model", "embedding_version", "embedding_updated_at"} <= columns
    assert index_row is not None


def test_upsert_updates_entry_with_same_normalized_source(store: SQLiteEntryStore) -> None:
    first, created = store.upsert_entry(
        source_locale="en",
        target_locale="de",
        source_text="  Hello   WORLD ",
        target_text="Hallo Welt",
    )
    second, created_again = store.upsert_entry(
        source_locale="en",
        target_locale="de",
        source_text="hello world",
        target_text="Hallo, Welt!",
    )

    assert created
    assert not created_again
    assert second.id == first.id
    assert second.target_text == "Hallo, Welt!"
    assert second.usage_count == 1


def test_upsert_keeps_project_and_global_entries_apart(store: SQLiteEntryStore) -> None:
    global_entry, _ = store.upsert_entry(
        source_locale="en",
        target_locale="de",
        source_text="Hello world",
        target_text="Hallo Welt",
    )
    project_entry, created = store.upsert_entry(
        source_locale="en",
        target_locale="de",
        source_text="Hello world",
        target_text="Servus Welt",
        project_id="p1",
    )

    assert created
    assert project_entry.id != global_entry.id
    assert global_entry.scope == "global"
    assert project_entry.scope == "project"


def test_add_entry_rejects_blank_text(store: SQLiteEntryStore) -> None:
    with pytest.raises(ValueError):
        _add(store, "   ")


def test_write_embedding_validates_vector_and_entry(store: SQLiteEntryStore) -> None:
    entry_id = _add(store, "Hello world")

    with pytest.raises(ValueError):
        store.write_embedding(entry_id, [1.0, 2.0], "test-model")
    with pytest.raises(ValueError):
        store.write_embedding(entry_id, [0.0, 0.0, 0.0, 0.0], "test-model")
    with pytest.raises(ValueError):
        store.write_embedding(entry_id, [1.0, float("nan"), 0.0, 0.0], "test-model")
    with pytest.raises(TMEntryNotFoundError):
        store.write_embedding("missing", [1.0, 0.0, 0.0, 0.0], "test-model")

    store.write_embedding(entry_id, [0.5, 0.25, 0.0, 1.0], "test-model")
    entry = store.get_entry(entry_id)

    assert entry.has_embedding
    assert entry.embedding is not None
    assert entry.embedding.vector == pytest.approx((0.5, 0.25, 0.0, 1.0))
    assert entry.embedding.model == "test-model"
    assert entry.embedding.version == "1.0"
    assert store.has_embedding(entry_id)


def test_is_valid_vector_requires_dimension_finite_and_non_zero() -> None:
    assert is_valid_vector([0.1, 0.2], 2)
    assert not is_valid_vector(None, 2)
    assert not is_valid_vector([0.1], 2)
    assert not is_valid_vector([0.0, 0.0], 2)
    assert not is_valid_vector([float("inf"), 0.1], 2)


def test_missing_embedding_queries_skip_excluded_and_blank_rows(store: SQLiteEntryStore) -> None:
    first = _add(store, "First sentence")
    second = _add(store, "Second sentence", project_id="p1")
    third = _add(store, "Third sentence", project_id="p1")
    store.write_embedding(third, [1.0, 0.0, 0.0, 0.0], "test-model")

    assert store.count_missing_embeddings() == 2
    assert store.count_missing_embeddings("p1") == 1

    fetched = store.fetch_missing_embeddings(None, [], 10)
    assert {entry.id for entry in fetched} == {first, second}

    excluded = store.fetch_missing_embeddings(None, [first], 10)
    assert [entry.id for entry in excluded] == [second]

    assert len(store.fetch_missing_embeddings(None, [], 1)) == 1
    assert store.fetch_missing_embeddings("p1", [second], 10) == []


def test_embedding_stats_report_coverage(store: SQLiteEntryStore) -> None:
    assert store.embedding_stats() == EmbeddingCoverage(
        total=0,
        with_embedding=0,
        without_embedding=0,
        coverage=0.0,
    )

    ids = [_add(store, f"Sentence number {index}") for index in range(3)]
    store.write_embedding(ids[0], [1.0, 0.0, 0.0, 0.0], "test-model")

    stats = store.embedding_stats()
    assert stats.total == 3
    assert stats.with_embedding == 1
    assert stats.without_embedding == 2
    assert stats.coverage == 33.33


def test_update_entry_clears_embedding_when_source_changes(store: SQLiteEntryStore) -> None:
    entry_id = _add(store, "Hello world")
    store.write_embedding(entry_id, [1.0, 0.0, 0.0, 0.0], "test-model")

    unchanged = store.update_entry(entry_id, target_text="Servus Welt")
    assert unchanged.has_embedding
    assert unchanged.target_text == "Servus Welt"

    changed = store.update_entry(entry_id, source_text="Hello there")
    assert not changed.has_embedding
    assert changed.embedding is None
    assert store.count_missing_embeddings() == 1

    with pytest.raises(TMEntryNotFoundError):
        store.update_entry("missing", target_text="x")


def test_delete_and_record_use(store: SQLiteEntryStore) -> None:
    entry_id = _add(store, "Hello world")

    store.record_use(entry_id)
    assert store.get_entry(entry_id).usage_count == 1

    store.delete_entry(entry_id)
    with pytest.raises(TMEntryNotFoundError):
        store.get_entry(entry_id)
    with pytest.raises(TMEntryNotFoundError):
        store.delete_entry(entry_id)


def test_fetch_candidates_filters_scope_and_locale(store: SQLiteEntryStore) -> None:
    us_german = _add(store, "Hello world", source_locale="en-US", target_locale="de-DE")
    plain_german = _add(store, "Hello there", source_locale="en", target_locale="de")
    _add(store, "Bonjour", source_locale="fr-FR", target_locale="de-DE")
    project_entry = _add(store, "Hello project", project_id="p1")

    english_to_german = store.fetch_candidates(
        scope="global",
        project_id=None,
        source_locale=LocaleFilter.parse("en"),
        target_locale=LocaleFilter.parse("de"),
        limit=10,
    )
    assert {entry.id for entry in english_to_german} == {us_german, plain_german}

    exact = store.fetch_candidates(
        scope="global",
        project_id=None,
        source_locale=LocaleFilter.exact("en-us"),
        target_locale=LocaleFilter.any(),
        limit=10,
    )
    assert [entry.id for entry in exact] == [us_german]

    project = store.fetch_candidates(
        scope="project",
        project_id="p1",
        source_locale=LocaleFilter.any(),
        target_locale=LocaleFilter.any(),
        limit=10,
    )
    assert [entry.id for entry in project] == [project_entry]

    assert (
        store.fetch_candidates(
            scope="project",
            project_id=None,
            source_locale=LocaleFilter.any(),
            target_locale=LocaleFilter.any(),
            limit=10,
        )
        == []
    )


def test_list_entries_pages_by_scope(store: SQLiteEntryStore) -> None:
    for index in range(5):
        _add(store, f"Global sentence {index}")
    for index in range(2):
        _add(store, f"Project sentence {index}", project_id="p1")

    page = store.list_entries(page=2, limit=3)
    assert page.total == 7
    assert page.total_pages == 3
    assert len(page.entries) == 3

    project_page = store.list_entries(project_id="p1")
    assert project_page.total == 2
    assert all(entry.project_id == "p1" for entry in project_page.entries)

    global_page = store.list_entries(global_only=True, limit=10)
    assert global_page.total == 5
    assert all(entry.project_id is None for entry in global_page.entries)
