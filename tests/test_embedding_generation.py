from __future__ import annotations

from collections.abc import Iterator, Sequence
from pathlib import Path

import pytest
from sqlalchemy.engine import Engine

from tmr_core.db.schema import initialize_database
from tmr_core.embeddings.errors import (
    EmbeddingQuotaError,
    EmbeddingRateLimitError,
    EmbeddingTransientError,
)
from tmr_core.embeddings.provider_base import EmbeddingProvider
from tmr_core.embeddings.provider_mock import MockEmbeddingProvider
from tmr_core.jobs.embedding_job import (
    EmbeddingGenerationOrchestrator,
    GenerationOptions,
    new_progress_id,
)
from tmr_core.jobs.progress import GenerationProgress, GenerationStatus, ProgressRegistry
from tmr_core.jobs.retry import RetryPolicy
from tmr_core.tm.tm_store import SQLiteEntryStore, TMEntry

DIMENSION = 8
WAIT_SECONDS = 10.0


class _FlakyProvider(EmbeddingProvider):
    """Raise ``error`` for the first ``failures`` batch calls, then delegate."""

    def __init__(self, inner: EmbeddingProvider, *, failures: int, error: Exception) -> None:
        self.inner = inner
        self.model = inner.model
        self.dimension = inner.dimension
        self.failures = failures
        self.error = error
        self.batch_calls = 0

    def embed(self, text: str) -> list[float]:
        return self.inner.embed(text)

    def embed_batch(self, texts: Sequence[str]) -> list[list[float] | None]:
        self.batch_calls += 1
        if self.batch_calls <= self.failures:
            raise self.error
        return self.inner.embed_batch(texts)


class _ShortVectorProvider(MockEmbeddingProvider):
    def embed_batch(self, texts: Sequence[str]) -> list[list[float] | None]:
        vectors = super().embed_batch(texts)
        return [vector[:4] if vector is not None else None for vector in vectors]


class _LaggingStore(SQLiteEntryStore):
    """Hide missing entries from the fetches after the first one, like uncommitted rows."""

    def __init__(self, engine: Engine, *, hidden_fetches: int) -> None:
        super().__init__(engine, dimension=DIMENSION)
        self.hidden_fetches = hidden_fetches
        self.excludes: list[set[str]] = []

    def fetch_missing_embeddings(
        self,
        project_id: str | None,
        exclude_ids: Sequence[str],
        batch_size: int,
    ) -> list[TMEntry]:
        self.excludes.append(set(exclude_ids))
        if 1 < len(self.excludes) <= 1 + self.hidden_fetches:
            return []
        return super().fetch_missing_embeddings(project_id, exclude_ids, batch_size)


@pytest.fixture
def store(tmp_path: Path) -> Iterator[SQLiteEntryStore]:
    engine = initialize_database(tmp_path / "tm.db")
    try:
        yield SQLiteEntryStore(engine, dimension=DIMENSION)
    finally:
        engine.dispose()


def _seed(store: SQLiteEntryStore, count: int, *, project_id: str | None = None) -> list[str]:
    return [
        store.add_entry(
            source_locale="en",
            target_locale="de",
            source_text=f"Sentence number {index} {project_id or 'global'}",
            target_text=f"Satz Nummer {index}",
            project_id=project_id,
        ).id
        for index in range(count)
    ]


def _orchestrator(
    store: SQLiteEntryStore,
    provider: EmbeddingProvider | None = None,
    *,
    registry: ProgressRegistry | None = None,
    max_retries: int = 3,
    sleeps: list[float] | None = None,
    exclusion_cap: int = 100,
    empty_batch_delay_seconds: float = 0.0,
) -> EmbeddingGenerationOrchestrator:
    recorded = sleeps if sleeps is not None else []
    return EmbeddingGenerationOrchestrator(
        store,
        provider or MockEmbeddingProvider(dimension=DIMENSION),
        registry or ProgressRegistry(),
        retry_policy=RetryPolicy(max_retries=max_retries, base_delay_seconds=0.0),
        batch_delay_seconds=0.0,
        exclusion_cap=exclusion_cap,
        empty_batch_delay_seconds=empty_batch_delay_seconds,
        sleep=recorded.append,
    )


def _run(
    orchestrator: EmbeddingGenerationOrchestrator,
    **options: object,
) -> tuple[GenerationProgress, list[GenerationProgress]]:
    seen: list[GenerationProgress] = []
    observers = [seen.append, *options.pop("observers", [])]  # type: ignore[misc]
    handle = orchestrator.start(GenerationOptions(observers=observers, **options))  # type: ignore[arg-type]
    final = handle.wait(WAIT_SECONDS)
    assert handle.done
    assert final is not None
    return final, seen


def test_progress_id_format() -> None:
    progress_id = new_progress_id()
    parts = progress_id.split("-")

    assert progress_id.startswith("embedding-gen-")
    assert len(parts) == 4
    assert parts[2].isdigit()
    assert len(parts[3]) == 8
    assert new_progress_id() != progress_id


def test_job_with_nothing_to_embed_completes_immediately(store: SQLiteEntryStore) -> None:
    final, _ = _run(_orchestrator(store))

    assert final.status is GenerationStatus.COMPLETED
    assert final.total == 0
    assert final.processed == 0
    assert final.completed_at is not None


def test_job_embeds_every_missing_entry_in_batches(store: SQLiteEntryStore) -> None:
    _seed(store, 5)
    provider = MockEmbeddingProvider(dimension=DIMENSION)

    final, seen = _run(_orchestrator(store, provider), batch_size=2)

    assert final.status is GenerationStatus.COMPLETED
    assert final.total == 5
    assert final.processed == 5
    assert final.succeeded == 5
    assert final.failed == 0
    assert final.error is None
    assert final.current_entry is None
    assert store.count_missing_embeddings() == 0
    assert [len(call) for call in provider.calls] == [2, 2, 1]

    assert seen[0].status is GenerationStatus.RUNNING
    processed_values = [snapshot.processed for snapshot in seen]
    assert processed_values == sorted(processed_values)
    for snapshot in seen:
        assert snapshot.processed == snapshot.succeeded + snapshot.failed
        assert snapshot.processed <= snapshot.total or snapshot.total == 0
    assert any(snapshot.current_entry is not None for snapshot in seen)


def test_job_only_embeds_requested_project(store: SQLiteEntryStore) -> None:
    _seed(store, 2, project_id="p1")
    _seed(store, 3)

    final, _ = _run(_orchestrator(store), project_id="p1")

    assert final.status is GenerationStatus.COMPLETED
    assert final.processed == 2
    assert store.count_missing_embeddings("p1") == 0
    assert store.count_missing_embeddings() == 3


def test_job_stops_at_limit(store: SQLiteEntryStore) -> None:
    _seed(store, 5)

    final, _ = _run(_orchestrator(store), batch_size=2, limit=3)

    assert final.status is GenerationStatus.COMPLETED
    assert final.total == 3
    assert final.processed == 3
    assert store.count_missing_embeddings() == 2


def test_cancel_after_first_batch_stops_processing(store: SQLiteEntryStore) -> None:
    _seed(store, 6)
    orchestrator = _orchestrator(store)

    def _cancel_after_first_batch(snapshot: GenerationProgress) -> None:
        if snapshot.processed >= 2 and not snapshot.is_terminal:
            orchestrator.cancel(snapshot.progress_id)

    final, _ = _run(orchestrator, batch_size=2, observers=[_cancel_after_first_batch])

    assert final.status is GenerationStatus.CANCELLED
    assert final.processed == 2
    assert store.count_missing_embeddings() == 4


def test_rate_limited_batch_is_retried_and_succeeds(store: SQLiteEntryStore) -> None:
    _seed(store, 3)
    provider = _FlakyProvider(
        MockEmbeddingProvider(dimension=DIMENSION),
        failures=2,
        error=EmbeddingRateLimitError("slow down", retry_after=None),
    )
    sleeps: list[float] = []

    final, _ = _run(_orchestrator(store, provider, max_retries=3, sleeps=sleeps))

    assert final.status is GenerationStatus.COMPLETED
    assert final.succeeded == 3
    assert final.failed == 0
    assert provider.batch_calls == 3
    assert len(sleeps) == 2


def test_quota_error_fails_job_without_retries(store: SQLiteEntryStore) -> None:
    _seed(store, 3)
    provider = _FlakyProvider(
        MockEmbeddingProvider(dimension=DIMENSION),
        failures=100,
        error=EmbeddingQuotaError("OpenAI quota exceeded"),
    )
    sleeps: list[float] = []

    final, _ = _run(_orchestrator(store, provider, sleeps=sleeps))

    assert final.status is GenerationStatus.ERROR
    assert "quota" in (final.error or "")
    assert provider.batch_calls == 1
    assert sleeps == []
    assert final.processed == 0


def test_wrong_dimension_vectors_count_as_failures_and_job_errors(store: SQLiteEntryStore) -> None:
    _seed(store, 3)
    provider = _ShortVectorProvider(dimension=DIMENSION)

    final, _ = _run(_orchestrator(store, provider))

    assert final.status is GenerationStatus.ERROR
    assert final.error == "3 entries remain unembedded"
    assert final.processed == 3
    assert final.failed == 3
    assert final.succeeded == 0
    assert store.count_missing_embeddings() == 3


def test_transient_batch_failure_marks_batch_failed_and_continues(store: SQLiteEntryStore) -> None:
    _seed(store, 4)
    provider = _FlakyProvider(
        MockEmbeddingProvider(dimension=DIMENSION),
        failures=1,
        error=EmbeddingTransientError("server error"),
    )

    final, _ = _run(_orchestrator(store, provider), batch_size=2)

    assert final.status is GenerationStatus.ERROR
    assert final.failed == 2
    assert final.succeeded == 2
    assert final.error == "2 entries remain unembedded"


@pytest.mark.parametrize(
    ("entries", "exclusion_cap", "batch_size"),
    [(10, 4, 2), (300, 100, 50)],
)
def test_failed_first_batch_does_not_stop_job_beyond_exclusion_window(
    store: SQLiteEntryStore,
    entries: int,
    exclusion_cap: int,
    batch_size: int,
) -> None:
    _seed(store, entries)
    provider = _FlakyProvider(
        MockEmbeddingProvider(dimension=DIMENSION),
        failures=1,
        error=EmbeddingTransientError("server error"),
    )

    final, _ = _run(
        _orchestrator(store, provider, exclusion_cap=exclusion_cap),
        batch_size=batch_size,
    )

    assert final.status is GenerationStatus.ERROR
    assert final.failed == batch_size
    assert final.succeeded == entries - batch_size
    assert final.processed == entries
    assert final.error == f"{batch_size} entries remain unembedded"
    assert store.count_missing_embeddings() == batch_size
    assert provider.batch_calls == entries // batch_size


def test_exhausted_rate_limit_retries_fail_batch_and_job_continues(store: SQLiteEntryStore) -> None:
    _seed(store, 4)
    provider = _FlakyProvider(
        MockEmbeddingProvider(dimension=DIMENSION),
        failures=2,
        error=EmbeddingRateLimitError("slow down"),
    )
    sleeps: list[float] = []

    final, _ = _run(_orchestrator(store, provider, max_retries=1, sleeps=sleeps), batch_size=2)

    assert provider.batch_calls == 3
    assert sleeps == [0.0]
    assert final.status is GenerationStatus.ERROR
    assert final.failed == 2
    assert final.succeeded == 2
    assert final.error == "2 entries remain unembedded"


def test_empty_fetches_clear_exclusions_and_job_resumes(tmp_path: Path) -> None:
    engine = initialize_database(tmp_path / "tm.db")
    try:
        store = _LaggingStore(engine, hidden_fetches=4)
        _seed(store, 4)
        sleeps: list[float] = []

        final, _ = _run(
            _orchestrator(store, sleeps=sleeps, empty_batch_delay_seconds=0.25),
            batch_size=2,
        )

        assert final.status is GenerationStatus.COMPLETED
        assert final.succeeded == 4
        assert store.count_missing_embeddings() == 0
        assert sleeps == [0.25, 0.25, 0.25, 0.25]

        first_batch = store.excludes[1]
        assert len(first_batch) == 2
        assert all(exclude == first_batch for exclude in store.excludes[1:5])
        assert store.excludes[5] == set()
        assert len(store.excludes) == 6
    finally:
        engine.dispose()


def test_cancel_unknown_or_finished_jobs(store: SQLiteEntryStore) -> None:
    orchestrator = _orchestrator(store)
    final, _ = _run(orchestrator)

    assert orchestrator.cancel("embedding-gen-0-deadbeef") is False
    assert orchestrator.cancel(final.progress_id) is True
    assert orchestrator.registry.get(final.progress_id).status is GenerationStatus.COMPLETED


def test_start_rejects_invalid_options(store: SQLiteEntryStore) -> None:
    orchestrator = _orchestrator(store)

    with pytest.raises(ValueError):
        orchestrator.start(GenerationOptions(batch_size=0))
    with pytest.raises(ValueError):
        orchestrator.start(GenerationOptions(batch_size=201))
    with pytest.raises(ValueError):
        orchestrator.start(GenerationOptions(limit=0))


def test_registry_tracks_job_while_running_and_after_finish(store: SQLiteEntryStore) -> None:
    _seed(store, 2)
    registry = ProgressRegistry()
    orchestrator = _orchestrator(store, registry=registry)

    handle = orchestrator.start(GenerationOptions())
    assert registry.get(handle.progress_id) is not None
    final = handle.wait(WAIT_SECONDS)

    assert final is not None
    assert final.status is GenerationStatus.COMPLETED
    assert registry.active_ids() == []
    assert final.finished_at is not None


def test_embed_entries_skips_already_embedded(store: SQLiteEntryStore) -> None:
    ids = _seed(store, 3)
    provider = MockEmbeddingProvider(dimension=DIMENSION)
    orchestrator = _orchestrator(store, provider)

    assert orchestrator.embed_entry(ids[0]) is True
    assert orchestrator.embed_entry(ids[0]) is False
    assert orchestrator.embed_entry("missing") is False

    result = orchestrator.embed_entries(ids)

    assert result.succeeded == 2
    assert result.failed == 0
    assert store.count_missing_embeddings() == 0
    assert len(provider.calls[-1]) == 2
