from __future__ import annotations

from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import threading
import time
from uuid import uuid4

from tmr_core.constants import DEFAULT_BATCH_SIZE, MAX_BATCH_SIZE
from tmr_core.embeddings.errors import EmbeddingFatalError
from tmr_core.embeddings.provider_base import EmbeddingProvider
from tmr_core.jobs.progress import (
    CurrentEntry,
    GenerationProgress,
    GenerationStatus,
    ProgressObserver,
    ProgressRegistry,
    notify_observers,
)
from tmr_core.jobs.retry import RetryPolicy
from tmr_core.tm.tm_store import EntryStore, TMEntry, TMEntryNotFoundError, is_valid_vector

logger = logging.getLogger(__name__)

JOB_ID_PREFIX = "embedding-gen"

Sleep = Callable[[float], object]


def _utc_now_iso() -> str:
    return (
        datetime.now(timezone.utc)
        .replace(microsecond=0)
        .isoformat()
        .replace("+00:00", "Z")
    )


def new_progress_id() -> str:
    return f"{JOB_ID_PREFIX}-{int(time.time() * 1000)}-{uuid4().hex[:8]}"


@dataclass(slots=True)
class GenerationOptions:
    project_id: str | None = None
    batch_size: int = DEFAULT_BATCH_SIZE
    limit: int | None = None
    observers: list[ProgressObserver] = field(default_factory=list)

    def validate(self) -> None:
        if not 1 <= self.batch_size <= MAX_BATCH_SIZE:
            raise ValueError(f"batch_size must be between 1 and {MAX_BATCH_SIZE}")
        if self.limit is not None and self.limit < 1:
            raise ValueError("limit must be at least 1")


@dataclass(slots=True, frozen=True)
class EmbedEntriesResult:
    succeeded: int
    failed: int


class _JobCancelled(Exception):
    pass


class GenerationJobHandle:
    """Caller-side view of one background generation job."""

    def __init__(
        self,
        progress_id: str,
        *,
        registry: ProgressRegistry,
        cancel_event: threading.Event,
        thread: threading.Thread,
    ) -> None:
        self.progress_id = progress_id
        self._registry = registry
        self._cancel_event = cancel_event
        self._thread = thread

    @property
    def done(self) -> bool:
        return not self._thread.is_alive()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        self._cancel_event.set()

    def wait(self, timeout: float | None = None) -> GenerationProgress | None:
        self._thread.join(timeout)
        return self.snapshot()

    def snapshot(self) -> GenerationProgress | None:
        return self._registry.get(self.progress_id)


@dataclass(slots=True)
class _JobState:
    progress: GenerationProgress
    options: GenerationOptions
    cancel_event: threading.Event
    sleep: Sleep


class EmbeddingGenerationOrchestrator:
    """Fill in missing source-text embeddings in background batches.

    Each job walks ``idle -> running -> completed | cancelled | error`` on its
    own daemon thread. The caller and the job share only the cancellation
    event and the snapshots published to the registry.
    """

    def __init__(
        self,
        entry_store: EntryStore,
        provider: EmbeddingProvider,
        registry: ProgressRegistry,
        *,
        retry_policy: RetryPolicy | None = None,
        batch_delay_seconds: float = 0.1,
        exclusion_cap: int = 100,
        max_empty_batches: int = 3,
        empty_batch_delay_seconds: float = 0.5,
        sleep: Sleep | None = None,
    ) -> None:
        self.entry_store = entry_store
        self.provider = provider
        self.registry = registry
        self.retry_policy = retry_policy or RetryPolicy()
        self.batch_delay_seconds = batch_delay_seconds
        self.exclusion_cap = exclusion_cap
        self.max_empty_batches = max_empty_batches
        self.empty_batch_delay_seconds = empty_batch_delay_seconds
        self._sleep = sleep
        self._lock = threading.Lock()
        self._handles: dict[str, GenerationJobHandle] = {}

    def start(self, options: GenerationOptions | None = None) -> GenerationJobHandle:
        options = options or GenerationOptions()
        options.validate()

        progress_id = new_progress_id()
        cancel_event = threading.Event()
        state = _JobState(
            progress=GenerationProgress(
                progress_id=progress_id,
                status=GenerationStatus.RUNNING,
                started_at=_utc_now_iso(),
            ),
            options=options,
            cancel_event=cancel_event,
            sleep=self._sleep or cancel_event.wait,
        )
        self._publish(state, state.progress)

        thread = threading.Thread(
            target=self._supervise,
            args=(state,),
            name=f"{progress_id}-worker",
            daemon=True,
        )
        handle = GenerationJobHandle(
            progress_id,
            registry=self.registry,
            cancel_event=cancel_event,
            thread=thread,
        )
        with self._lock:
            self._handles[progress_id] = handle
        thread.start()

        logger.info(
            "Started embedding generation %s (project=%s, batch_size=%d, limit=%s)",
            progress_id,
            options.project_id or "all",
            options.batch_size,
            options.limit,
        )
        return handle

    def get_handle(self, progress_id: str) -> GenerationJobHandle | None:
        with self._lock:
            return self._handles.get(progress_id)

    def cancel(self, progress_id: str) -> bool:
        """Request cancellation; returns False only for unknown job ids."""

        handle = self.get_handle(progress_id)
        if handle is None:
            return self.registry.get(progress_id) is not None
        snapshot = handle.snapshot()
        if snapshot is not None and snapshot.is_terminal:
            return True
        handle.cancel()
        logger.info("Cancellation requested for embedding generation %s", progress_id)
        return True

    def _publish(self, state: _JobState, snapshot: GenerationProgress) -> None:
        state.progress = snapshot
        if self.registry.publish(snapshot):
            notify_observers(state.options.observers, snapshot)

    def _finish(
        self,
        state: _JobState,
        status: GenerationStatus,
        *,
        error: str | None = None,
    ) -> None:
        self._publish(
            state,
            state.progress.evolve(
                status=status,
                error=error,
                current_entry=None,
                completed_at=_utc_now_iso(),
            ),
        )

    def _supervise(self, state: _JobState) -> None:
        try:
            self._run(state)
        except _JobCancelled:
            logger.info("Embedding generation %s cancelled", state.progress.progress_id)
            self._finish(state, GenerationStatus.CANCELLED)
        except EmbeddingFatalError as exc:
            logger.error("Embedding generation %s aborted: %s", state.progress.progress_id, exc)
            self._finish(state, GenerationStatus.ERROR, error=str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.exception("Embedding generation %s failed", state.progress.progress_id)
            self._finish(state, GenerationStatus.ERROR, error=str(exc) or exc.__class__.__name__)
        finally:
            with self._lock:
                self._handles.pop(state.progress.progress_id, None)

    def _wait(self, state: _JobState, seconds: float) -> None:
        if seconds > 0 and state.sleep(seconds) is True:
            raise _JobCancelled()

    def _check_cancelled(self, state: _JobState) -> None:
        if state.cancel_event.is_set():
            raise _JobCancelled()

    def _run(self, state: _JobState) -> None:
        options = state.options
        project_id = options.project_id
        limit = options.limit

        remaining = self.entry_store.count_missing_embeddings(project_id)
        total = min(limit, remaining) if limit else remaining
        self._publish(state, state.progress.evolve(total=total))

        if total == 0:
            logger.info("Embedding generation %s: nothing to embed", state.progress.progress_id)
            self._finish(state, GenerationStatus.COMPLETED)
            return

        logger.info(
            "Embedding generation %s: %d entries to embed",
            state.progress.progress_id,
            total,
        )

        recent_ids: deque[str] = deque(maxlen=self.exclusion_cap or None)
        # Entries that failed in this job stay excluded for the rest of it.
        failed_ids: set[str] = set()
        empty_batches = 0

        while True:
            self._check_cancelled(state)

            remaining = self.entry_store.count_missing_embeddings(project_id)
            if remaining == 0:
                break

            progress = state.progress
            revised_total = max(progress.total, progress.succeeded + remaining, progress.processed)
            if limit:
                revised_total = min(revised_total, limit)
            if revised_total != progress.total:
                self._publish(state, progress.evolve(total=revised_total))

            batch_size = options.batch_size
            if limit:
                batch_size = min(batch_size, limit - state.progress.processed)

            exclude = list(failed_ids.union(recent_ids))
            batch = self.entry_store.fetch_missing_embeddings(project_id, exclude, batch_size)

            if not batch:
                if self.entry_store.count_missing_embeddings(project_id) == 0:
                    break
                if not recent_ids:
                    logger.warning(
                        "Embedding generation %s: only previously failed entries remain",
                        state.progress.progress_id,
                    )
                    break
                empty_batches += 1
                if empty_batches > self.max_empty_batches:
                    logger.debug(
                        "Clearing %d excluded ids after %d empty batches",
                        len(recent_ids),
                        empty_batches,
                    )
                    recent_ids.clear()
                    empty_batches = 0
                self._wait(state, self.empty_batch_delay_seconds)
                continue

            empty_batches = 0
            if self.exclusion_cap:
                recent_ids.extend(entry.id for entry in batch)

            self._publish(
                state,
                state.progress.evolve(
                    current_entry=CurrentEntry.preview(batch[0].id, batch[0].source_text)
                ),
            )

            succeeded_ids = self._process_batch(state, batch)
            failed_ids.update(entry.id for entry in batch if entry.id not in succeeded_ids)
            succeeded = len(succeeded_ids)
            failed = len(batch) - succeeded
            progress = state.progress
            self._publish(
                state,
                progress.evolve(
                    processed=progress.processed + len(batch),
                    succeeded=progress.succeeded + succeeded,
                    failed=progress.failed + failed,
                    total=max(progress.total, progress.processed + len(batch)),
                ),
            )
            logger.debug(
                "Embedding generation %s: %d/%d processed (%d succeeded, %d failed)",
                state.progress.progress_id,
                state.progress.processed,
                state.progress.total,
                state.progress.succeeded,
                state.progress.failed,
            )

            if limit and state.progress.processed >= limit:
                break

            self._wait(state, self.batch_delay_seconds)

        self._check_cancelled(state)
        self._verify_and_complete(state)

    def _verify_and_complete(self, state: _JobState) -> None:
        limit = state.options.limit
        progress = state.progress
        remaining = self.entry_store.count_missing_embeddings(state.options.project_id)
        if remaining > 0 and not (limit and progress.processed >= limit):
            message = f"{remaining} entries remain unembedded"
            logger.error(
                "Embedding generation %s finished with %s (%d succeeded, %d failed)",
                progress.progress_id,
                message,
                progress.succeeded,
                progress.failed,
            )
            self._finish(state, GenerationStatus.ERROR, error=message)
            return

        logger.info(
            "Embedding generation %s completed: %d succeeded, %d failed",
            progress.progress_id,
            progress.succeeded,
            progress.failed,
        )
        self._finish(state, GenerationStatus.COMPLETED)

    def _process_batch(self, state: _JobState, batch: Sequence[TMEntry]) -> set[str]:
        """Embed and store one batch; returns the ids that were stored."""

        texts = [entry.source_text for entry in batch]
        try:
            vectors = self.retry_policy.call(
                lambda: self.provider.embed_batch(texts),
                sleep=state.sleep,
            )
        except EmbeddingFatalError:
            raise
        except Exception as exc:  # noqa: BLE001
            self._check_cancelled(state)
            logger.warning(
                "Embedding batch of %d entries failed: %s",
                len(batch),
                exc,
            )
            return set()

        stored: set[str] = set()
        dimension = self.provider.dimension
        for index, entry in enumerate(batch):
            vector = vectors[index] if index < len(vectors) else None
            if not is_valid_vector(vector, dimension):
                logger.warning(
                    "Invalid embedding for %s: expected %d dimensions, got %s",
                    entry.id,
                    dimension,
                    len(vector) if vector is not None else None,
                )
                continue
            try:
                self.entry_store.write_embedding(entry.id, vector, self.provider.model)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Storing embedding for %s failed: %s", entry.id, exc)
                continue
            stored.add(entry.id)
        return stored

    def embed_entry(self, entry_id: str) -> bool:
        """Embed one entry if it lacks an embedding; failures are logged only."""

        try:
            entry = self.entry_store.get_entry(entry_id)
        except TMEntryNotFoundError:
            logger.warning("Cannot embed missing entry %s", entry_id)
            return False
        if entry.has_embedding or not entry.source_text.strip():
            return False

        try:
            vector = self.provider.embed(entry.source_text)
            self.entry_store.write_embedding(entry.id, vector, self.provider.model)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to generate embedding for entry %s: %s", entry_id, exc)
            return False
        logger.debug("Generated embedding for entry %s", entry_id)
        return True

    def embed_entries(self, entry_ids: Sequence[str]) -> EmbedEntriesResult:
        entries: list[TMEntry] = []
        failed = 0
        for entry_id in entry_ids:
            try:
                entry = self.entry_store.get_entry(entry_id)
            except TMEntryNotFoundError:
                failed += 1
                continue
            if entry.has_embedding:
                continue
            if entry.source_text.strip():
                entries.append(entry)
            else:
                failed += 1

        if not entries:
            return EmbedEntriesResult(succeeded=0, failed=failed)

        try:
            vectors = self.provider.embed_batch([entry.source_text for entry in entries])
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to generate embeddings for %d entries: %s", len(entries), exc)
            return EmbedEntriesResult(succeeded=0, failed=failed + len(entries))

        succeeded = 0
        for entry, vector in zip(entries, vectors):
            if not is_valid_vector(vector, self.provider.dimension):
                failed += 1
                continue
            try:
                self.entry_store.write_embedding(entry.id, vector, self.provider.model)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Storing embedding for %s failed: %s", entry.id, exc)
                failed += 1
                continue
            succeeded += 1
        failed += max(0, len(entries) - len(vectors))

        logger.info("Generated embeddings for %d entries (%d failed)", succeeded, failed)
        return EmbedEntriesResult(succeeded=succeeded, failed=failed)
