from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import Enum
import logging
import threading
import time
from typing import Any

from tmr_core.constants import PROGRESS_RETENTION_SECONDS, PROGRESS_SWEEP_INTERVAL_SECONDS

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 50


class GenerationStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {GenerationStatus.COMPLETED, GenerationStatus.CANCELLED, GenerationStatus.ERROR}
)


@dataclass(slots=True, frozen=True)
class CurrentEntry:
    id: str
    source_text: str

    @classmethod
    def preview(cls, entry_id: str, source_text: str) -> CurrentEntry:
        return cls(id=entry_id, source_text=source_text[:PREVIEW_LENGTH])


@dataclass(slots=True, frozen=True)
class GenerationProgress:
    progress_id: str
    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    status: GenerationStatus = GenerationStatus.IDLE
    current_entry: CurrentEntry | None = None
    error: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    # Monotonic time of the terminal transition, used by the sweeper.
    finished_at: float | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def evolve(self, **changes: Any) -> GenerationProgress:
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "progress_id": self.progress_id,
            "total": self.total,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "status": self.status.value,
            "current_entry": (
                {"id": self.current_entry.id, "source_text": self.current_entry.source_text}
                if self.current_entry
                else None
            ),
            "error": self.error,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


ProgressObserver = Callable[[GenerationProgress], None]


def notify_observers(observers: list[ProgressObserver], snapshot: GenerationProgress) -> None:
    for observer in observers:
        try:
            observer(snapshot)
        except Exception:  # noqa: BLE001
            logger.exception("Progress observer failed for %s", snapshot.progress_id)


class ProgressRegistry:
    """In-memory map of generation job id to its latest progress snapshot.

    Snapshots are immutable and replaced atomically under a lock, so readers
    never see a partial update. Once a job reaches a terminal status its
    snapshot is frozen. Subscribers are called after every accepted publish,
    outside the lock.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._snapshots: dict[str, GenerationProgress] = {}
        self._observers: list[ProgressObserver] = []
        self._sweeper_stop: threading.Event | None = None
        self._sweeper_thread: threading.Thread | None = None

    def publish(self, snapshot: GenerationProgress) -> bool:
        """Store ``snapshot``; returns False if the job already finished."""

        with self._lock:
            current = self._snapshots.get(snapshot.progress_id)
            if current is not None and current.is_terminal:
                logger.warning(
                    "Ignored %s update for finished job %s (already %s)",
                    snapshot.status.value,
                    snapshot.progress_id,
                    current.status.value,
                )
                return False
            if snapshot.is_terminal and snapshot.finished_at is None:
                snapshot = snapshot.evolve(finished_at=self._clock())
            self._snapshots[snapshot.progress_id] = snapshot
            observers = list(self._observers)

        notify_observers(observers, snapshot)
        return True

    def get(self, progress_id: str) -> GenerationProgress | None:
        with self._lock:
            return self._snapshots.get(progress_id)

    def snapshots(self) -> list[GenerationProgress]:
        with self._lock:
            return list(self._snapshots.values())

    def active_ids(self) -> list[str]:
        with self._lock:
            return [
                progress_id
                for progress_id, snapshot in self._snapshots.items()
                if snapshot.status is GenerationStatus.RUNNING
            ]

    def subscribe(self, observer: ProgressObserver) -> Callable[[], None]:
        with self._lock:
            self._observers.append(observer)

        def _unsubscribe() -> None:
            with self._lock:
                if observer in self._observers:
                    self._observers.remove(observer)

        return _unsubscribe

    def sweep(self, retention_seconds: float = PROGRESS_RETENTION_SECONDS) -> list[str]:
        """Drop terminal snapshots older than ``retention_seconds``."""

        now = self._clock()
        with self._lock:
            expired = [
                progress_id
                for progress_id, snapshot in self._snapshots.items()
                if snapshot.finished_at is not None
                and now - snapshot.finished_at > retention_seconds
            ]
            for progress_id in expired:
                del self._snapshots[progress_id]

        if expired:
            logger.info("Removed %d finished generation snapshots", len(expired))
        return expired

    def start_sweeper(
        self,
        *,
        interval_seconds: float = PROGRESS_SWEEP_INTERVAL_SECONDS,
        retention_seconds: float = PROGRESS_RETENTION_SECONDS,
    ) -> None:
        if self._sweeper_thread is not None and self._sweeper_thread.is_alive():
            return

        stop = threading.Event()

        def _run() -> None:
            while not stop.wait(interval_seconds):
                self.sweep(retention_seconds)

        self._sweeper_stop = stop
        self._sweeper_thread = threading.Thread(
            target=_run,
            name="progress-registry-sweeper",
            daemon=True,
        )
        self._sweeper_thread.start()

    def stop_sweeper(self, timeout: float | None = 5.0) -> None:
        if self._sweeper_stop is None or self._sweeper_thread is None:
            return
        self._sweeper_stop.set()
        self._sweeper_thread.join(timeout)
        self._sweeper_stop = None
        self._sweeper_thread = None
