"""Background embedding generation and its progress tracking."""

from tmr_core.jobs.embedding_job import (
    EmbedEntriesResult,
    EmbeddingGenerationOrchestrator,
    GenerationJobHandle,
    GenerationOptions,
)
from tmr_core.jobs.progress import (
    CurrentEntry,
    GenerationProgress,
    GenerationStatus,
    ProgressObserver,
    ProgressRegistry,
)
from tmr_core.jobs.retry import RetryPolicy

__all__ = [
    "CurrentEntry",
    "EmbedEntriesResult",
    "EmbeddingGenerationOrchestrator",
    "GenerationJobHandle",
    "GenerationOptions",
    "GenerationProgress",
    "GenerationStatus",
    "ProgressObserver",
    "ProgressRegistry",
    "RetryPolicy",
]
