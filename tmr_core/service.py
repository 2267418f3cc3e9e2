from __future__ import annotations

from pathlib import Path
import logging
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tmr_core.config import EmbeddingSettings, RetrievalConfig
from tmr_core.constants import MAX_BATCH_SIZE, MAX_SEARCH_LIMIT
from tmr_core.db.schema import initialize_database
from tmr_core.embeddings.cached import CachedEmbeddingProvider
from tmr_core.embeddings.provider_base import EmbeddingProvider
from tmr_core.embeddings.provider_mock import MockEmbeddingProvider
from tmr_core.embeddings.provider_openai import OpenAIEmbeddingProvider
from tmr_core.jobs.embedding_job import (
    EmbeddingGenerationOrchestrator,
    GenerationJobHandle,
    GenerationOptions,
)
from tmr_core.jobs.progress import GenerationProgress, ProgressObserver, ProgressRegistry
from tmr_core.jobs.retry import RetryPolicy
from tmr_core.tm.merge import SearchResult
from tmr_core.tm.search_cache import SearchCache
from tmr_core.tm.tm_import import ImportSummary, import_tabular_entries
from tmr_core.tm.tm_search import HybridSearcher
from tmr_core.tm.tm_store import EmbeddingCoverage, SQLiteEntryStore, TMEntry
from tmr_core.vector.retriever import VectorRetriever
from tmr_core.vector.store import SQLiteVectorStore, VectorSetupReport

logger = logging.getLogger(__name__)


class SearchRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    source_text: str
    source_locale: str = "*"
    target_locale: str = "*"
    project_id: str | None = None
    limit: int | None = None
    min_score: int | None = Field(default=None, ge=0, le=100)
    # Percentage, 0-100.
    vector_similarity: float | None = Field(default=None, ge=0, le=100)
    mode: Literal["basic", "extended"] = "basic"
    use_vector_search: bool | None = None

    @field_validator("limit")
    @classmethod
    def _clamp_limit(cls, value: int | None) -> int | None:
        if value is None:
            return None
        return max(1, min(MAX_SEARCH_LIMIT, value))


class StartGenerationRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    project_id: str | None = None
    batch_size: int | None = Field(default=None, ge=1, le=MAX_BATCH_SIZE)
    limit: int | None = Field(default=None, ge=1)


def build_provider(settings: EmbeddingSettings) -> EmbeddingProvider:
    if settings.provider == "mock":
        return MockEmbeddingProvider(dimension=settings.dimension)
    return OpenAIEmbeddingProvider(
        model=settings.model,
        dimension=settings.dimension,
        base_url=settings.base_url,
        timeout_seconds=settings.timeout_seconds,
    )


class TranslationMemoryService:
    """Search, maintenance and generation-control entry points for one TM database."""

    def __init__(
        self,
        *,
        config: RetrievalConfig,
        entry_store: SQLiteEntryStore,
        vector_store: SQLiteVectorStore,
        searcher: HybridSearcher,
        orchestrator: EmbeddingGenerationOrchestrator,
        registry: ProgressRegistry,
        search_cache: SearchCache[SearchResult] | None = None,
    ) -> None:
        self.config = config
        self.entry_store = entry_store
        self.vector_store = vector_store
        self.searcher = searcher
        self.orchestrator = orchestrator
        self.registry = registry
        self.search_cache = search_cache

    def close(self) -> None:
        self.registry.stop_sweeper()
        self.searcher.close()
        self.entry_store.engine.dispose()

    def __enter__(self) -> TranslationMemoryService:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _invalidate_search_cache(self) -> None:
        if self.search_cache is not None:
            self.search_cache.clear()

    def search(self, request: SearchRequest | dict[str, Any]) -> list[SearchResult]:
        if isinstance(request, dict):
            request = SearchRequest.model_validate(request)
        settings = self.config.search

        vector_similarity = (
            request.vector_similarity / 100
            if request.vector_similarity is not None
            else settings.default_vector_similarity
        )
        return self.searcher.search(
            request.source_text,
            source_locale=request.source_locale,
            target_locale=request.target_locale,
            project_id=request.project_id,
            limit=request.limit if request.limit is not None else settings.default_limit,
            min_score=request.min_score if request.min_score is not None else settings.default_min_score,
            vector_similarity=vector_similarity,
            mode=request.mode,
            use_vector_search=(
                request.use_vector_search
                if request.use_vector_search is not None
                else settings.use_vector_search
            ),
        )

    def add_entry(
        self,
        *,
        source_locale: str,
        target_locale: str,
        source_text: str,
        target_text: str,
        project_id: str | None = None,
        client_name: str | None = None,
        domain: str | None = None,
        match_rate: float | None = None,
    ) -> TMEntry:
        entry, created = self.entry_store.upsert_entry(
            source_locale=source_locale,
            target_locale=target_locale,
            source_text=source_text,
            target_text=target_text,
            project_id=project_id,
            client_name=client_name,
            domain=domain,
            match_rate=match_rate,
        )
        self._invalidate_search_cache()
        if created and self.config.generation.auto_embed_on_upsert:
            if self.orchestrator.embed_entry(entry.id):
                entry = self.entry_store.get_entry(entry.id)
        return entry

    def import_entries(self, *, embed: bool | None = None, **kwargs: Any) -> ImportSummary:
        summary = import_tabular_entries(self.entry_store, **kwargs)
        self._invalidate_search_cache()
        should_embed = self.config.generation.auto_embed_on_upsert if embed is None else embed
        if should_embed and summary.entry_ids:
            self.orchestrator.embed_entries(summary.entry_ids)
        return summary

    def start_generation_job(
        self,
        request: StartGenerationRequest | dict[str, Any] | None = None,
        *,
        observers: list[ProgressObserver] | None = None,
    ) -> GenerationJobHandle:
        if request is None:
            request = StartGenerationRequest()
        elif isinstance(request, dict):
            request = StartGenerationRequest.model_validate(request)

        return self.orchestrator.start(
            GenerationOptions(
                project_id=request.project_id,
                batch_size=request.batch_size or self.config.generation.batch_size,
                limit=request.limit,
                observers=list(observers or []),
            )
        )

    def start_generation(
        self,
        request: StartGenerationRequest | dict[str, Any] | None = None,
    ) -> str:
        return self.start_generation_job(request).progress_id

    def get_progress(self, progress_id: str) -> GenerationProgress | None:
        return self.registry.get(progress_id)

    def cancel_generation(self, progress_id: str) -> bool:
        return self.orchestrator.cancel(progress_id)

    def list_active_jobs(self) -> list[str]:
        return self.registry.active_ids()

    def embedding_stats(self, project_id: str | None = None) -> EmbeddingCoverage:
        return self.entry_store.embedding_stats(project_id)

    def verify_vector_setup(self) -> VectorSetupReport:
        return self.vector_store.verify()


def open_service(
    db_path: Path,
    config: RetrievalConfig | None = None,
    *,
    provider: EmbeddingProvider | None = None,
    start_sweeper: bool = True,
) -> TranslationMemoryService:
    config = config or RetrievalConfig()
    engine = initialize_database(Path(db_path))

    raw_provider = provider or build_provider(config.embedding)
    dimension = raw_provider.dimension
    cached_provider = CachedEmbeddingProvider(
        raw_provider,
        max_entries=config.cache.embedding_max_entries,
        ttl_seconds=config.cache.embedding_ttl_seconds,
    )

    entry_store = SQLiteEntryStore(engine, dimension=dimension)
    vector_store = SQLiteVectorStore(engine, dimension=dimension)
    search_cache: SearchCache[SearchResult] = SearchCache(
        max_entries=config.cache.search_max_entries,
        ttl_seconds=config.cache.search_ttl_seconds,
    )
    searcher = HybridSearcher(
        entry_store,
        retriever=VectorRetriever(cached_provider, vector_store),
        cache=search_cache,
        max_workers=config.search.worker_threads,
    )

    generation = config.generation
    registry = ProgressRegistry()
    orchestrator = EmbeddingGenerationOrchestrator(
        entry_store,
        cached_provider,
        registry,
        retry_policy=RetryPolicy(
            max_retries=generation.max_retries,
            base_delay_seconds=generation.retry_base_delay_seconds,
            multiplier=generation.retry_multiplier,
            max_delay_seconds=generation.retry_max_delay_seconds,
        ),
        batch_delay_seconds=generation.batch_delay_seconds,
        exclusion_cap=generation.exclusion_cap,
        max_empty_batches=generation.max_empty_batches,
        empty_batch_delay_seconds=generation.empty_batch_delay_seconds,
    )
    if start_sweeper:
        registry.start_sweeper(
            interval_seconds=generation.progress_sweep_interval_seconds,
            retention_seconds=generation.progress_retention_seconds,
        )

    logger.debug("Opened TM service for %s (provider=%s)", db_path, raw_provider.model)
    return TranslationMemoryService(
        config=config,
        entry_store=entry_store,
        vector_store=vector_store,
        searcher=searcher,
        orchestrator=orchestrator,
        registry=registry,
        search_cache=search_cache,
    )
