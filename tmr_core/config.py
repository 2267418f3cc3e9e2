from __future__ import annotations

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field

from tmr_core.constants import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_MIN_SCORE,
    DEFAULT_SEARCH_LIMIT,
    DEFAULT_VECTOR_SIMILARITY,
    EMBEDDING_CACHE_MAX_ENTRIES,
    EMBEDDING_CACHE_TTL_SECONDS,
    EMBEDDING_DIMENSIONS,
    EMBEDDING_MODEL,
    MAX_BATCH_SIZE,
    PROGRESS_RETENTION_SECONDS,
    PROGRESS_SWEEP_INTERVAL_SECONDS,
    SEARCH_CACHE_MAX_ENTRIES,
    SEARCH_CACHE_TTL_SECONDS,
)


class SearchSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    default_limit: int = Field(default=DEFAULT_SEARCH_LIMIT, ge=1, le=100)
    default_min_score: int = Field(default=DEFAULT_MIN_SCORE, ge=0, le=100)
    default_vector_similarity: float = Field(default=DEFAULT_VECTOR_SIMILARITY, ge=0.0, le=1.0)
    use_vector_search: bool = True
    worker_threads: int = Field(default=4, ge=2)


class CacheSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    search_max_entries: int = Field(default=SEARCH_CACHE_MAX_ENTRIES, ge=1)
    search_ttl_seconds: float = Field(default=SEARCH_CACHE_TTL_SECONDS, gt=0)
    embedding_max_entries: int = Field(default=EMBEDDING_CACHE_MAX_ENTRIES, ge=1)
    embedding_ttl_seconds: float = Field(default=EMBEDDING_CACHE_TTL_SECONDS, gt=0)


class EmbeddingSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    provider: Literal["openai", "mock"] = "openai"
    model: str = EMBEDDING_MODEL
    dimension: int = Field(default=EMBEDDING_DIMENSIONS, ge=1)
    base_url: str = "https://api.openai.com/v1/embeddings"
    timeout_seconds: float = Field(default=30.0, gt=0)


class GenerationSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    batch_size: int = Field(default=DEFAULT_BATCH_SIZE, ge=1, le=MAX_BATCH_SIZE)
    batch_delay_seconds: float = Field(default=0.1, ge=0)
    max_retries: int = Field(default=3, ge=0)
    retry_base_delay_seconds: float = Field(default=1.0, ge=0)
    retry_multiplier: float = Field(default=2.0, ge=1.0)
    retry_max_delay_seconds: float = Field(default=30.0, ge=0)
    exclusion_cap: int = Field(default=100, ge=0)
    max_empty_batches: int = Field(default=3, ge=0)
    empty_batch_delay_seconds: float = Field(default=0.5, ge=0)
    auto_embed_on_upsert: bool = True
    progress_retention_seconds: float = Field(default=PROGRESS_RETENTION_SECONDS, gt=0)
    progress_sweep_interval_seconds: float = Field(default=PROGRESS_SWEEP_INTERVAL_SECONDS, gt=0)


class RetrievalConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    log_level: str = "INFO"
    search: SearchSettings = Field(default_factory=SearchSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    generation: GenerationSettings = Field(default_factory=GenerationSettings)


def write_config(config_path: Path, config: RetrievalConfig) -> None:
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(config.model_dump(mode="python"), handle, sort_keys=False)


def read_config(config_path: Path) -> RetrievalConfig:
    with config_path.open("r", encoding="utf-8") as handle:
        content = yaml.safe_load(handle) or {}
    return RetrievalConfig.model_validate(content)


def load_config(config_path: Path | None = None) -> RetrievalConfig:
    if config_path is None or not Path(config_path).exists():
        return RetrievalConfig()
    return read_config(Path(config_path))
