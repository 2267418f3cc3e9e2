from __future__ import annotations

CURRENT_SCHEMA_VERSION = 2
DEFAULT_DB_FILENAME = "tm.db"
DEFAULT_CONFIG_FILENAME = "tm_config.yml"

EMBEDDING_MODEL = "text-embedding-3-small"
EMBEDDING_DIMENSIONS = 1536
EMBEDDING_FORMAT_VERSION = "1.0"

SCOPE_PROJECT = "project"
SCOPE_GLOBAL = "global"

METHOD_FUZZY = "fuzzy"
METHOD_VECTOR = "vector"
METHOD_HYBRID = "hybrid"

DEFAULT_SEARCH_LIMIT = 25
MAX_SEARCH_LIMIT = 100
DEFAULT_MIN_SCORE = 50
DEFAULT_VECTOR_SIMILARITY = 0.5
HIGH_QUALITY_SCORE = 95

SEARCH_CACHE_MAX_ENTRIES = 100
SEARCH_CACHE_TTL_SECONDS = 30.0
EMBEDDING_CACHE_MAX_ENTRIES = 10_000
EMBEDDING_CACHE_TTL_SECONDS = 7 * 24 * 60 * 60.0

DEFAULT_BATCH_SIZE = 50
MAX_BATCH_SIZE = 200
PROGRESS_RETENTION_SECONDS = 60 * 60.0
PROGRESS_SWEEP_INTERVAL_SECONDS = 10 * 60.0
