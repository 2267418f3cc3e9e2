from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
import heapq
import logging
from typing import Any

import numpy as np
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from tmr_core.constants import EMBEDDING_DIMENSIONS
from tmr_core.db.migrations import EMBEDDING_COLUMNS, MISSING_EMBEDDING_INDEX, column_names, index_exists
from tmr_core.tm.locale_match import LocaleFilter
from tmr_core.tm.tm_store import EmbeddingCoverage, TMEntry, decode_vector, entry_from_mapping

logger = logging.getLogger(__name__)

_FETCH_CHUNK_SIZE = 500


class VectorSearchError(RuntimeError):
    """Raised when a nearest-neighbor query cannot be answered."""


class VectorStoreConfigurationError(VectorSearchError):
    """Raised when the store lacks the columns or indexes vector search needs."""


@dataclass(slots=True, frozen=True)
class VectorFilters:
    project_id: str | None = None
    source_locale: LocaleFilter = field(default_factory=LocaleFilter.any)
    target_locale: LocaleFilter = field(default_factory=LocaleFilter.any)


@dataclass(slots=True, frozen=True)
class VectorHit:
    entry: TMEntry
    similarity: float

    @property
    def distance(self) -> float:
        return 1.0 - self.similarity


@dataclass(slots=True, frozen=True)
class VectorSetupReport:
    coverage: EmbeddingCoverage
    dimension: int
    missing_embedding_index: str


class VectorStore(ABC):
    @abstractmethod
    def nearest_neighbors(
        self,
        vector: Sequence[float],
        filters: VectorFilters,
        *,
        min_similarity: float,
        limit: int,
    ) -> list[VectorHit]:
        """Closest embedded entries by cosine distance, most similar first."""

    @abstractmethod
    def verify(self) -> VectorSetupReport:
        """Check the store can serve vector search or raise a configuration error."""


def cosine_similarity(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Row-wise cosine similarity clamped to ``[0, 1]``; zero rows score 0."""

    query_norm = float(np.linalg.norm(query))
    row_norms = np.linalg.norm(matrix, axis=1)
    denominator = row_norms * query_norm
    with np.errstate(divide="ignore", invalid="ignore"):
        raw = np.where(denominator > 0, (matrix @ query) / denominator, 0.0)
    return np.clip(raw, 0.0, 1.0)


class SQLiteVectorStore(VectorStore):
    """Brute-force cosine search over float32 BLOB embeddings."""

    def __init__(self, engine: Engine, *, dimension: int = EMBEDDING_DIMENSIONS) -> None:
        self.engine = engine
        self.dimension = dimension

    def _iter_embedded_rows(self, filters: VectorFilters) -> Iterator[list[Any]]:
        clauses = ["source_embedding IS NOT NULL"]
        params: dict[str, Any] = {}
        if filters.project_id:
            clauses.append("(project_id = :project_id OR project_id IS NULL)")
            params["project_id"] = filters.project_id
        else:
            clauses.append("project_id IS NULL")

        source_clause, source_params = filters.source_locale.sql_clause("source_locale", "source_locale")
        target_clause, target_params = filters.target_locale.sql_clause("target_locale", "target_locale")
        clauses.extend([source_clause, target_clause])
        params.update(source_params)
        params.update(target_params)

        statement = text(
            f"""
            SELECT
                id,
                project_id,
                source_locale,
                target_locale,
                source_text,
                target_text,
                client_name,
                domain,
                match_rate,
                usage_count,
                created_at,
                updated_at,
                embedding_model,
                embedding_version,
                embedding_updated_at,
                source_embedding
            FROM tm_entries
            WHERE {" AND ".join(clauses)}
            ORDER BY created_at DESC, id DESC
            """
        )
        with self.engine.connect() as connection:
            result = connection.execute(statement, params).mappings()
            while True:
                chunk = result.fetchmany(_FETCH_CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk

    def nearest_neighbors(
        self,
        vector: Sequence[float],
        filters: VectorFilters,
        *,
        min_similarity: float,
        limit: int,
    ) -> list[VectorHit]:
        if len(vector) != self.dimension:
            raise VectorSearchError(
                f"Invalid query embedding: expected {self.dimension} dimensions, got {len(vector)}"
            )
        query = np.asarray(vector, dtype=np.float32)
        if not np.all(np.isfinite(query)) or not np.any(query):
            raise VectorSearchError("Invalid query embedding: vector must be finite and non-zero")

        limit = max(1, int(limit))
        # Heap of (similarity, -sequence, row); sequence keeps newest-first on ties.
        best: list[tuple[float, int, Any]] = []
        sequence = 0
        skipped = 0
        try:
            for chunk in self._iter_embedded_rows(filters):
                rows = []
                vectors = []
                for row in chunk:
                    stored = decode_vector(row["source_embedding"])
                    if stored.shape[0] != self.dimension:
                        skipped += 1
                        continue
                    rows.append(row)
                    vectors.append(stored)
                if not vectors:
                    continue

                similarities = cosine_similarity(query, np.vstack(vectors))
                for row, similarity in zip(rows, similarities):
                    sequence += 1
                    score = float(similarity)
                    if score < min_similarity:
                        continue
                    item = (score, -sequence, row)
                    if len(best) < limit:
                        heapq.heappush(best, item)
                    elif item[:2] > best[0][:2]:
                        heapq.heapreplace(best, item)
        except SQLAlchemyError as exc:
            raise VectorSearchError(f"Vector search query failed: {exc}") from exc

        if skipped:
            logger.warning("Skipped %d stored embeddings with unexpected dimensions", skipped)

        ranked = sorted(best, key=lambda item: (item[0], item[1]), reverse=True)
        return [
            VectorHit(entry=entry_from_mapping(row, vector_blob=None), similarity=score)
            for score, _, row in ranked
        ]

    def verify(self) -> VectorSetupReport:
        try:
            with self.engine.connect() as connection:
                columns = column_names(connection, "tm_entries")
                if not columns:
                    raise VectorStoreConfigurationError(
                        "Table tm_entries does not exist. Run `tmr init-db` first."
                    )
                missing = [name for name in EMBEDDING_COLUMNS if name not in columns]
                if missing:
                    raise VectorStoreConfigurationError(
                        f"tm_entries is missing embedding columns: {', '.join(missing)}"
                    )
                if not index_exists(connection, MISSING_EMBEDDING_INDEX):
                    raise VectorStoreConfigurationError(
                        f"Index {MISSING_EMBEDDING_INDEX} is missing. Re-run migrations."
                    )

                counts = connection.execute(
                    text(
                        """
                        SELECT COUNT(*) AS total, COUNT(source_embedding) AS with_embedding
                        FROM tm_entries
                        """
                    )
                ).mappings().one()
                lengths = connection.execute(
                    text(
                        """
                        SELECT DISTINCT length(source_embedding)
                        FROM tm_entries
                        WHERE source_embedding IS NOT NULL
                        """
                    )
                ).scalars().all()
        except SQLAlchemyError as exc:
            raise VectorStoreConfigurationError(f"Vector store check failed: {exc}") from exc

        expected_bytes = self.dimension * np.dtype(np.float32).itemsize
        unexpected = sorted(
            int(length) // np.dtype(np.float32).itemsize
            for length in lengths
            if int(length) != expected_bytes
        )
        if unexpected:
            raise VectorStoreConfigurationError(
                f"Stored embeddings have dimensions {unexpected}; expected {self.dimension}. "
                "Clear and regenerate embeddings after changing the model."
            )

        coverage = EmbeddingCoverage.from_counts(
            total=int(counts["total"] or 0),
            with_embedding=int(counts["with_embedding"] or 0),
        )
        logger.info(
            "Vector setup verified: %d of %d entries embedded (%.2f%%)",
            coverage.with_embedding,
            coverage.total,
            coverage.coverage,
        )
        return VectorSetupReport(
            coverage=coverage,
            dimension=self.dimension,
            missing_embedding_index=MISSING_EMBEDDING_INDEX,
        )
