from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import math
from typing import Any
from uuid import uuid4

import numpy as np
from sqlalchemy import bindparam, text
from sqlalchemy.engine import Engine
from sqlmodel import col, func, select

from tmr_core.constants import (
    EMBEDDING_DIMENSIONS,
    EMBEDDING_FORMAT_VERSION,
    EMBEDDING_MODEL,
    SCOPE_GLOBAL,
    SCOPE_PROJECT,
)
from tmr_core.db.models import TMEntryRow
from tmr_core.db.session import session_for_engine
from tmr_core.tm.locale_match import LocaleFilter
from tmr_core.tm.normalize import normalized_source_hash

logger = logging.getLogger(__name__)

_ENTRY_COLUMNS = """
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
    source_embedding IS NOT NULL AS has_embedding
"""


class TMEntryNotFoundError(LookupError):
    """Raised when a translation-memory entry id does not exist."""


@dataclass(slots=True, frozen=True)
class EmbeddingRecord:
    vector: tuple[float, ...]
    model: str
    version: str
    updated_at: str | None


@dataclass(slots=True, frozen=True)
class TMEntry:
    id: str
    project_id: str | None
    source_locale: str
    target_locale: str
    source_text: str
    target_text: str
    client_name: str | None = None
    domain: str | None = None
    match_rate: float = 1.0
    usage_count: int = 0
    created_at: str = ""
    updated_at: str = ""
    has_embedding: bool = False
    embedding_model: str | None = None
    embedding: EmbeddingRecord | None = None

    @property
    def scope(self) -> str:
        return SCOPE_PROJECT if self.project_id else SCOPE_GLOBAL

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "source_locale": self.source_locale,
            "target_locale": self.target_locale,
            "source_text": self.source_text,
            "target_text": self.target_text,
            "client_name": self.client_name,
            "domain": self.domain,
            "match_rate": self.match_rate,
            "usage_count": self.usage_count,
            "created_at": self.created_at,
            "has_embedding": self.has_embedding,
            "embedding_model": self.embedding_model,
        }


@dataclass(slots=True, frozen=True)
class EntryPage:
    entries: list[TMEntry]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


@dataclass(slots=True, frozen=True)
class EmbeddingCoverage:
    total: int
    with_embedding: int
    without_embedding: int
    coverage: float

    @classmethod
    def from_counts(cls, *, total: int, with_embedding: int) -> EmbeddingCoverage:
        coverage = (with_embedding / total) * 100 if total > 0 else 0.0
        return cls(
            total=total,
            with_embedding=with_embedding,
            without_embedding=total - with_embedding,
            coverage=round(coverage, 2),
        )


def _utc_now_iso() -> str:
    return (
        datetime.now(timezone.utc)
        .replace(microsecond=0)
        .isoformat()
        .replace("+00:00", "Z")
    )


def encode_vector(vector: Sequence[float]) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


def decode_vector(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype=np.float32)


def is_valid_vector(vector: Sequence[float] | None, dimension: int) -> bool:
    if vector is None or len(vector) != dimension:
        return False
    array = np.asarray(vector, dtype=np.float64)
    return bool(np.all(np.isfinite(array))) and bool(np.any(array))


def entry_from_mapping(row: Mapping[str, Any], *, vector_blob: bytes | None = None) -> TMEntry:
    embedding = None
    if vector_blob is not None:
        embedding = EmbeddingRecord(
            vector=tuple(float(value) for value in decode_vector(vector_blob)),
            model=str(row.get("embedding_model") or EMBEDDING_MODEL),
            version=str(row.get("embedding_version") or EMBEDDING_FORMAT_VERSION),
            updated_at=row.get("embedding_updated_at"),
        )
    has_embedding = row.get("has_embedding")
    if has_embedding is None:
        has_embedding = vector_blob is not None or row.get("source_embedding") is not None
    return TMEntry(
        id=str(row["id"]),
        project_id=row.get("project_id"),
        source_locale=str(row["source_locale"]),
        target_locale=str(row["target_locale"]),
        source_text=str(row["source_text"]),
        target_text=str(row["target_text"]),
        client_name=row.get("client_name"),
        domain=row.get("domain"),
        match_rate=float(row.get("match_rate") if row.get("match_rate") is not None else 1.0),
        usage_count=int(row.get("usage_count") or 0),
        created_at=str(row.get("created_at") or ""),
        updated_at=str(row.get("updated_at") or ""),
        has_embedding=bool(has_embedding),
        embedding_model=row.get("embedding_model"),
        embedding=embedding,
    )


def _entry_from_model(row: TMEntryRow) -> TMEntry:
    return entry_from_mapping(row.model_dump(), vector_blob=row.source_embedding)


class EntryStore(ABC):
    """Entry-store contract consumed by hybrid search and embedding generation."""

    @abstractmethod
    def fetch_candidates(
        self,
        *,
        scope: str,
        project_id: str | None,
        source_locale: LocaleFilter,
        target_locale: LocaleFilter,
        limit: int,
    ) -> list[TMEntry]:
        """Newest-first fuzzy candidates for one scope."""

    @abstractmethod
    def get_entry(self, entry_id: str) -> TMEntry:
        """Load one entry including its embedding record."""

    @abstractmethod
    def count_missing_embeddings(self, project_id: str | None = None) -> int:
        """Entries with non-empty source text and no embedding."""

    @abstractmethod
    def fetch_missing_embeddings(
        self,
        project_id: str | None,
        exclude_ids: Sequence[str],
        batch_size: int,
    ) -> list[TMEntry]:
        """Up to ``batch_size`` un-embedded entries, skipping ``exclude_ids``."""

    @abstractmethod
    def write_embedding(self, entry_id: str, vector: Sequence[float], model: str) -> None:
        """Persist one embedding; raises on invalid vectors or unknown ids."""

    @abstractmethod
    def embedding_stats(self, project_id: str | None = None) -> EmbeddingCoverage:
        """Embedding coverage across all entries or one project."""


class SQLiteEntryStore(EntryStore):
    def __init__(self, engine: Engine, *, dimension: int = EMBEDDING_DIMENSIONS) -> None:
        self.engine = engine
        self.dimension = dimension

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
        if not source_text.strip() or not target_text.strip():
            raise ValueError("source_text and target_text must not be empty")

        now = _utc_now_iso()
        row = TMEntryRow(
            id=str(uuid4()),
            project_id=project_id or None,
            source_locale=source_locale.strip(),
            target_locale=target_locale.strip(),
            source_text=source_text,
            target_text=target_text,
            normalized_source_hash=normalized_source_hash(source_text),
            client_name=client_name,
            domain=domain,
            match_rate=1.0 if match_rate is None else float(match_rate),
            usage_count=0,
            created_at=now,
            updated_at=now,
        )
        with session_for_engine(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _entry_from_model(row)

    def upsert_entry(
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
    ) -> tuple[TMEntry, bool]:
        """Update the entry with the same normalized source, or insert one.

        Returns ``(entry, created)``.
        """

        normalized_hash = normalized_source_hash(source_text)
        with session_for_engine(self.engine) as session:
            statement = select(TMEntryRow).where(
                TMEntryRow.source_locale == source_locale.strip(),
                TMEntryRow.target_locale == target_locale.strip(),
                TMEntryRow.normalized_source_hash == normalized_hash,
            )
            if project_id:
                statement = statement.where(TMEntryRow.project_id == project_id)
            else:
                statement = statement.where(col(TMEntryRow.project_id).is_(None))
            existing = session.exec(
                statement.order_by(col(TMEntryRow.updated_at).desc(), col(TMEntryRow.id).desc())
            ).first()

            if existing is not None:
                existing.target_text = target_text
                existing.match_rate = 1.0 if match_rate is None else float(match_rate)
                existing.client_name = client_name if client_name is not None else existing.client_name
                existing.domain = domain if domain is not None else existing.domain
                existing.usage_count = existing.usage_count + 1
                existing.updated_at = _utc_now_iso()
                session.add(existing)
                session.commit()
                session.refresh(existing)
                return _entry_from_model(existing), False

        created = self.add_entry(
            source_locale=source_locale,
            target_locale=target_locale,
            source_text=source_text,
            target_text=target_text,
            project_id=project_id,
            client_name=client_name,
            domain=domain,
            match_rate=match_rate,
        )
        return created, True

    def get_entry(self, entry_id: str) -> TMEntry:
        with session_for_engine(self.engine) as session:
            row = session.get(TMEntryRow, entry_id)
            if row is None:
                raise TMEntryNotFoundError(f"Translation memory entry not found: {entry_id}")
            return _entry_from_model(row)

    def list_entries(
        self,
        *,
        project_id: str | None = None,
        page: int = 1,
        limit: int = 50,
        global_only: bool = False,
    ) -> EntryPage:
        page = max(1, int(page))
        limit = max(1, int(limit))
        with session_for_engine(self.engine) as session:
            statement = select(TMEntryRow)
            count_statement = select(func.count()).select_from(TMEntryRow)
            if global_only:
                statement = statement.where(col(TMEntryRow.project_id).is_(None))
                count_statement = count_statement.where(col(TMEntryRow.project_id).is_(None))
            elif project_id:
                statement = statement.where(TMEntryRow.project_id == project_id)
                count_statement = count_statement.where(TMEntryRow.project_id == project_id)

            rows = session.exec(
                statement.order_by(col(TMEntryRow.created_at).desc(), col(TMEntryRow.id))
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()
            total = session.exec(count_statement).one()

        return EntryPage(
            entries=[_entry_from_model(row) for row in rows],
            total=int(total),
            page=page,
            limit=limit,
        )

    def update_entry(
        self,
        entry_id: str,
        *,
        source_text: str | None = None,
        target_text: str | None = None,
        match_rate: float | None = None,
    ) -> TMEntry:
        with session_for_engine(self.engine) as session:
            row = session.get(TMEntryRow, entry_id)
            if row is None:
                raise TMEntryNotFoundError(f"Translation memory entry not found: {entry_id}")

            if source_text is not None and source_text != row.source_text:
                if not source_text.strip():
                    raise ValueError("source_text must not be empty")
                row.source_text = source_text
                row.normalized_source_hash = normalized_source_hash(source_text)
                # The stored vector described the old source text.
                row.source_embedding = None
                row.embedding_model = None
                row.embedding_version = None
                row.embedding_updated_at = None
            if target_text is not None:
                row.target_text = target_text
            if match_rate is not None:
                row.match_rate = float(match_rate)
            row.updated_at = _utc_now_iso()

            session.add(row)
            session.commit()
            session.refresh(row)
            return _entry_from_model(row)

    def delete_entry(self, entry_id: str) -> None:
        with session_for_engine(self.engine) as session:
            row = session.get(TMEntryRow, entry_id)
            if row is None:
                raise TMEntryNotFoundError(f"Translation memory entry not found: {entry_id}")
            session.delete(row)
            session.commit()

    def record_use(self, entry_id: str) -> None:
        with self.engine.begin() as connection:
            connection.execute(
                text(
                    """
                    UPDATE tm_entries
                    SET
                        usage_count = usage_count + 1,
                        last_used_at = :last_used_at
                    WHERE id = :entry_id
                    """
                ),
                {"entry_id": entry_id, "last_used_at": _utc_now_iso()},
            )

    def fetch_candidates(
        self,
        *,
        scope: str,
        project_id: str | None,
        source_locale: LocaleFilter,
        target_locale: LocaleFilter,
        limit: int,
    ) -> list[TMEntry]:
        if scope == SCOPE_PROJECT and not project_id:
            return []

        source_clause, source_params = source_locale.sql_clause("source_locale", "source_locale")
        target_clause, target_params = target_locale.sql_clause("target_locale", "target_locale")
        params: dict[str, Any] = {"limit": max(1, int(limit)), **source_params, **target_params}
        if scope == SCOPE_PROJECT:
            scope_clause = "project_id = :project_id"
            params["project_id"] = project_id
        else:
            scope_clause = "project_id IS NULL"

        with self.engine.connect() as connection:
            rows = connection.execute(
                text(
                    f"""
                    SELECT {_ENTRY_COLUMNS}
                    FROM tm_entries
                    WHERE {scope_clause}
                      AND {source_clause}
                      AND {target_clause}
                      AND TRIM(source_text) != ''
                    ORDER BY created_at DESC, id DESC
                    LIMIT :limit
                    """
                ),
                params,
            ).mappings().all()

        logger.debug(
            "Fetched %d %s candidates (source=%s, target=%s)",
            len(rows),
            scope,
            source_locale.cache_token(),
            target_locale.cache_token(),
        )
        return [entry_from_mapping(row) for row in rows]

    def has_embedding(self, entry_id: str) -> bool:
        with self.engine.connect() as connection:
            row = connection.execute(
                text("SELECT source_embedding IS NOT NULL FROM tm_entries WHERE id = :entry_id"),
                {"entry_id": entry_id},
            ).first()
        if row is None:
            raise TMEntryNotFoundError(f"Translation memory entry not found: {entry_id}")
        return bool(row[0])

    def count_missing_embeddings(self, project_id: str | None = None) -> int:
        query = """
            SELECT COUNT(*)
            FROM tm_entries
            WHERE source_embedding IS NULL
              AND TRIM(source_text) != ''
        """
        params: dict[str, Any] = {}
        if project_id:
            query += " AND project_id = :project_id"
            params["project_id"] = project_id

        with self.engine.connect() as connection:
            return int(connection.execute(text(query), params).scalar_one())

    def fetch_missing_embeddings(
        self,
        project_id: str | None,
        exclude_ids: Sequence[str],
        batch_size: int,
    ) -> list[TMEntry]:
        clauses = ["source_embedding IS NULL", "TRIM(source_text) != ''"]
        params: dict[str, Any] = {"batch_size": max(1, int(batch_size))}
        bind_params = []
        if project_id:
            clauses.append("project_id = :project_id")
            params["project_id"] = project_id
        if exclude_ids:
            clauses.append("id NOT IN :exclude_ids")
            params["exclude_ids"] = list(exclude_ids)
            bind_params.append(bindparam("exclude_ids", expanding=True))

        statement = text(
            f"""
            SELECT {_ENTRY_COLUMNS}
            FROM tm_entries
            WHERE {" AND ".join(clauses)}
            ORDER BY created_at DESC, id DESC
            LIMIT :batch_size
            """
        )
        if bind_params:
            statement = statement.bindparams(*bind_params)

        with self.engine.connect() as connection:
            rows = connection.execute(statement, params).mappings().all()
        return [entry_from_mapping(row) for row in rows]

    def write_embedding(
        self,
        entry_id: str,
        vector: Sequence[float],
        model: str = EMBEDDING_MODEL,
    ) -> None:
        if not is_valid_vector(vector, self.dimension):
            raise ValueError(
                f"Invalid embedding for {entry_id}: expected {self.dimension} finite dimensions"
            )

        with self.engine.begin() as connection:
            result = connection.execute(
                text(
                    """
                    UPDATE tm_entries
                    SET
                        source_embedding = :source_embedding,
                        embedding_model = :embedding_model,
                        embedding_version = :embedding_version,
                        embedding_updated_at = :embedding_updated_at
                    WHERE id = :entry_id
                    """
                ),
                {
                    "source_embedding": encode_vector(vector),
                    "embedding_model": model,
                    "embedding_version": EMBEDDING_FORMAT_VERSION,
                    "embedding_updated_at": _utc_now_iso(),
                    "entry_id": entry_id,
                },
            )
        if result.rowcount == 0:
            raise TMEntryNotFoundError(f"Translation memory entry not found: {entry_id}")

    def embedding_stats(self, project_id: str | None = None) -> EmbeddingCoverage:
        query = """
            SELECT
                COUNT(*) AS total,
                COUNT(source_embedding) AS with_embedding
            FROM tm_entries
        """
        params: dict[str, Any] = {}
        if project_id:
            query += " WHERE project_id = :project_id"
            params["project_id"] = project_id

        with self.engine.connect() as connection:
            row = connection.execute(text(query), params).mappings().one()
        return EmbeddingCoverage.from_counts(
            total=int(row["total"] or 0),
            with_embedding=int(row["with_embedding"] or 0),
        )
