from __future__ import annotations

from collections.abc import Callable

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine

Migration = Callable[[Connection], None]

EMBEDDING_COLUMNS = (
    "source_embedding",
    "embedding_model",
    "embedding_version",
    "embedding_updated_at",
)
MISSING_EMBEDDING_INDEX = "idx_tm_entries_missing_embedding"


def _table_exists(connection: Connection, table_name: str) -> bool:
    row = connection.execute(
        text(
            "SELECT 1 FROM sqlite_master "
            "WHERE type='table' AND name=:table_name LIMIT 1"
        ),
        {"table_name": table_name},
    ).first()
    return row is not None


def index_exists(connection: Connection, index_name: str) -> bool:
    row = connection.execute(
        text(
            "SELECT 1 FROM sqlite_master "
            "WHERE type='index' AND name=:index_name LIMIT 1"
        ),
        {"index_name": index_name},
    ).first()
    return row is not None


def column_names(connection: Connection, table_name: str) -> set[str]:
    rows = connection.exec_driver_sql(f"PRAGMA table_info({table_name})").all()
    return {str(row[1]) for row in rows}


def get_schema_version(connection: Connection) -> int:
    if not _table_exists(connection, "schema_meta"):
        return 0

    value = connection.execute(
        text("SELECT value FROM schema_meta WHERE key='schema_version' LIMIT 1")
    ).scalar_one_or_none()

    if value is None:
        return 0

    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _set_schema_version(connection: Connection, version: int) -> None:
    connection.execute(
        text(
            "INSERT INTO schema_meta(key, value) VALUES('schema_version', :version) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value"
        ),
        {"version": str(version)},
    )


def _migration_v1(connection: Connection) -> None:
    statements = (
        """
        CREATE TABLE IF NOT EXISTS schema_meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS tm_entries (
            id TEXT PRIMARY KEY,
            project_id TEXT,
            source_locale TEXT NOT NULL,
            target_locale TEXT NOT NULL,
            source_text TEXT NOT NULL,
            target_text TEXT NOT NULL,
            normalized_source_hash TEXT NOT NULL,
            client_name TEXT,
            domain TEXT,
            match_rate REAL NOT NULL DEFAULT 1.0,
            usage_count INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            last_used_at TEXT
        )
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_tm_entries_lookup
        ON tm_entries(project_id, source_locale, target_locale, normalized_source_hash)
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_tm_entries_project_created_at
        ON tm_entries(project_id, created_at)
        """,
    )

    for statement in statements:
        connection.exec_driver_sql(statement)


def _migration_v2(connection: Connection) -> None:
    existing = column_names(connection, "tm_entries")
    column_ddl = {
        "source_embedding": "BLOB",
        "embedding_model": "TEXT",
        "embedding_version": "TEXT",
        "embedding_updated_at": "TEXT",
    }
    for column, ddl_type in column_ddl.items():
        if column in existing:
            continue
        connection.exec_driver_sql(f"ALTER TABLE tm_entries ADD COLUMN {column} {ddl_type}")

    connection.exec_driver_sql(
        f"""
        CREATE INDEX IF NOT EXISTS {MISSING_EMBEDDING_INDEX}
        ON tm_entries(project_id, created_at)
        WHERE source_embedding IS NULL
        """
    )


MIGRATIONS: dict[int, Migration] = {
    1: _migration_v1,
    2: _migration_v2,
}


def migrate_to_latest(engine: Engine) -> int:
    current_version = 0

    with engine.begin() as connection:
        current_version = get_schema_version(connection)

        for target_version in sorted(MIGRATIONS):
            if target_version <= current_version:
                continue
            MIGRATIONS[target_version](connection)
            _set_schema_version(connection, target_version)
            current_version = target_version

    return current_version
