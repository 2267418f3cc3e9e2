from __future__ import annotations

from sqlalchemy import Index
from sqlmodel import Field, SQLModel


class SchemaMeta(SQLModel, table=True):
    __tablename__ = "schema_meta"

    key: str = Field(primary_key=True)
    value: str


class TMEntryRow(SQLModel, table=True):
    __tablename__ = "tm_entries"
    __table_args__ = (
        Index(
            "idx_tm_entries_lookup",
            "project_id",
            "source_locale",
            "target_locale",
            "normalized_source_hash",
        ),
        Index("idx_tm_entries_project_created_at", "project_id", "created_at"),
    )

    id: str = Field(primary_key=True)
    project_id: str | None = None
    source_locale: str
    target_locale: str
    source_text: str
    target_text: str
    normalized_source_hash: str
    client_name: str | None = None
    domain: str | None = None
    match_rate: float = Field(default=1.0)
    usage_count: int = Field(default=0)
    created_at: str
    updated_at: str
    last_used_at: str | None = None
    source_embedding: bytes | None = None
    embedding_model: str | None = None
    embedding_version: str | None = None
    embedding_updated_at: str | None = None
