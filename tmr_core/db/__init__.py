"""SQLite persistence for translation-memory entries and their embeddings."""

from tmr_core.db.migrations import migrate_to_latest
from tmr_core.db.schema import initialize_database
from tmr_core.db.session import session_for_engine

__all__ = ["initialize_database", "migrate_to_latest", "session_for_engine"]
