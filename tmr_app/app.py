from __future__ import annotations

import sys
from pathlib import Path

import streamlit as st


def _ensure_repo_root_on_path() -> None:
    current = Path(__file__).resolve()
    for parent in current.parents:
        if (parent / "tmr_core").is_dir():
            root = str(parent)
            if root not in sys.path:
                sys.path.insert(0, root)
            return


_ensure_repo_root_on_path()

from tmr_app.service_cache import CONFIG_PATH_KEY, DB_PATH_KEY, get_service, selected_paths

st.set_page_config(page_title="TM Retrieval", layout="wide")

db_path, config_path = selected_paths()

st.title("Translation Memory Retrieval")
st.write("Search the TM on the 'TM Search' page and maintain embeddings on the 'Embeddings' page.")

with st.form("database_form"):
    new_db_path = st.text_input("Database path", value=db_path)
    new_config_path = st.text_input("Config path (optional)", value=config_path)
    submitted = st.form_submit_button("Use database")

if submitted:
    st.session_state[DB_PATH_KEY] = new_db_path.strip() or db_path
    st.session_state[CONFIG_PATH_KEY] = new_config_path.strip()
    db_path, config_path = selected_paths()

try:
    service = get_service()
    stats = service.embedding_stats()
except Exception as exc:  # noqa: BLE001
    st.error(f"Unable to open database: {exc}")
    st.stop()

st.success(f"Database: {db_path}")
columns = st.columns(3)
columns[0].metric("Entries", stats.total)
columns[1].metric("With embedding", stats.with_embedding)
columns[2].metric("Coverage", f"{stats.coverage:.2f}%")
