from __future__ import annotations

from pathlib import Path

import streamlit as st

from tmr_core.config import load_config
from tmr_core.constants import DEFAULT_CONFIG_FILENAME, DEFAULT_DB_FILENAME
from tmr_core.logging_setup import configure_logging
from tmr_core.service import TranslationMemoryService, open_service

DB_PATH_KEY = "tm_db_path"
CONFIG_PATH_KEY = "tm_config_path"


@st.cache_resource(show_spinner=False)
def _service_for(db_path: str, config_path: str) -> TranslationMemoryService:
    config_file = Path(config_path).expanduser() if config_path else None
    config = load_config(config_file)
    configure_logging(config.log_level)
    # Kept alive across reruns so background generation jobs keep reporting.
    return open_service(Path(db_path).expanduser(), config)


def selected_paths() -> tuple[str, str]:
    if DB_PATH_KEY not in st.session_state:
        st.session_state[DB_PATH_KEY] = DEFAULT_DB_FILENAME
    if CONFIG_PATH_KEY not in st.session_state:
        st.session_state[CONFIG_PATH_KEY] = (
            DEFAULT_CONFIG_FILENAME if Path(DEFAULT_CONFIG_FILENAME).exists() else ""
        )
    return st.session_state[DB_PATH_KEY], st.session_state[CONFIG_PATH_KEY]


def get_service() -> TranslationMemoryService:
    db_path, config_path = selected_paths()
    return _service_for(db_path, config_path)
