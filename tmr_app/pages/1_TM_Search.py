from __future__ import annotations

import sys
from pathlib import Path

import pandas as pd
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

from tmr_app.service_cache import get_service

st.title("TM Search")

try:
    service = get_service()
except Exception as exc:  # noqa: BLE001
    st.error(f"Unable to open database: {exc}")
    st.stop()

settings = service.config.search

with st.form("tm_search_form"):
    source_text = st.text_area("Source text", height=100)
    locale_columns = st.columns(3)
    source_locale = locale_columns[0].text_input("Source locale", value="*")
    target_locale = locale_columns[1].text_input("Target locale", value="*")
    project_id = locale_columns[2].text_input("Project id (optional)", value="")

    option_columns = st.columns(4)
    limit = option_columns[0].number_input("Limit", min_value=1, max_value=100, value=settings.default_limit)
    min_score = option_columns[1].slider("Min fuzzy score", 0, 100, settings.default_min_score)
    vector_similarity = option_columns[2].slider(
        "Min vector similarity %",
        0,
        100,
        int(round(settings.default_vector_similarity * 100)),
    )
    mode = option_columns[3].selectbox("Mode", options=["basic", "extended"])
    use_vector = st.checkbox("Include vector search", value=settings.use_vector_search)
    submitted = st.form_submit_button("Search")

if submitted:
    if not source_text.strip():
        st.warning("Enter source text to search.")
        st.stop()

    results = service.search(
        {
            "source_text": source_text,
            "source_locale": source_locale,
            "target_locale": target_locale,
            "project_id": project_id.strip() or None,
            "limit": int(limit),
            "min_score": int(min_score),
            "vector_similarity": float(vector_similarity),
            "mode": mode,
            "use_vector_search": use_vector,
        }
    )
    if not results:
        st.info("No matches.")
        st.stop()

    st.dataframe(
        pd.DataFrame(
            [
                {
                    "score": result.fuzzy_score,
                    "method": result.search_method,
                    "scope": result.scope,
                    "source": result.entry.source_text,
                    "target": result.entry.target_text,
                    "locales": f"{result.entry.source_locale} -> {result.entry.target_locale}",
                    "id": result.id,
                }
                for result in results
            ]
        ),
        use_container_width=True,
        hide_index=True,
    )
