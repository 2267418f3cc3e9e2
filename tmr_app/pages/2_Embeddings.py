from __future__ import annotations

import sys
import time
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

from tmr_app.service_cache import get_service
from tmr_core.vector.store import VectorStoreConfigurationError

LAST_JOB_KEY = "embeddings_last_job_id"

st.title("Embeddings")

try:
    service = get_service()
except Exception as exc:  # noqa: BLE001
    st.error(f"Unable to open database: {exc}")
    st.stop()

project_id = st.text_input("Project id (optional)", value="").strip() or None
stats = service.embedding_stats(project_id)

columns = st.columns(4)
columns[0].metric("Entries", stats.total)
columns[1].metric("With embedding", stats.with_embedding)
columns[2].metric("Without embedding", stats.without_embedding)
columns[3].metric("Coverage", f"{stats.coverage:.2f}%")

if st.button("Verify vector setup"):
    try:
        report = service.verify_vector_setup()
    except VectorStoreConfigurationError as exc:
        st.error(str(exc))
    else:
        st.success(f"Vector setup OK ({report.dimension} dimensions, index {report.missing_embedding_index})")

st.subheader("Generate missing embeddings")
batch_size = st.number_input(
    "Batch size",
    min_value=1,
    max_value=200,
    value=service.config.generation.batch_size,
)
limit = st.number_input("Limit (0 = all)", min_value=0, value=0)

active_jobs = service.list_active_jobs()
if st.button("Start generation", disabled=bool(active_jobs)):
    try:
        st.session_state[LAST_JOB_KEY] = service.start_generation(
            {
                "project_id": project_id,
                "batch_size": int(batch_size),
                "limit": int(limit) or None,
            }
        )
    except ValueError as exc:
        st.error(str(exc))

if active_jobs:
    st.caption(f"Running jobs: {', '.join(active_jobs)}")

job_id = st.session_state.get(LAST_JOB_KEY)
if not job_id:
    st.stop()

progress = service.get_progress(job_id)
if progress is None:
    st.info(f"Job {job_id} is no longer tracked.")
    st.stop()

fraction = progress.processed / progress.total if progress.total else 1.0
st.progress(min(1.0, fraction), text=f"{progress.processed}/{progress.total} processed")
st.write(
    f"Status: **{progress.status.value}**. "
    f"Succeeded: {progress.succeeded}, failed: {progress.failed}."
)
if progress.current_entry is not None:
    st.caption(f"Current entry: {progress.current_entry.source_text}")
if progress.error:
    st.error(progress.error)

if not progress.is_terminal:
    if st.button("Cancel generation"):
        service.cancel_generation(job_id)
    time.sleep(1.0)
    st.rerun()
