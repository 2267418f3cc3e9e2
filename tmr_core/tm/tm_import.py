from __future__ import annotations

import io
from dataclasses import dataclass, field
import logging
from pathlib import Path

import pandas as pd

from tmr_core.tm.tm_store import SQLiteEntryStore

logger = logging.getLogger(__name__)

SUPPORTED_FILE_TYPES = {"xlsx", "csv"}


@dataclass(slots=True)
class ImportSummary:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    entry_ids: list[str] = field(default_factory=list)

    @property
    def imported(self) -> int:
        return self.created + self.updated


def infer_file_type(filename: str) -> str:
    suffix = Path(filename).suffix.lower()
    if suffix == ".xlsx":
        return "xlsx"
    if suffix == ".csv":
        return "csv"
    raise ValueError("Unsupported file type. Use .xlsx or .csv")


def read_tabular_data(
    *,
    file_type: str,
    file_bytes: bytes | None = None,
    file_path: Path | None = None,
    sheet_name: str | None = None,
) -> pd.DataFrame:
    normalized_type = file_type.lower()
    if normalized_type not in SUPPORTED_FILE_TYPES:
        raise ValueError(f"Unsupported file_type: {file_type}")

    source: io.BytesIO | Path
    if file_bytes is not None:
        source = io.BytesIO(file_bytes)
    elif file_path is not None:
        source = Path(file_path).expanduser()
    else:
        raise ValueError("Either file_bytes or file_path is required")

    if normalized_type == "xlsx":
        dataframe = pd.read_excel(
            source,
            sheet_name=sheet_name if sheet_name is not None else 0,
            dtype=object,
            engine="openpyxl",
        )
    else:
        dataframe = pd.read_csv(source, dtype=object)

    dataframe = dataframe.copy()
    dataframe.columns = [
        str(column).strip() or f"column_{index + 1}"
        for index, column in enumerate(dataframe.columns)
    ]
    return dataframe


def _cell_text(value: object) -> str:
    if value is None:
        return ""
    try:
        if pd.isna(value):
            return ""
    except (TypeError, ValueError):
        pass
    return str(value).strip()


def import_tabular_entries(
    store: SQLiteEntryStore,
    *,
    source_locale: str,
    target_locale: str,
    file_path: Path | None = None,
    file_bytes: bytes | None = None,
    file_type: str | None = None,
    source_column: str = "source",
    target_column: str = "target",
    sheet_name: str | None = None,
    project_id: str | None = None,
    client_name: str | None = None,
    domain: str | None = None,
) -> ImportSummary:
    """Upsert source/target pairs from a CSV or XLSX sheet.

    Rows with an empty source or target cell are skipped.
    """

    if file_type is None:
        if file_path is None:
            raise ValueError("file_type is required when importing from bytes")
        file_type = infer_file_type(str(file_path))

    dataframe = read_tabular_data(
        file_type=file_type,
        file_bytes=file_bytes,
        file_path=file_path,
        sheet_name=sheet_name,
    )
    missing = [name for name in (source_column, target_column) if name not in dataframe.columns]
    if missing:
        raise ValueError(
            f"Missing column(s) {', '.join(missing)}; available: {', '.join(dataframe.columns)}"
        )

    summary = ImportSummary()
    for row in dataframe.itertuples(index=False):
        values = dict(zip(dataframe.columns, row))
        source_text = _cell_text(values.get(source_column))
        target_text = _cell_text(values.get(target_column))
        if not source_text or not target_text:
            summary.skipped += 1
            continue

        entry, created = store.upsert_entry(
            source_locale=source_locale,
            target_locale=target_locale,
            source_text=source_text,
            target_text=target_text,
            project_id=project_id,
            client_name=client_name,
            domain=domain,
        )
        if created:
            summary.created += 1
        else:
            summary.updated += 1
        summary.entry_ids.append(entry.id)

    logger.info(
        "Imported %d TM entries (%d new, %d updated, %d skipped)",
        summary.imported,
        summary.created,
        summary.updated,
        summary.skipped,
    )
    return summary
