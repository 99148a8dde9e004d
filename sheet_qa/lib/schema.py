import json
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import pandas as pd

from sheet_qa.lib.errors import UnreadableDatasetError
from sheet_qa.lib.type_inference import ColumnType, infer_type

logger = logging.getLogger(__name__)

SAMPLE_ROWS = 5
EXCEL_EXTENSIONS = {"xlsx", "xlsm", "xltm", "xls"}
CSV_EXTENSIONS = {"csv", "tsv"}
SUPPORTED_EXTENSIONS = EXCEL_EXTENSIONS | CSV_EXTENSIONS


@dataclass(frozen=True)
class ColumnDescriptor:
    name: str
    type: ColumnType

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "type": self.type.value}


@dataclass(frozen=True)
class SchemaSnapshot:
    sheet_name: str
    columns: List[ColumnDescriptor] = field(default_factory=list)
    total_rows: int = 0
    sample_rows: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.sheet_name,
            "columns": [c.to_dict() for c in self.columns],
            "totalRows": self.total_rows,
            "sampleRows": [dict(r) for r in self.sample_rows],
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "SchemaSnapshot":
        columns = [
            ColumnDescriptor(name=str(c.get("name")), type=ColumnType(c.get("type") or "string"))
            for c in (payload.get("columns") or [])
        ]
        return cls(
            sheet_name=str(payload.get("name") or ""),
            columns=columns,
            total_rows=int(payload.get("totalRows") or 0),
            sample_rows=[dict(r) for r in (payload.get("sampleRows") or [])],
        )


def dataset_extension(path: str) -> str:
    name = os.path.basename(path or "")
    if "." not in name:
        return ""
    return name.rsplit(".", 1)[-1].lower()


def _frame_to_records(df: pd.DataFrame) -> List[Dict[str, str]]:
    df = df.fillna("")
    df.columns = [str(c).strip() for c in df.columns]
    return df.to_dict(orient="records")


def read_sheets(path: str) -> Dict[str, List[Dict[str, str]]]:
    """Read every sheet of ``path`` as text records keyed by trimmed header names."""
    ext = dataset_extension(path)
    if ext not in SUPPORTED_EXTENSIONS:
        raise UnreadableDatasetError(f"unsupported file type: {ext or '<none>'}")
    if not os.path.isfile(path):
        raise UnreadableDatasetError(f"file not found: {os.path.basename(path)}")
    try:
        if ext in EXCEL_EXTENSIONS:
            frames = pd.read_excel(path, sheet_name=None, dtype=str, keep_default_na=False)
        else:
            sep = "\t" if ext == "tsv" else ","
            try:
                frame = pd.read_csv(path, sep=sep, dtype=str, keep_default_na=False)
            except pd.errors.EmptyDataError:
                frame = pd.DataFrame()
            frames = {os.path.splitext(os.path.basename(path))[0]: frame}
    except UnreadableDatasetError:
        raise
    except ImportError as exc:
        logger.error("event=dataset_reader_missing file=%s error=%s", os.path.basename(path), exc)
        raise UnreadableDatasetError(f"no reader installed for .{ext} files: {exc}") from exc
    except Exception as exc:
        logger.warning("event=dataset_unreadable file=%s error=%s", os.path.basename(path), type(exc).__name__)
        raise UnreadableDatasetError(f"{type(exc).__name__}: {exc}") from exc
    return {str(name): _frame_to_records(frame) for name, frame in frames.items()}


def snapshot_from_records(sheet_name: str, rows: List[Dict[str, Any]]) -> SchemaSnapshot:
    columns: List[ColumnDescriptor] = []
    if rows:
        # Only the first row is typed; a blank first cell types the column as string.
        first = rows[0]
        columns = [ColumnDescriptor(name=str(k), type=infer_type(v)) for k, v in first.items()]
    return SchemaSnapshot(
        sheet_name=sheet_name,
        columns=columns,
        total_rows=len(rows),
        sample_rows=[dict(r) for r in rows[:SAMPLE_ROWS]],
    )


def extract_schema(path: str) -> List[SchemaSnapshot]:
    sheets = read_sheets(path)
    snapshots = [snapshot_from_records(name, rows) for name, rows in sheets.items()]
    logger.info(
        "event=schema_extracted file=%s sheets=%s rows=%s",
        os.path.basename(path),
        len(snapshots),
        [s.total_rows for s in snapshots],
    )
    return snapshots


def schema_path_for(path: str) -> str:
    return os.path.join(os.path.dirname(path), f"{os.path.basename(path)}.schema.json")


def save_schema(path: str, snapshots: List[SchemaSnapshot]) -> str:
    schema_path = schema_path_for(path)
    payload = {"filePath": path, "sheets": [s.to_dict() for s in snapshots]}
    with open(schema_path, "w", encoding="utf-8") as f:
        json.dump(payload, f, ensure_ascii=False, indent=2, default=str)
    return schema_path


def load_schema(path: str) -> Optional[List[SchemaSnapshot]]:
    schema_path = schema_path_for(path)
    try:
        with open(schema_path, "r", encoding="utf-8") as f:
            payload = json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as exc:
        logger.warning("event=schema_file_invalid file=%s error=%s", os.path.basename(schema_path), exc)
        return None
    sheets = payload.get("sheets") if isinstance(payload, dict) else None
    if not isinstance(sheets, list):
        return None
    return [SchemaSnapshot.from_dict(s) for s in sheets if isinstance(s, dict)]


class SchemaStore:
    """Read-mostly cache of schema snapshots, one entry per dataset file."""

    def __init__(self, persist: bool = True) -> None:
        self.persist = persist
        self._cache: Dict[str, List[SchemaSnapshot]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(path: str) -> str:
        return os.path.abspath(path)

    def get(self, path: str) -> List[SchemaSnapshot]:
        key = self._key(path)
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached
        snapshots = load_schema(key) if self.persist else None
        if snapshots is None:
            snapshots = extract_schema(key)
            if self.persist:
                try:
                    save_schema(key, snapshots)
                except OSError as exc:
                    logger.warning("event=schema_persist_failed file=%s error=%s", os.path.basename(key), exc)
        with self._lock:
            self._cache[key] = snapshots
        return snapshots

    def get_sheet(self, path: str, sheet_name: Optional[str] = None) -> SchemaSnapshot:
        snapshots = self.get(path)
        if not snapshots:
            raise UnreadableDatasetError("workbook has no sheets")
        if sheet_name is None:
            return snapshots[0]
        for snapshot in snapshots:
            if snapshot.sheet_name == sheet_name:
                return snapshot
        raise UnreadableDatasetError(f"sheet not found: {sheet_name}")

    def is_cached(self, path: str) -> bool:
        with self._lock:
            return self._key(path) in self._cache

    def delete_dataset(self, path: str) -> None:
        key = self._key(path)
        with self._lock:
            self._cache.pop(key, None)
        for target in (key, schema_path_for(key)):
            try:
                os.remove(target)
            except FileNotFoundError:
                continue
        logger.info("event=dataset_deleted file=%s", os.path.basename(key))
