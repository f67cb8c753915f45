"""
Tabular export of confirmed documents.

Columns are the union of the enabled fields of every document type present
(first schema wins for label and format), sorted by key unless an explicit
per-document-type output ordering is supplied. Each record yields one row per
line item, or a single row with blank item cells when it has none.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd

from .audit import collect_history
from .logs import get_logger
from .schema import DocumentFieldConfig, DocumentRecord, LineItem, ProcessResult, ProcessStatus
from .settings import DocumentConfig, OutputConfig

logger = get_logger(__name__)

BOM = "\ufeff"
DELIMITER = ","
SOURCE_COLUMNS = ["File name", "Document type"]


@dataclass(frozen=True)
class Column:
    key: str
    label: str
    output_format: str = "none"
    format_instruction: str = ""


# ---------- formatting ----------

def format_date(value: Any) -> Any:
    """YYYY-MM-DD for anything pandas can parse as a date; other values pass through."""
    if isinstance(value, (datetime, date)):
        return value.strftime("%Y-%m-%d")
    if not isinstance(value, str) or not value.strip():
        return value
    try:
        ts = pd.to_datetime(value.strip())
    except (ValueError, TypeError, OverflowError):
        return value
    if pd.isna(ts):
        return value
    return ts.strftime("%Y-%m-%d")


def apply_formatting(value: Any, output_format: str, format_instruction: str = "") -> Any:
    if value is None:
        return None
    if output_format == "date-yyyy-mm-dd":
        value = format_date(value)
    if format_instruction and "{value}" in format_instruction:
        value = format_instruction.replace("{value}", _to_text(value))
    return value


def _to_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def escape_cell(value: Any) -> str:
    if value is None:
        return ""
    s = _to_text(value)
    if DELIMITER in s or '"' in s or "\n" in s:
        return '"' + s.replace('"', '""') + '"'
    return s


# ---------- columns ----------

def _distinct_types(records: Iterable[DocumentRecord]) -> List[str]:
    seen: Dict[str, None] = {}
    for r in records:
        seen.setdefault(r.document_type, None)
    return list(seen)


def resolve_columns(
    records: Sequence[DocumentRecord],
    document_config: DocumentConfig,
    output_config: Optional[OutputConfig] = None,
) -> List[Column]:
    doc_types = _distinct_types(records)

    union: Dict[str, DocumentFieldConfig] = {}
    for t in doc_types:
        for f in document_config.get(t, []):
            if f.enabled and f.key not in union:
                union[f.key] = f

    overrides = {}
    ordered: List[str] = []
    for t in doc_types:
        for o in (output_config or {}).get(t, []):
            if o.key in union and o.key not in overrides:
                overrides[o.key] = o
                ordered.append(o.key)

    keys = ordered + sorted(k for k in union if k not in overrides)

    columns = []
    for key in keys:
        f = union[key]
        o = overrides.get(key)
        if o is not None and not o.enabled:
            continue
        columns.append(Column(
            key=key,
            label=(o.label if o is not None and o.label else f.label),
            output_format=f.output_format,
            format_instruction=(o.format_instruction if o is not None else ""),
        ))
    return columns


# ---------- rows ----------

def confirmed_records(results: Iterable[ProcessResult]) -> List[Tuple[str, DocumentRecord]]:
    return [
        (r.file_name, r.data) for r in results
        if r.status == ProcessStatus.CONFIRMED and r.data is not None
    ]


def _cell(record: DocumentRecord, item: Optional[LineItem], column: Column,
          active: Dict[str, DocumentFieldConfig]) -> Any:
    cfg = active.get(column.key)
    if cfg is None:
        return None
    if cfg.is_item_field:
        fv = item.fields.get(column.key) if item is not None else None
    else:
        fv = record.fields.get(column.key)
    value = fv.value if fv is not None else None
    return apply_formatting(value, column.output_format, column.format_instruction)


def build_rows(
    results: Iterable[ProcessResult],
    document_config: DocumentConfig,
    output_config: Optional[OutputConfig] = None,
) -> Tuple[List[str], List[List[Any]]]:
    """Header labels and data rows for all confirmed results."""
    docs = confirmed_records(results)
    columns = resolve_columns([d for _, d in docs], document_config, output_config)
    header = SOURCE_COLUMNS + [c.label for c in columns]

    rows: List[List[Any]] = []
    for file_name, record in docs:
        active = {
            f.key: f for f in document_config.get(record.document_type, []) if f.enabled
        }
        items: List[Optional[LineItem]] = list(record.items) or [None]
        for item in items:
            rows.append(
                [file_name, record.document_type]
                + [_cell(record, item, c, active) for c in columns]
            )

    logger.info("export_built", documents=len(docs), rows=len(rows), columns=len(columns))
    return header, rows


def build_csv(
    results: Iterable[ProcessResult],
    document_config: DocumentConfig,
    output_config: Optional[OutputConfig] = None,
) -> str:
    header, rows = build_rows(results, document_config, output_config)
    lines = [DELIMITER.join(escape_cell(h) for h in header)]
    lines += [DELIMITER.join(escape_cell(c) for c in row) for row in rows]
    return BOM + "\n".join(lines)


def export_filename(today: Optional[date] = None) -> str:
    return f"all_documents_data_{(today or date.today()).isoformat()}.csv"


# ---------------- Excel packer ----------------
def build_excel_sheets(
    results: Iterable[ProcessResult],
    document_config: DocumentConfig,
    output_config: Optional[OutputConfig] = None,
) -> Dict[str, pd.DataFrame]:
    results = list(results)
    header, rows = build_rows(results, document_config, output_config)
    sheets: Dict[str, pd.DataFrame] = {"documents": pd.DataFrame(rows, columns=header)}

    history = []
    for file_name, record in confirmed_records(results):
        schema = document_config.get(record.document_type, [])
        for h in collect_history(record, schema):
            history.append({
                "file": file_name,
                "field": h.label,
                "item": h.item_index,
                "timestamp": h.timestamp.isoformat(timespec="seconds"),
                "old_value": h.old_value,
                "new_value": h.new_value,
            })
    if history:
        sheets["history"] = pd.DataFrame(history)
    return sheets
