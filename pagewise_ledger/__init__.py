"""Page-wise AI extraction with merged records, an audit trail and CSV export."""

__version__ = "0.1.0"

from .audit import collect_history, generate_audit_logs
from .export import build_csv, resolve_columns
from .merge import merge_pages
from .page_extractor import extract_document, extract_pages

__all__ = [
    "build_csv",
    "collect_history",
    "extract_document",
    "extract_pages",
    "generate_audit_logs",
    "merge_pages",
    "resolve_columns",
]
