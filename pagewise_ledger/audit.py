"""
Audit trail for human review.

``generate_audit_logs`` compares the snapshot captured when editing started with the
edited snapshot and appends one AuditLogEntry to every field whose value changed.
Removing a line item is not logged; a newly added item logs each non-null field
as a change from None.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .logs import get_logger
from .schema import AuditLogEntry, DocumentFieldConfig, DocumentRecord, FieldValue

logger = get_logger(__name__)


def values_equal(a: Any, b: Any) -> bool:
    """Deep equality where None and absent compare equal."""
    if a is None or b is None:
        return a is None and b is None
    # 1 == True in Python; keep them apart like a JSON comparison would
    if isinstance(a, bool) != isinstance(b, bool):
        return False
    return a == b


def _compare_and_log(before: Optional[FieldValue], after: FieldValue, timestamp: datetime) -> bool:
    old_value = before.value if before is not None else None
    new_value = after.value
    if values_equal(old_value, new_value):
        return False
    after.history.append(AuditLogEntry(timestamp=timestamp, old_value=old_value, new_value=new_value))
    return True


def generate_audit_logs(
    before: DocumentRecord,
    after: DocumentRecord,
    *,
    now: Optional[Callable[[], datetime]] = None,
) -> DocumentRecord:
    """
    Return a copy of ``after`` with history appended to changed fields.
    Neither input is mutated. Items are compared by index.
    """
    updated = after.snapshot()
    timestamp = (now or datetime.now)()
    changed = 0

    for key, after_field in updated.fields.items():
        if _compare_and_log(before.fields.get(key), after_field, timestamp):
            changed += 1

    for i in range(max(len(before.items), len(updated.items))):
        if i >= len(updated.items):
            continue  # removed
        before_item = before.items[i] if i < len(before.items) else None
        for key, after_field in updated.items[i].fields.items():
            before_field = before_item.fields.get(key) if before_item is not None else None
            if _compare_and_log(before_field, after_field, timestamp):
                changed += 1

    if changed:
        logger.info("audit_logged", doc_type=updated.document_type, changes=changed)
    return updated


@dataclass(frozen=True)
class HistoryRow:
    field: str
    label: str
    item_index: Optional[int]  # 1-based, None for document fields
    timestamp: datetime
    old_value: Any
    new_value: Any


def collect_history(record: DocumentRecord, schema: Optional[List[DocumentFieldConfig]] = None) -> List[HistoryRow]:
    """All change entries of a record, newest first."""
    labels: Dict[str, str] = {f.key: f.label for f in (schema or [])}
    rows: List[HistoryRow] = []

    for key, fv in record.fields.items():
        for log in fv.history:
            rows.append(HistoryRow(key, labels.get(key, key), None, log.timestamp, log.old_value, log.new_value))

    for idx, item in enumerate(record.items, start=1):
        for key, fv in item.fields.items():
            for log in fv.history:
                rows.append(HistoryRow(key, labels.get(key, key), idx, log.timestamp, log.old_value, log.new_value))

    rows.sort(key=lambda r: r.timestamp, reverse=True)
    return rows
