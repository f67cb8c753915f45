"""
Lifecycle of uploaded documents.

    pending -> processing -> success | error
    success --(confirm_and_save)--> confirmed

Documents are processed one at a time; a failure never leaves the document
boundary. Review happens in a ReviewSession, which keeps the snapshot taken when
editing started so that save can audit against it and cancel can restore it.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .audit import HistoryRow, collect_history, generate_audit_logs
from .errors import InvalidTransitionError, SchemaError
from .logs import get_logger
from .schema import (
    DocumentFieldConfig, DocumentRecord, FieldValue, LineItem, ProcessResult, ProcessStatus,
    coerce_value, field_config, item_fields,
)
from .settings import DocumentConfig

logger = get_logger(__name__)

# (file bytes, document type, schema) -> merged record, or raises
Extractor = Callable[[bytes, str, List[DocumentFieldConfig]], DocumentRecord]


class ResultStore:
    """In-memory collection of ProcessResults keyed by id, newest first."""

    def __init__(self) -> None:
        self._results: Dict[str, ProcessResult] = {}

    def add_files(self, files: Iterable[Tuple[str, bytes]]) -> List[ProcessResult]:
        new = [
            ProcessResult(id=f"{name}-{uuid.uuid4().hex[:12]}", file_name=name, file_bytes=data)
            for name, data in files
        ]
        self._results = {**{r.id: r for r in new}, **self._results}
        return new

    def all(self) -> List[ProcessResult]:
        return list(self._results.values())

    def get(self, result_id: str) -> ProcessResult:
        try:
            return self._results[result_id]
        except KeyError:
            raise KeyError(f"Unknown result id '{result_id}'") from None

    def update(self, result_id: str, **changes: Any) -> ProcessResult:
        updated = self.get(result_id).model_copy(update=changes)
        self._results[result_id] = updated
        return updated

    def pending(self) -> List[ProcessResult]:
        return [r for r in self._results.values() if r.status == ProcessStatus.PENDING]

    def confirmed(self) -> List[ProcessResult]:
        return [r for r in self._results.values() if r.status == ProcessStatus.CONFIRMED]

    def clear(self) -> None:
        self._results = {}

    def __len__(self) -> int:
        return len(self._results)


@dataclass
class BatchSummary:
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: bool = False

    @property
    def attempted(self) -> int:
        return self.succeeded + self.failed


def process_pending(
    store: ResultStore,
    doc_type: str,
    document_config: DocumentConfig,
    *,
    extractor: Extractor,
    should_cancel: Optional[Callable[[], bool]] = None,
    progress_cb: Optional[Callable[[Dict[str, Any]], None]] = None,
) -> BatchSummary:
    """
    Extract every pending result sequentially. Cancellation is checked before each
    document, never mid-document.
    """
    if doc_type not in document_config:
        raise SchemaError(f"Unknown document type '{doc_type}'")
    # read-only for the whole batch
    schema = [f.model_copy() for f in document_config[doc_type]]

    pending = store.pending()
    summary = BatchSummary(total=len(pending))
    logger.info("batch_started", doc_type=doc_type, documents=len(pending))

    for index, result in enumerate(pending, start=1):
        if should_cancel is not None and should_cancel():
            summary.cancelled = True
            logger.info("batch_cancelled", doc_type=doc_type, remaining=len(pending) - index + 1)
            break

        store.update(result.id, status=ProcessStatus.PROCESSING)
        try:
            data = extractor(result.file_bytes, doc_type, schema)
        except Exception as e:
            logger.error("document_failed", file=result.file_name, error=f"{e.__class__.__name__}: {e}")
            store.update(
                result.id, status=ProcessStatus.ERROR, data=None,
                error=str(e) or e.__class__.__name__, processed_at=datetime.now(),
            )
            summary.failed += 1
        else:
            store.update(
                result.id, status=ProcessStatus.SUCCESS, data=data,
                error=None, processed_at=datetime.now(),
            )
            summary.succeeded += 1

        if progress_cb:
            progress_cb({"stage": "document_done", "i": index, "n": len(pending)})

    logger.info(
        "batch_finished", doc_type=doc_type,
        succeeded=summary.succeeded, failed=summary.failed, cancelled=summary.cancelled,
    )
    return summary


class ReviewSession:
    """
    Edit/save/cancel/confirm cycle for one extracted result.

    Opening a ``success`` result starts editing right away; a ``confirmed`` result is
    read-only until ``start_editing``.
    """

    def __init__(self, store: ResultStore, result_id: str, schema: List[DocumentFieldConfig],
                 now: Optional[Callable[[], datetime]] = None):
        result = store.get(result_id)
        if result.data is None or result.status not in (ProcessStatus.SUCCESS, ProcessStatus.CONFIRMED):
            raise InvalidTransitionError(f"Result '{result_id}' has no reviewable data ({result.status.value})")
        self.store = store
        self.result_id = result_id
        self.schema = schema
        self._now = now
        self._original = result.data.snapshot()
        self.editing = result.status != ProcessStatus.CONFIRMED
        self.revision = 0  # bumped on every transition

    @property
    def baseline(self) -> DocumentRecord:
        """Copy of the snapshot taken when editing started."""
        return self._original.snapshot()

    @property
    def result(self) -> ProcessResult:
        return self.store.get(self.result_id)

    @property
    def data(self) -> DocumentRecord:
        return self.result.data

    @property
    def is_confirmed(self) -> bool:
        return self.result.status == ProcessStatus.CONFIRMED

    def _require_editing(self) -> None:
        if not self.editing:
            raise InvalidTransitionError("Start editing before changing a confirmed document")

    def _draft(self) -> DocumentRecord:
        self._require_editing()
        return self.data.snapshot()

    def _put(self, record: DocumentRecord) -> None:
        self.store.update(self.result_id, data=record)

    # ---------- transitions ----------

    def start_editing(self) -> None:
        if self.editing:
            raise InvalidTransitionError("Already editing")
        self._original = self.data.snapshot()
        self.editing = True
        self.revision += 1

    def save(self) -> DocumentRecord:
        self._require_editing()
        updated = generate_audit_logs(self._original, self.data, now=self._now)
        self._put(updated)
        self._original = updated.snapshot()
        self.editing = False
        self.revision += 1
        return updated

    def confirm_and_save(self) -> DocumentRecord:
        updated = self.save()
        self.store.update(self.result_id, status=ProcessStatus.CONFIRMED)
        logger.info("document_confirmed", file=self.result.file_name)
        return updated

    def cancel(self) -> None:
        self._require_editing()
        self._put(self._original.snapshot())
        self.editing = False
        self.revision += 1

    # ---------- edits ----------

    def _coerced(self, record: DocumentRecord) -> DocumentRecord:
        for f in self.schema:
            if not f.enabled:
                continue
            targets = [it.fields for it in record.items] if f.is_item_field else [record.fields]
            for fields in targets:
                if f.key in fields:
                    fields[f.key].value = coerce_value(f, fields[f.key].value)
        return record

    def replace_data(self, record: DocumentRecord) -> None:
        """Swap in an edited record; values of number fields are coerced."""
        self._require_editing()
        if record.document_type != self._original.document_type:
            raise SchemaError("Edited record must keep its document type")
        self._put(self._coerced(record.snapshot()))

    def update_field(self, key: str, value: Any) -> None:
        cfg = field_config(self.schema, key)
        if cfg is None or cfg.is_item_field:
            raise SchemaError(f"'{key}' is not an enabled document field")
        draft = self._draft()
        draft.fields.setdefault(key, FieldValue()).value = coerce_value(cfg, value)
        self._put(draft)

    def update_item_field(self, index: int, key: str, value: Any) -> None:
        cfg = field_config(self.schema, key)
        if cfg is None or not cfg.is_item_field:
            raise SchemaError(f"'{key}' is not an enabled item field")
        draft = self._draft()
        draft.items[index].fields.setdefault(key, FieldValue()).value = coerce_value(cfg, value)
        self._put(draft)

    def add_item(self, page_number: int = 1) -> None:
        draft = self._draft()
        draft.items.append(LineItem(
            page_number=FieldValue(value=page_number),
            fields={f.key: FieldValue() for f in item_fields(self.schema)},
        ))
        self._put(draft)

    def remove_item(self, index: int) -> None:
        draft = self._draft()
        del draft.items[index]
        self._put(draft)

    def history(self) -> List[HistoryRow]:
        return collect_history(self.data, self.schema)
