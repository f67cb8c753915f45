"""
Fold per-page oracle results into one DocumentRecord.

Header fields: the first non-null value in page order wins and is never overwritten.
Line items: concatenated in page order, then in within-page order, each tagged with
its source page. Only keys declared (and enabled) in the schema are kept.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from .errors import ExtractionError
from .logs import get_logger
from .schema import (
    BoundingBox, DocumentFieldConfig, DocumentRecord, FieldValue, LineItem,
    header_fields, item_fields,
)

logger = get_logger(__name__)

_SCALARS = (str, int, float, bool)


@dataclass
class MergeStats:
    pages_total: int = 0
    pages_failed: int = 0
    items: int = 0

    @property
    def pages_ok(self) -> int:
        return self.pages_total - self.pages_failed


def _parse_boxes(raw: Any) -> List[BoundingBox]:
    if isinstance(raw, dict):
        raw = [raw]
    if not isinstance(raw, list):
        return []
    boxes = []
    for b in raw:
        try:
            boxes.append(BoundingBox.model_validate(b))
        except ValidationError:
            continue
    return boxes


def to_field_value(raw: Any) -> FieldValue:
    """Accept either ``{"value": ..., "bounding_box": [...]}`` or a bare scalar."""
    if isinstance(raw, dict):
        value = raw.get("value")
        boxes = _parse_boxes(raw.get("bounding_box"))
    else:
        value, boxes = raw, []
    if value is not None and not isinstance(value, _SCALARS):
        value = None
    return FieldValue(value=value, locations=boxes)


def _line_item(raw: Dict[str, Any], page_number: int, keys: List[str]) -> LineItem:
    return LineItem(
        page_number=FieldValue(value=page_number),
        fields={k: to_field_value(raw.get(k)) for k in keys},
    )


def merge_pages(
    outcomes: Iterable[Any],
    doc_type: str,
    schema: List[DocumentFieldConfig],
    stats: Optional[MergeStats] = None,
) -> DocumentRecord:
    """
    ``outcomes`` is an ordered iterable of PageOutcome-like objects
    (``page_number``, ``result``, ``error``). Failed pages only count toward ``stats``.
    Raises ExtractionError when no page produced usable data.
    """
    stats = stats if stats is not None else MergeStats()
    header_keys = [f.key for f in header_fields(schema)]
    item_keys = [f.key for f in item_fields(schema)]

    header: Dict[str, FieldValue] = {}
    items: List[LineItem] = []

    for outcome in outcomes:
        stats.pages_total += 1
        page = outcome.result
        if outcome.error is not None or not isinstance(page, dict):
            stats.pages_failed += 1
            continue

        for key in header_keys:
            if key in header or key not in page:
                continue
            fv = to_field_value(page[key])
            if fv.value is not None:
                header[key] = fv

        raw_items = page.get("items") if item_keys else None
        if isinstance(raw_items, list):
            for raw in raw_items:
                if isinstance(raw, dict):
                    items.append(_line_item(raw, outcome.page_number, item_keys))

    stats.items = len(items)

    if stats.pages_ok == 0:
        logger.error("document_failed", doc_type=doc_type, pages=stats.pages_total, reason="all_pages_failed")
        raise ExtractionError("No valid data could be extracted from the document.")
    if not header and not items:
        logger.error("document_failed", doc_type=doc_type, pages=stats.pages_total, reason="no_usable_data")
        raise ExtractionError("No valid data could be extracted from the document.")

    # every enabled header field is exposed, in schema order
    fields = {key: header.get(key) or FieldValue() for key in header_keys}

    logger.info(
        "document_merged",
        doc_type=doc_type,
        pages=stats.pages_total,
        pages_failed=stats.pages_failed,
        items=stats.items,
        fields_found=len(header),
    )
    return DocumentRecord(document_type=doc_type, fields=fields, items=items)
