"""Per-document-type field schemas and their (external) persistence."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Iterable, List

from pydantic import TypeAdapter, ValidationError

from .errors import SchemaError
from .logs import get_logger
from .schema import DocumentFieldConfig, OutputFieldConfig, validate_schema

logger = get_logger(__name__)

DocumentConfig = Dict[str, List[DocumentFieldConfig]]
OutputConfig = Dict[str, List[OutputFieldConfig]]

_CONFIG_ADAPTER = TypeAdapter(DocumentConfig)
_OUTPUT_ADAPTER = TypeAdapter(OutputConfig)


def _f(key, label, *, item=False, type="string", fmt="none", enabled=True, instruction=None):
    return DocumentFieldConfig(
        key=key, label=label, enabled=enabled, is_item_field=item,
        type=type, output_format=fmt, instruction=instruction,
    )


_ITEM_FIELDS = [
    _f("description", "Description", item=True,
       instruction="The line describing the goods or service."),
    _f("quantity", "Quantity", item=True, type="number",
       instruction="Quantity of the line item."),
    _f("unit_price", "Unit price", item=True, type="number",
       instruction="Price per unit of the line item."),
    _f("total_price", "Amount", item=True, type="number",
       instruction="Line total (unit price x quantity)."),
]

DEFAULT_DOCUMENT_CONFIG: DocumentConfig = {
    "invoice": [
        _f("invoice_number", "Invoice number",
           instruction="Look for 'Invoice No.', 'Invoice #' or similar."),
        _f("issue_date", "Issue date", fmt="date-yyyy-mm-dd",
           instruction="The date the invoice was issued or created."),
        _f("due_date", "Due date", fmt="date-yyyy-mm-dd",
           instruction="The payment due date."),
        _f("issuer_name", "Issuer",
           instruction="Company or person that issued the invoice."),
        _f("recipient_name", "Recipient",
           instruction="Company or person the invoice is addressed to."),
        _f("total_amount", "Total amount", type="number",
           instruction="The final amount billed ('Total', 'Amount due')."),
        *[f.model_copy() for f in _ITEM_FIELDS],
        _f("tax_rate", "Tax rate", item=True,
           instruction="Tax rate of the line (e.g. 10%, 8%) or 'exempt'."),
    ],
    "purchase_order": [
        _f("order_number", "Order number",
           instruction="Look for 'Order No.', 'PO Number' or similar."),
        _f("order_date", "Order date", fmt="date-yyyy-mm-dd",
           instruction="The date the order was placed."),
        _f("vendor_name", "Vendor",
           instruction="Company or shop the order is placed with."),
        _f("shipping_address", "Shipping address",
           instruction="Where the goods are to be delivered."),
        _f("total_amount", "Total amount", type="number",
           instruction="The final ordered amount ('Total', 'Order total')."),
        *[f.model_copy() for f in _ITEM_FIELDS],
        _f("tax_rate", "Tax rate", item=True, enabled=False,
           instruction="Tax rate of the line (e.g. 10%, 8%) or 'exempt'."),
    ],
}


def copy_config(config: DocumentConfig) -> DocumentConfig:
    return {name: [f.model_copy() for f in fields] for name, fields in config.items()}


def add_document_type(config: DocumentConfig, name: str, fields: List[DocumentFieldConfig]) -> DocumentConfig:
    """Return a new mapping with ``name`` registered; ``config`` is left untouched."""
    name = (name or "").strip()
    if not name:
        raise SchemaError("Document type name must not be empty")
    if name in config:
        raise SchemaError(f"Document type '{name}' already exists")
    validate_schema(fields)
    out = copy_config(config)
    out[name] = [f.model_copy() for f in fields]
    return out


def update_document_type(config: DocumentConfig, name: str, fields: List[DocumentFieldConfig]) -> DocumentConfig:
    """Replace the schema of an existing document type; ``config`` is left untouched."""
    if name not in config:
        raise SchemaError(f"Unknown document type '{name}'")
    validate_schema(fields)
    out = copy_config(config)
    out[name] = [f.model_copy() for f in fields]
    return out


def fields_from_rows(rows: Iterable[Dict[str, Any]]) -> List[DocumentFieldConfig]:
    """
    Build a schema from edited table rows. Rows without a key are skipped,
    a blank label falls back to the key. Raises SchemaError on invalid rows.
    """
    fields: List[DocumentFieldConfig] = []
    for row in rows:
        key = str(row.get("key") or "").strip()
        if not key:
            continue
        data = {k: v for k, v in row.items() if v is not None}
        data["key"] = key
        data["label"] = str(row.get("label") or "").strip() or key
        data["instruction"] = str(row.get("instruction") or "").strip() or None
        try:
            fields.append(DocumentFieldConfig.model_validate(data))
        except ValidationError as exc:
            raise SchemaError(f"Invalid settings for field '{key}': {exc.errors()[0]['msg']}") from exc
    validate_schema(fields)
    return fields


def default_output_config(schema: List[DocumentFieldConfig]) -> List[OutputFieldConfig]:
    """Output settings seeded from the schema: header fields first, then item fields."""
    ordered = [f for f in schema if not f.is_item_field] + [f for f in schema if f.is_item_field]
    return [
        OutputFieldConfig(key=f.key, label=f.label, enabled=f.enabled, is_item_field=f.is_item_field)
        for f in ordered
    ]


def reorder_output_fields(fields: List[OutputFieldConfig], dragged_key: str, target_key: str) -> List[OutputFieldConfig]:
    """
    Move ``dragged_key`` to the position of ``target_key``.
    Moves across the header/item boundary are ignored.
    """
    if dragged_key == target_key:
        return list(fields)
    dragged = next((f for f in fields if f.key == dragged_key), None)
    target = next((f for f in fields if f.key == target_key), None)
    if dragged is None or target is None or dragged.is_item_field != target.is_item_field:
        return list(fields)

    out = [f for f in fields if f.key != dragged_key]
    idx = next(i for i, f in enumerate(out) if f.key == target_key)
    out.insert(idx, dragged)
    return out


# ---------- persistence ----------

def load_document_config(path: Path) -> DocumentConfig:
    path = Path(path)
    if not path.exists():
        return copy_config(DEFAULT_DOCUMENT_CONFIG)
    try:
        config = _CONFIG_ADAPTER.validate_json(path.read_bytes())
        for fields in config.values():
            validate_schema(fields)
        return config
    except (OSError, ValidationError, SchemaError) as exc:
        logger.warning("document_config_load_failed", path=str(path), error=str(exc))
        return copy_config(DEFAULT_DOCUMENT_CONFIG)


def save_document_config(path: Path, config: DocumentConfig) -> None:
    payload = {
        name: [f.model_dump(by_alias=True) for f in fields]
        for name, fields in config.items()
    }
    Path(path).write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    logger.info("document_config_saved", path=str(path), document_types=len(config))


def load_output_config(path: Path) -> OutputConfig:
    """Saved column settings per document type; empty when missing or unreadable."""
    path = Path(path)
    if not path.exists():
        return {}
    try:
        return _OUTPUT_ADAPTER.validate_json(path.read_bytes())
    except (OSError, ValidationError) as exc:
        logger.warning("output_config_load_failed", path=str(path), error=str(exc))
        return {}


def save_output_config(path: Path, config: OutputConfig) -> None:
    payload = {
        name: [f.model_dump(by_alias=True) for f in fields]
        for name, fields in config.items()
    }
    Path(path).write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    logger.info("output_config_saved", path=str(path), document_types=len(config))
