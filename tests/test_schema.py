from datetime import datetime

import pytest
from pydantic import ValidationError

from pagewise_ledger.errors import SchemaError
from pagewise_ledger.schema import (
    AuditLogEntry, BoundingBox, DocumentFieldConfig, FieldValue,
    coerce_value, field_config, header_fields, item_fields, validate_schema,
)

from conftest import make_item, make_record


def test_header_and_item_views_keep_declaration_order(invoice_schema):
    assert [f.key for f in header_fields(invoice_schema)] == [
        "invoice_number", "issue_date", "due_date", "issuer_name", "recipient_name", "total_amount",
    ]
    assert [f.key for f in item_fields(invoice_schema)] == [
        "description", "quantity", "unit_price", "total_price", "tax_rate",
    ]


def test_disabled_fields_are_left_out_of_both_views(document_config):
    po = document_config["purchase_order"]
    before = [f.model_dump() for f in po]

    assert "tax_rate" not in [f.key for f in item_fields(po)]
    assert field_config(po, "tax_rate") is None
    assert [f.model_dump() for f in po] == before


def test_validate_schema_rejects_duplicate_keys():
    schema = [
        DocumentFieldConfig(key="total", label="Total"),
        DocumentFieldConfig(key="total", label="Total again", is_item_field=True),
    ]
    with pytest.raises(SchemaError):
        validate_schema(schema)


def test_field_config_accepts_wire_aliases():
    cfg = DocumentFieldConfig.model_validate({
        "key": "issue_date", "label": "Issue date", "enabled": True,
        "isItemField": False, "outputFormat": "date-yyyy-mm-dd", "type": "string",
    })
    assert cfg.output_format == "date-yyyy-mm-dd"
    assert cfg.is_item_field is False


def test_bounding_box_rejects_negative_size():
    with pytest.raises(ValidationError):
        BoundingBox(x=1, y=1, width=-5, height=3)


def test_audit_log_entry_is_immutable():
    entry = AuditLogEntry(timestamp=datetime(2024, 1, 1), old_value=1, new_value=2)
    with pytest.raises(ValidationError):
        entry.new_value = 3
    assert entry.model_dump(by_alias=True)["oldValue"] == 1


def test_snapshot_does_not_share_history():
    record = make_record(total_amount=100, items=[make_item(quantity=5)])
    copy = record.snapshot()

    copy.fields["total_amount"].history.append(
        AuditLogEntry(timestamp=datetime(2024, 1, 1), old_value=100, new_value=90)
    )
    copy.items[0].fields["quantity"].value = 7

    assert record.fields["total_amount"].history == []
    assert record.items[0].fields["quantity"].value == 5


def test_get_returns_absent_value_for_unknown_key():
    record = make_record(total_amount=100)
    assert record.get("nope") == FieldValue()
    assert record.get("nope").value is None


def test_coerce_value_parses_number_fields():
    amount = DocumentFieldConfig(key="total_amount", label="Total", type="number")

    assert coerce_value(amount, "100") == 100
    assert coerce_value(amount, " 1,250.50 ") == 1250.5
    assert coerce_value(amount, 7.0) == 7 and isinstance(coerce_value(amount, 7.0), int)
    assert coerce_value(amount, "n/a") is None
    assert coerce_value(amount, "") is None
    assert coerce_value(amount, True) is None
    assert coerce_value(amount, None) is None


def test_coerce_value_leaves_string_fields_alone():
    number = DocumentFieldConfig(key="invoice_number", label="Invoice number")

    assert coerce_value(number, "00123") == "00123"
    assert coerce_value(number, 123) == 123
