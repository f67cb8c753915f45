from pathlib import Path

import pytest

from pagewise_ledger.config import load_config
from pagewise_ledger.errors import SchemaError
from pagewise_ledger.schema import DocumentFieldConfig
from pagewise_ledger.settings import (
    DEFAULT_DOCUMENT_CONFIG, add_document_type, default_output_config, fields_from_rows, load_document_config,
    load_output_config, reorder_output_fields, save_document_config, save_output_config, update_document_type,
)


def test_add_document_type_returns_new_mapping(document_config):
    fields = [DocumentFieldConfig(key="receipt_no", label="Receipt no.")]
    updated = add_document_type(document_config, "receipt", fields)

    assert "receipt" in updated
    assert "receipt" not in document_config


def test_add_document_type_validates(document_config):
    with pytest.raises(SchemaError):
        add_document_type(document_config, "  ", [])
    with pytest.raises(SchemaError):
        add_document_type(document_config, "receipt", [
            DocumentFieldConfig(key="a", label="A"), DocumentFieldConfig(key="a", label="A2"),
        ])


def test_default_output_config_puts_header_fields_first():
    schema = [
        DocumentFieldConfig(key="qty", label="Qty", is_item_field=True),
        DocumentFieldConfig(key="number", label="Number"),
    ]
    assert [o.key for o in default_output_config(schema)] == ["number", "qty"]


def test_reorder_output_fields_within_scope(invoice_schema):
    fields = default_output_config(invoice_schema)

    moved = reorder_output_fields(fields, "total_amount", "invoice_number")
    assert [o.key for o in moved][:2] == ["total_amount", "invoice_number"]

    unchanged = reorder_output_fields(fields, "quantity", "invoice_number")
    assert [o.key for o in unchanged] == [o.key for o in fields]


def test_document_config_round_trip(tmp_path, document_config):
    path = tmp_path / "config.json"
    save_document_config(path, document_config)

    loaded = load_document_config(path)
    assert loaded == document_config
    assert '"isItemField"' in path.read_text(encoding="utf-8")


def test_missing_or_corrupt_config_falls_back_to_defaults(tmp_path):
    assert load_document_config(tmp_path / "nope.json") == DEFAULT_DOCUMENT_CONFIG

    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    assert load_document_config(broken) == DEFAULT_DOCUMENT_CONFIG


def test_load_config_reads_environment(monkeypatch, tmp_path):
    monkeypatch.delenv("OUTPUT_CONFIG_PATH", raising=False)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-abc")
    monkeypatch.setenv("MAX_PAGES", "3")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("DOCUMENT_CONFIG_PATH", str(tmp_path / "cfg.json"))

    cfg = load_config(dotenv_path=tmp_path / ".env")

    assert cfg.ai_enabled
    assert cfg.max_pages == 3
    assert cfg.log_level == "DEBUG"
    assert cfg.document_config_path == Path(tmp_path / "cfg.json")
    assert cfg.output_config_path == Path("output_config.json")


def test_load_config_rejects_bad_integers(monkeypatch, tmp_path):
    monkeypatch.setenv("MAX_PAGES", "many")
    with pytest.raises(ValueError, match="MAX_PAGES"):
        load_config(dotenv_path=tmp_path / ".env")


def test_add_document_type_refuses_existing_names(document_config):
    with pytest.raises(SchemaError, match="already exists"):
        add_document_type(document_config, "invoice", [DocumentFieldConfig(key="x", label="X")])

    assert [f.key for f in document_config["invoice"]][0] == "invoice_number"


def test_edited_field_rows_round_trip_through_storage(tmp_path, document_config):
    rows = [f.model_dump() for f in document_config["invoice"]]
    rows[0]["enabled"] = False
    rows[1]["label"] = "  "
    rows.append({"key": "po_reference", "label": "PO ref", "enabled": True, "is_item_field": False,
                 "type": "string", "output_format": "none", "instruction": ""})
    rows.append({"key": None, "label": "blank row"})

    updated = update_document_type(document_config, "invoice", fields_from_rows(rows))
    path = tmp_path / "config.json"
    save_document_config(path, updated)
    invoice = load_document_config(path)["invoice"]

    assert invoice[0].enabled is False
    assert invoice[1].label == "issue_date"
    assert invoice[-1].key == "po_reference" and invoice[-1].instruction is None
    assert document_config["invoice"][0].enabled is True


def test_field_rows_are_validated(document_config):
    with pytest.raises(SchemaError):
        fields_from_rows([{"key": "a", "label": "A"}, {"key": "a", "label": "again"}])
    with pytest.raises(SchemaError):
        fields_from_rows([{"key": "a", "label": "A", "type": "date"}])
    with pytest.raises(SchemaError):
        update_document_type(document_config, "receipt", [DocumentFieldConfig(key="a", label="A")])


def test_output_config_round_trip(tmp_path, invoice_schema):
    path = tmp_path / "output.json"
    assert load_output_config(path) == {}

    columns = reorder_output_fields(default_output_config(invoice_schema), "total_amount", "invoice_number")
    save_output_config(path, {"invoice": columns})

    assert [o.key for o in load_output_config(path)["invoice"]] == [o.key for o in columns]

    path.write_text("[1, 2", encoding="utf-8")
    assert load_output_config(path) == {}
