from datetime import datetime

import pytest

from pagewise_ledger.schema import DocumentFieldConfig, DocumentRecord, FieldValue, LineItem
from pagewise_ledger.settings import DEFAULT_DOCUMENT_CONFIG, copy_config


class FakeRenderer:
    def __init__(self, pages=3, fail_on=None):
        self.pages = pages
        self.fail_on = fail_on
        self.rendered = []

    def page_count(self, file_bytes):
        return self.pages

    def render_page(self, file_bytes, page_number):
        if page_number == self.fail_on:
            raise RuntimeError("poppler crashed")
        self.rendered.append(page_number)
        return f"image-{page_number}".encode()


class FakeOracle:
    """Returns the scripted per-page results in call order; exceptions are raised."""

    def __init__(self, results):
        self.results = list(results)
        self.calls = []

    def __call__(self, image, prompt, shape):
        self.calls.append({"image": image, "prompt": prompt, "shape": shape})
        result = self.results[len(self.calls) - 1]
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture()
def document_config():
    return copy_config(DEFAULT_DOCUMENT_CONFIG)


@pytest.fixture()
def invoice_schema(document_config):
    return document_config["invoice"]


@pytest.fixture()
def small_schema():
    return [
        DocumentFieldConfig(key="invoice_number", label="Invoice number"),
        DocumentFieldConfig(key="description", label="Description", is_item_field=True),
        DocumentFieldConfig(key="quantity", label="Quantity", is_item_field=True, type="number"),
    ]


@pytest.fixture()
def fixed_now():
    return lambda: datetime(2024, 5, 1, 9, 30, 0)


def make_item(page=1, **values):
    return LineItem(
        page_number=FieldValue(value=page),
        fields={k: FieldValue(value=v) for k, v in values.items()},
    )


def make_record(doc_type="invoice", items=(), **values):
    return DocumentRecord(
        document_type=doc_type,
        fields={k: FieldValue(value=v) for k, v in values.items()},
        items=list(items),
    )
