from datetime import datetime

from pagewise_ledger.audit import collect_history, generate_audit_logs, values_equal
from pagewise_ledger.schema import AuditLogEntry, FieldValue

from conftest import make_item, make_record


def _history_lengths(record):
    top = {k: len(v.history) for k, v in record.fields.items()}
    items = [{k: len(v.history) for k, v in it.fields.items()} for it in record.items]
    return top, items


def test_identical_snapshots_produce_no_history(fixed_now):
    before = make_record(invoice_number="INV-1", total_amount=100,
                         items=[make_item(description="A", quantity=5)])
    after = generate_audit_logs(before, before.snapshot(), now=fixed_now)

    top, items = _history_lengths(after)
    assert set(top.values()) == {0}
    assert all(n == 0 for it in items for n in it.values())


def test_single_item_change_logs_exactly_one_entry(fixed_now):
    before = make_record(invoice_number="INV-1", items=[make_item(description="A", quantity=5)])
    edited = before.snapshot()
    edited.items[0].fields["quantity"].value = 7

    after = generate_audit_logs(before, edited, now=fixed_now)

    history = after.items[0].fields["quantity"].history
    assert len(history) == 1
    assert (history[0].old_value, history[0].new_value) == (5, 7)
    assert history[0].timestamp == datetime(2024, 5, 1, 9, 30)
    assert after.items[0].fields["description"].history == []
    assert after.fields["invoice_number"].history == []


def test_inputs_are_not_mutated(fixed_now):
    before = make_record(total_amount=100)
    edited = before.snapshot()
    edited.fields["total_amount"].value = 120

    after = generate_audit_logs(before, edited, now=fixed_now)

    assert after.fields["total_amount"].history[0].new_value == 120
    assert before.fields["total_amount"].history == []
    assert edited.fields["total_amount"].history == []


def test_history_is_appended_after_existing_entries(fixed_now):
    earlier = AuditLogEntry(timestamp=datetime(2024, 4, 1), old_value=None, new_value=100)
    before = make_record(total_amount=100)
    before.fields["total_amount"].history.append(earlier)
    edited = before.snapshot()
    edited.fields["total_amount"].value = None

    after = generate_audit_logs(before, edited, now=fixed_now)

    assert [(h.old_value, h.new_value) for h in after.fields["total_amount"].history] == [(None, 100), (100, None)]


def test_removed_item_is_not_logged(fixed_now):
    before = make_record(items=[make_item(description="A"), make_item(description="B")])
    edited = before.snapshot()
    del edited.items[1]

    after = generate_audit_logs(before, edited, now=fixed_now)

    assert len(after.items) == 1
    assert collect_history(after) == []


def test_added_item_logs_non_null_fields_from_none(fixed_now):
    before = make_record(items=[make_item(description="A", quantity=1)])
    edited = before.snapshot()
    edited.items.append(make_item(page=2, description="New", quantity=None))

    after = generate_audit_logs(before, edited, now=fixed_now)

    added = after.items[1]
    assert [(h.old_value, h.new_value) for h in added.fields["description"].history] == [(None, "New")]
    assert added.fields["quantity"].history == []


def test_absent_and_null_compare_equal(fixed_now):
    before = make_record(invoice_number="INV-1")
    edited = before.snapshot()
    edited.fields["due_date"] = FieldValue(value=None)

    after = generate_audit_logs(before, edited, now=fixed_now)

    assert after.fields["due_date"].history == []


def test_page_number_changes_are_not_audited(fixed_now):
    before = make_record(items=[make_item(page=1, description="A")])
    edited = before.snapshot()
    edited.items[0].page_number.value = 2

    after = generate_audit_logs(before, edited, now=fixed_now)

    assert after.items[0].page_number.history == []


def test_values_equal():
    assert values_equal(None, None)
    assert values_equal(5, 5.0)
    assert not values_equal(0, None)
    assert not values_equal("", None)
    assert not values_equal(1, True)
    assert not values_equal("5", 5)


def test_collect_history_is_newest_first_with_labels(small_schema):
    record = make_record(invoice_number="INV-2", items=[make_item(quantity=3)])
    record.fields["invoice_number"].history.append(
        AuditLogEntry(timestamp=datetime(2024, 1, 1), old_value="INV-1", new_value="INV-2"))
    record.items[0].fields["quantity"].history.append(
        AuditLogEntry(timestamp=datetime(2024, 2, 1), old_value=2, new_value=3))

    rows = collect_history(record, small_schema)

    assert [(r.label, r.item_index) for r in rows] == [("Quantity", 1), ("Invoice number", None)]
    assert rows[0].new_value == 3
