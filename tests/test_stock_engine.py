"""Tests for the stock adjustment engine."""

from __future__ import annotations

import pytest

from warehouse_invoicing import data_manager, stock_engine
from warehouse_invoicing.constants import Direction, InvoiceType
from warehouse_invoicing.errors import (
    ConcurrentModificationError,
    InsufficientStockError,
    NotFoundError,
    ValidationError,
)

from conftest import FIXED_MOMENT, make_line


@pytest.mark.parametrize(
    "invoice_type, direction",
    [
        (InvoiceType.SALE, Direction.DECREASE),
        (InvoiceType.FACTORY_DISPATCH, Direction.DECREASE),
        (InvoiceType.PURCHASE, Direction.INCREASE),
        (InvoiceType.FACTORY_RETURN, Direction.INCREASE),
    ],
)
def test_direction_for_each_invoice_type(invoice_type, direction):
    assert stock_engine.direction_for(invoice_type) is direction
    assert stock_engine.inverse_direction_for(invoice_type) is direction.inverse()


def test_line_deltas_sums_repeated_items():
    lines = [make_line("A", 3), make_line("B", 2), make_line("A", 4)]
    assert stock_engine.line_deltas(lines, Direction.DECREASE) == {"A": -7, "B": -2}
    assert stock_engine.line_deltas(lines, Direction.INCREASE) == {"A": 7, "B": 2}


def test_net_deltas_only_moves_the_difference():
    """Raising a sale line from 10 to 20 takes 10 more units, not 20."""

    deltas = stock_engine.net_deltas(
        [make_line("A", 10, "1")], InvoiceType.SALE, [make_line("A", 20, "1")], InvoiceType.SALE
    )
    assert deltas == {"A": -10}


def test_net_deltas_handles_swapped_items_and_drops_zeroes():
    deltas = stock_engine.net_deltas(
        [make_line("A", 5, "1"), make_line("C", 1, "1")],
        InvoiceType.SALE,
        [make_line("B", 5, "1"), make_line("C", 1, "1")],
        InvoiceType.SALE,
    )
    assert deltas == {"A": 5, "B": -5}


def test_net_deltas_across_type_change():
    deltas = stock_engine.net_deltas(
        [make_line("A", 4, "1")], InvoiceType.PURCHASE, [make_line("A", 4, "1")], InvoiceType.SALE
    )
    assert deltas == {"A": -8}


def test_plan_adjustments_builds_floored_increments(store, add_item):
    add_item("A", 10)
    add_item("B", 0)

    ops = stock_engine.plan_adjustments(store, {"A": -4, "B": 6}, timestamp=FIXED_MOMENT)

    by_id = {op.doc_id: op.fields["remaining_quantity"] for op in ops}
    assert by_id["A"] == data_manager.Increment(-4, minimum=0)
    assert by_id["B"] == data_manager.Increment(6, minimum=None)
    assert all(op.fields["updated_at"] == FIXED_MOMENT.isoformat() for op in ops)
    # Planning does not write.
    assert data_manager.deserialize_stock_item(store.get("warehouseItems", "A")).remaining_quantity == 10


def test_plan_adjustments_rejects_unknown_item(store, add_item):
    add_item("A", 10)
    with pytest.raises(NotFoundError) as excinfo:
        stock_engine.plan_adjustments(store, {"A": -1, "ghost": 2})
    assert excinfo.value.identifier == "ghost"


def test_plan_adjustments_checks_required_items_without_delta(store, add_item):
    add_item("A", 10)
    with pytest.raises(NotFoundError):
        stock_engine.plan_adjustments(store, {"A": -1}, required_items=["A", "gone"])


def test_plan_adjustments_reports_insufficient_stock(store, add_item):
    add_item("A", 3)
    with pytest.raises(InsufficientStockError) as excinfo:
        stock_engine.plan_adjustments(store, {"A": -5})
    assert excinfo.value.item_id == "A"
    assert excinfo.value.requested == 5
    assert excinfo.value.available == 3


def test_plan_adjustments_allows_taking_everything(store, add_item):
    add_item("A", 3)
    ops = stock_engine.plan_adjustments(store, {"A": -3})
    assert len(ops) == 1


def test_apply_moves_stock_in_both_directions(store, add_item, remaining):
    add_item("A", 10)
    add_item("B", 1)

    stock_engine.apply(store, [make_line("A", 4), make_line("B", 2)], Direction.INCREASE)
    assert (remaining("A"), remaining("B")) == (14, 3)

    stock_engine.apply(store, [make_line("A", 14), make_line("B", 1)], Direction.DECREASE)
    assert (remaining("A"), remaining("B")) == (0, 2)


def test_apply_is_all_or_nothing(store, add_item, remaining):
    add_item("A", 10)
    add_item("B", 1)

    with pytest.raises(InsufficientStockError):
        stock_engine.apply(store, [make_line("A", 5), make_line("B", 2)], Direction.DECREASE)

    assert (remaining("A"), remaining("B")) == (10, 1)


def test_commit_batch_reports_stock_taken_by_another_writer(store, add_item, remaining):
    """A decrement that lands between planning and commit fails the batch."""

    add_item("A", 10)
    ops = stock_engine.plan_adjustments(store, {"A": -8})
    stock_engine.apply(store, [make_line("A", 5)], Direction.DECREASE)

    with pytest.raises(InsufficientStockError) as excinfo:
        stock_engine.commit_batch(store, ops)

    assert excinfo.value.requested == 8
    assert excinfo.value.available == 5
    assert remaining("A") == 5


def test_commit_batch_reports_version_conflict(store):
    store.batch_write([data_manager.set_op("invoices", "INV1", {"invoice_type": "SALE", "version": 2})])
    op = data_manager.update_op("invoices", "INV1", {"notes": "edit"}, expected={"version": 1})

    with pytest.raises(ConcurrentModificationError) as excinfo:
        stock_engine.commit_batch(store, [op])
    assert excinfo.value.expected_version == 1
    assert excinfo.value.actual_version == 2


def test_commit_batch_reports_missing_invoice(store):
    op = data_manager.delete_op("invoices", "INV-missing", expected={"version": 1})
    with pytest.raises(NotFoundError) as excinfo:
        stock_engine.commit_batch(store, [op])
    assert excinfo.value.resource == "Invoice"


def test_commit_batch_rejects_duplicate_creation(store, add_item):
    add_item("A", 1)
    op = data_manager.set_op("warehouseItems", "A", {"item_name": "again"}, create_only=True)
    with pytest.raises(ValidationError):
        stock_engine.commit_batch(store, [op])
