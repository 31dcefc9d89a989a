"""Stock adjustment engine.

Every change to a stock item's ``remaining_quantity`` goes through this
module. Invoice lines are folded into signed per-item deltas, the deltas are
validated against the latest stored quantities, and the resulting increments
are committed as a single atomic batch. Callers that need to write an invoice
document in the same batch use :func:`plan_adjustments` and
:func:`commit_batch` directly instead of :func:`apply`.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Dict, Iterable, List, Optional, Sequence

from . import data_manager, log
from .constants import STOCK_DIRECTIONS, Collection, Direction, InvoiceType
from .errors import ConcurrentModificationError, InsufficientStockError, NotFoundError, ValidationError

ITEMS = Collection.WAREHOUSE_ITEMS.value
INVOICES = Collection.INVOICES.value


def direction_for(invoice_type: InvoiceType) -> Direction:
    """Return the direction in which ``invoice_type`` moves stock."""

    return STOCK_DIRECTIONS[InvoiceType(invoice_type)]


def inverse_direction_for(invoice_type: InvoiceType) -> Direction:
    """Return the direction that undoes the stock effect of ``invoice_type``."""

    return direction_for(invoice_type).inverse()


def line_deltas(lines: Iterable[data_manager.InvoiceLine], direction: Direction) -> Dict[str, int]:
    """Fold invoice lines into one signed quantity delta per stock item.

    Several lines referencing the same item are summed, so availability is
    checked against the total an invoice takes rather than line by line.

    Args:
        lines (Iterable[InvoiceLine]): Lines whose quantities should move.
        direction (Direction): ``INCREASE`` yields positive deltas,
            ``DECREASE`` negative ones.

    Returns:
        dict[str, int]: Mapping of stock item id to signed delta, in order of
            first appearance.
    """

    sign = 1 if direction is Direction.INCREASE else -1
    deltas: Dict[str, int] = {}
    for line in lines:
        deltas[line.stock_item_id] = deltas.get(line.stock_item_id, 0) + sign * int(line.quantity)
    return deltas


def net_deltas(
    old_lines: Iterable[data_manager.InvoiceLine],
    old_type: InvoiceType,
    new_lines: Iterable[data_manager.InvoiceLine],
    new_type: InvoiceType,
) -> Dict[str, int]:
    """Combine "undo the old invoice" and "apply the new one" into one delta set.

    The result is what compensate-then-apply would do to each item, computed
    before touching the store so it can be committed as one batch. Items
    whose effect cancels out are dropped.
    """

    combined = line_deltas(old_lines, inverse_direction_for(old_type))
    for item_id, delta in line_deltas(new_lines, direction_for(new_type)).items():
        combined[item_id] = combined.get(item_id, 0) + delta
    return {item_id: delta for item_id, delta in combined.items() if delta != 0}


def plan_adjustments(
    store: data_manager.WorkbookStore,
    deltas: Dict[str, int],
    *,
    required_items: Iterable[str] = (),
    timestamp: Optional[datetime] = None,
) -> List[data_manager.WriteOp]:
    """Validate ``deltas`` against the store and build the increment writes.

    Nothing is written. Every item with a non-zero delta, plus every id in
    ``required_items``, must exist; every negative delta must fit within the
    item's current ``remaining_quantity``.

    Args:
        store (WorkbookStore): Store holding the ``warehouseItems`` collection.
        deltas (dict[str, int]): Signed quantity change per stock item.
        required_items (Iterable[str]): Item ids that must resolve even if
            their delta is zero (for example unchanged lines of an update).
        timestamp (datetime | None): Value written to ``updated_at``.

    Returns:
        list[WriteOp]: One ``UPDATE`` per item with a non-zero delta. Decreases
            carry a floor of zero so a concurrent decrement that lands first
            makes the batch fail instead of driving the quantity negative.

    Raises:
        NotFoundError: If a referenced stock item does not exist.
        InsufficientStockError: If a decrease exceeds the available quantity.
        PersistenceError: If the store cannot be read.
    """

    when = (timestamp or datetime.now(UTC)).isoformat()
    to_check = list(deltas)
    to_check.extend(item_id for item_id in required_items if item_id not in deltas)

    current: Dict[str, data_manager.StockItemRow] = {}
    for item_id in to_check:
        document = store.get(ITEMS, item_id)
        if document is None:
            log.warning("Stock adjustment rejected: unknown stock item '%s'", item_id)
            raise NotFoundError("Stock item", item_id)
        current[item_id] = data_manager.deserialize_stock_item(document)

    ops: List[data_manager.WriteOp] = []
    for item_id, delta in deltas.items():
        if delta == 0:
            continue
        available = current[item_id].remaining_quantity
        if delta < 0 and available + delta < 0:
            log.warning(
                "Stock adjustment rejected for '%s': requested %s, available %s",
                item_id,
                -delta,
                available,
            )
            raise InsufficientStockError(item_id, -delta, available)
        increment = data_manager.Increment(delta, minimum=0 if delta < 0 else None)
        ops.append(
            data_manager.update_op(ITEMS, item_id, {"remaining_quantity": increment, "updated_at": when})
        )

    log.debug("Planned %d stock adjustments: %s", len(ops), deltas)
    return ops


def commit_batch(store: data_manager.WorkbookStore, ops: Sequence[data_manager.WriteOp]) -> None:
    """Commit ``ops`` as one atomic batch, translating store rejections.

    Store-level precondition failures only happen when another writer got in
    between planning and committing; they are reported with the same domain
    errors the planning step would have raised.

    Raises:
        NotFoundError: A targeted stock item or invoice vanished.
        InsufficientStockError: A decrease no longer fits.
        ConcurrentModificationError: An invoice version moved on.
        ValidationError: A document that must be new already exists.
        PersistenceError: Any other store failure.
    """

    try:
        store.batch_write(ops)
    except data_manager.DocumentMissingError as exc:
        resource = "Stock item" if exc.collection == ITEMS else "Invoice"
        raise NotFoundError(resource, exc.doc_id) from exc
    except data_manager.PreconditionFailed as exc:
        if exc.field_name == "remaining_quantity":
            available = exc.actual - _delta_for(ops, exc.doc_id)
            raise InsufficientStockError(exc.doc_id, -_delta_for(ops, exc.doc_id), available) from exc
        if exc.field_name == "version":
            raise ConcurrentModificationError(exc.doc_id, exc.expected, exc.actual) from exc
        if exc.field_name == "id":
            raise ValidationError(f"Document '{exc.doc_id}' already exists in '{exc.collection}'") from exc
        raise


def _delta_for(ops: Sequence[data_manager.WriteOp], item_id: str) -> int:
    total = 0
    for op in ops:
        if op.collection == ITEMS and op.doc_id == item_id:
            value = op.fields.get("remaining_quantity")
            if isinstance(value, data_manager.Increment):
                total += value.delta
    return total


def apply(
    store: data_manager.WorkbookStore,
    lines: Sequence[data_manager.InvoiceLine],
    direction: Direction,
    *,
    timestamp: Optional[datetime] = None,
) -> None:
    """Move stock for ``lines`` in ``direction`` as exactly one atomic batch.

    Args:
        store (WorkbookStore): Store holding the stock items.
        lines (Sequence[InvoiceLine]): Lines whose quantities should move.
        direction (Direction): Whether the lines add or remove stock.
        timestamp (datetime | None): Value written to ``updated_at``.

    Raises:
        NotFoundError: If any line references an unknown stock item.
        InsufficientStockError: If a decrease exceeds available stock.
        PersistenceError: If the batch cannot be committed.
    """

    deltas = line_deltas(lines, direction)
    ops = plan_adjustments(store, deltas, timestamp=timestamp)
    commit_batch(store, ops)
    log.info("Applied %s to %d stock items", direction.value, len(ops))
