"""Draft assembly rules applied before an invoice is submitted.

Drafts are immutable; every helper returns a new :class:`InvoiceDraft`.
Nothing here touches the store, so a draft can be built, edited and thrown
away without any stock side effects.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Iterable, Optional, Tuple

from . import log
from .constants import DRAFT_TYPES, PRICED_TYPES, Direction, InvoiceType
from .data_manager import InvoiceLine, InvoiceRecord, StockItemRow
from .errors import InsufficientStockError, ValidationError
from .stock_engine import direction_for


@dataclass(frozen=True)
class InvoiceDraft:
    """Client-side invoice that has not been numbered or persisted yet.

    ``party`` is the client name for a SALE, the supplier name for a
    PURCHASE and the recipient for a FACTORY_DISPATCH.
    """

    invoice_type: InvoiceType
    party: str = ""
    client_phone: Optional[str] = None
    lines: Tuple[InvoiceLine, ...] = ()
    notes: str = ""

    @property
    def total_amount(self) -> Decimal:
        return compute_total(self.invoice_type, self.lines)


def new_draft(
    invoice_type: InvoiceType,
    party: str = "",
    *,
    client_phone: Optional[str] = None,
    notes: str = "",
) -> InvoiceDraft:
    """Start an empty draft of ``invoice_type``.

    Raises:
        ValidationError: If ``invoice_type`` cannot be drafted directly
            (factory returns are always derived from a dispatch).
    """

    invoice_type = InvoiceType(invoice_type)
    if invoice_type not in DRAFT_TYPES:
        raise ValidationError(f"Invoices of type {invoice_type.value} cannot be drafted", field="invoice_type")
    return InvoiceDraft(invoice_type=invoice_type, party=party, client_phone=client_phone, notes=notes)


def draft_from_invoice(record: InvoiceRecord) -> InvoiceDraft:
    """Rebuild the editable draft of a persisted invoice."""

    if record.invoice_type not in DRAFT_TYPES:
        raise ValidationError(
            f"Invoices of type {record.invoice_type.value} cannot be edited", field="invoice_type"
        )
    party = {
        InvoiceType.SALE: record.client_name,
        InvoiceType.PURCHASE: record.supplier_name,
        InvoiceType.FACTORY_DISPATCH: record.recipient,
    }[record.invoice_type]
    return InvoiceDraft(
        invoice_type=record.invoice_type,
        party=party or "",
        client_phone=record.client_phone,
        lines=record.lines,
        notes=record.notes,
    )


def require_quantity(quantity: int) -> int:
    """Return ``quantity`` if it is a strictly positive integer."""

    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        log.warning("Line quantity validation failed: %r", quantity)
        raise ValidationError("Quantity must be a positive whole number", field="quantity")
    return quantity


def require_unit_price(unit_price: Optional[Decimal]) -> Decimal:
    """Return ``unit_price`` as a Decimal if it is strictly positive."""

    if unit_price is None or Decimal(str(unit_price)) <= Decimal("0"):
        log.warning("Unit price validation failed: %r", unit_price)
        raise ValidationError("Unit price must be greater than zero", field="unit_price")
    return Decimal(str(unit_price))


def add_line(
    draft: InvoiceDraft,
    item: StockItemRow,
    quantity: int,
    *,
    unit_price: Optional[Decimal] = None,
    unit: Optional[str] = None,
    notes: Optional[str] = None,
    check_stock: bool = True,
) -> InvoiceDraft:
    """Add ``quantity`` of ``item`` to the draft, merging with an existing line.

    If the draft already has a line for ``item`` the quantities are summed and
    the price (or unit and notes, for dispatches) are replaced by the newly
    entered values. Otherwise a new line is appended with the item's name,
    code and color snapshotted.

    Args:
        draft (InvoiceDraft): Draft to extend.
        item (StockItemRow): Stock item being added.
        quantity (int): Positive quantity to add.
        unit_price (Decimal | None): Required for SALE and PURCHASE drafts.
        unit (str | None): Packaging unit, dispatch drafts only.
        notes (str | None): Line notes, dispatch drafts only.
        check_stock (bool): For drafts that remove stock, reject a merged
            quantity larger than the item's remaining quantity. Disable when
            re-editing a persisted invoice whose quantities are already
            deducted.

    Returns:
        InvoiceDraft: New draft with the line added or merged.

    Raises:
        ValidationError: If the quantity or price is invalid.
        InsufficientStockError: If ``check_stock`` is set and the item cannot
            cover the merged quantity.
    """

    require_quantity(quantity)
    priced = draft.invoice_type in PRICED_TYPES
    price = require_unit_price(unit_price) if priced else None

    index = _line_index(draft.lines, item.item_id)
    merged_quantity = quantity + (draft.lines[index].quantity if index is not None else 0)

    if (
        check_stock
        and direction_for(draft.invoice_type) is Direction.DECREASE
        and merged_quantity > item.remaining_quantity
    ):
        log.warning(
            "Draft line rejected for '%s': requested %s, available %s",
            item.item_id,
            merged_quantity,
            item.remaining_quantity,
        )
        raise InsufficientStockError(item.item_id, merged_quantity, item.remaining_quantity)

    if index is not None:
        existing = draft.lines[index]
        if priced:
            merged = replace(existing, quantity=merged_quantity, unit_price=price)
        else:
            merged = replace(existing, quantity=merged_quantity, unit=unit or "", notes=notes or "")
        lines = draft.lines[:index] + (merged,) + draft.lines[index + 1:]
    else:
        line = InvoiceLine(
            stock_item_id=item.item_id,
            item_name=item.item_name,
            item_code=item.item_code,
            color=item.color,
            quantity=quantity,
            unit_price=price,
            unit=None if priced else (unit or ""),
            notes=None if priced else (notes or ""),
        )
        lines = draft.lines + (line,)

    return replace(draft, lines=lines)


def remove_line(draft: InvoiceDraft, index: int) -> InvoiceDraft:
    """Drop the line at ``index``; no stock moves until the draft is submitted."""

    _require_index(draft, index)
    return replace(draft, lines=draft.lines[:index] + draft.lines[index + 1:])


def update_line(
    draft: InvoiceDraft,
    index: int,
    *,
    quantity: Optional[int] = None,
    unit_price: Optional[Decimal] = None,
    unit: Optional[str] = None,
    notes: Optional[str] = None,
) -> InvoiceDraft:
    """Edit fields of the line at ``index`` in place of re-adding it."""

    _require_index(draft, index)
    line = draft.lines[index]
    changes = {}
    if quantity is not None:
        changes["quantity"] = require_quantity(quantity)
    if unit_price is not None:
        changes["unit_price"] = require_unit_price(unit_price)
    if unit is not None:
        changes["unit"] = unit
    if notes is not None:
        changes["notes"] = notes
    lines = draft.lines[:index] + (replace(line, **changes),) + draft.lines[index + 1:]
    return replace(draft, lines=lines)


def compute_total(invoice_type: InvoiceType, lines: Iterable[InvoiceLine]) -> Decimal:
    """Return the sum of quantity times unit price, or zero for unpriced types."""

    if InvoiceType(invoice_type) not in PRICED_TYPES:
        return Decimal("0")
    return sum(
        (Decimal(line.quantity) * (line.unit_price or Decimal("0")) for line in lines),
        Decimal("0"),
    )


def total_quantity(lines: Iterable[InvoiceLine]) -> int:
    return sum(line.quantity for line in lines)


def _line_index(lines: Tuple[InvoiceLine, ...], item_id: str) -> Optional[int]:
    for index, line in enumerate(lines):
        if line.stock_item_id == item_id:
            return index
    return None


def _require_index(draft: InvoiceDraft, index: int) -> None:
    if not 0 <= index < len(draft.lines):
        raise ValidationError(f"No line at position {index}", field="lines")
