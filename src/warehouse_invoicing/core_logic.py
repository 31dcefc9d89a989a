"""Business logic layer for warehouse invoicing.

This module owns the invoice lifecycle: numbering, creating, editing and
deleting invoices, and deriving factory returns from dispatches. Each public
operation validates its input, asks :mod:`stock_engine` to plan the stock
movements it implies, and commits those movements together with the invoice
document in a single atomic batch. A failed operation therefore leaves both
the stock and the invoice log exactly as they were.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional

from . import data_manager, log, stock_engine
from .composer import InvoiceDraft, compute_total
from .constants import (
    DRAFT_TYPES,
    EXPECTED_SCHEMA_VERSION,
    PHONE_PATTERN,
    PRICED_TYPES,
    Collection,
    InvoiceType,
    ReturnType,
)
from .errors import ConcurrentModificationError, NotFoundError, PersistenceError, ValidationError

ITEMS = Collection.WAREHOUSE_ITEMS.value
INVOICES = Collection.INVOICES.value


@dataclass(frozen=True)
class RuntimeContext:
    """Configuration plus the document store every operation works against."""

    settings: data_manager.ConfigSettings
    store: data_manager.WorkbookStore

    @property
    def workbook(self):
        return self.store.workbook


@dataclass(frozen=True)
class Actor:
    """Authenticated user on whose behalf an operation runs."""

    id: str
    username: str


@dataclass(frozen=True)
class ClientSummary:
    """A SALE customer as reconstructed from the invoice log."""

    name: str
    phone: str
    last_invoice_number: int


@dataclass(frozen=True)
class InvoiceTotals:
    """Aggregate figures over the invoice log."""

    invoice_count: int
    total_amount: Decimal


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or, when it is ``None``, the current UTC time."""

    return candidate if candidate is not None else datetime.now(UTC)


def generate_document_id(*, prefix: str = "INV", when: Optional[datetime] = None) -> str:
    """Generate a sortable document id such as ``INV20250101120000000000-1a2b3c``.

    The timestamp keeps ids in creation order; the random suffix keeps two
    documents created in the same microsecond apart.
    """

    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:6]}"


# ---------------------------------------------------------------------------
# Runtime context
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and open the warehouse workbook.

    Args:
        config_path (Path | None): Optional override for ``config.ini``. When
            omitted the data layer searches upward from the working directory.

    Returns:
        RuntimeContext: Settings plus a :class:`WorkbookStore` over the
            configured workbook.

    Raises:
        FileNotFoundError: If the configuration file or workbook is missing.
        KeyError: When mandatory configuration options are missing.
        PersistenceError: If the workbook cannot be read.
    """

    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, store=data_manager.WorkbookStore(workbook))


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to work against a workbook or config from another schema version.

    Both the version declared in ``config.ini`` and the one stored in the
    workbook's ``Meta`` sheet must equal ``EXPECTED_SCHEMA_VERSION``.

    Raises:
        PersistenceError: On any mismatch.
    """

    found = {
        "config": context.settings.schema_version,
        "workbook": data_manager.read_schema_version(context.workbook),
    }
    for source, version in found.items():
        if version != EXPECTED_SCHEMA_VERSION:
            log.error(
                "Schema mismatch in %s: expected %s, found %s",
                source,
                EXPECTED_SCHEMA_VERSION,
                version,
            )
            raise PersistenceError(
                f"Schema mismatch in {source}: expected {EXPECTED_SCHEMA_VERSION}, found {version}"
            )
    log.debug("Schema version '%s' validated", EXPECTED_SCHEMA_VERSION)


def persist_context(context: RuntimeContext) -> None:
    """Write the in-memory workbook back to the configured data file."""

    data_manager.save_workbook(context.workbook, destination=context.settings.data_file)
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook from disk, dropping unsaved modifications."""

    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, store=data_manager.WorkbookStore(workbook))


def default_actor(context: RuntimeContext) -> Actor:
    return Actor(id=context.settings.default_actor_id, username=context.settings.default_actor_username)


# ---------------------------------------------------------------------------
# Stock items
# ---------------------------------------------------------------------------


def register_stock_item(
    context: RuntimeContext,
    *,
    item_name: str,
    item_code: str,
    unit_price: Decimal,
    color: Optional[str] = None,
    warehouse_id: Optional[str] = None,
    cartons_count: int = 0,
    bottles_per_carton: int = 0,
    single_bottles: int = 0,
    item_id: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.StockItemRow:
    """Add a stock item whose opening quantity comes from its packaging.

    The opening quantity is ``cartons_count * bottles_per_carton +
    single_bottles``; it is recorded both as ``added_quantity`` and as the
    initial ``remaining_quantity``. From then on only the stock engine moves
    the remaining quantity.

    Raises:
        ValidationError: If a name/code is missing, a count or price is
            negative, or ``item_id`` is already taken.
    """

    if not item_name or not item_code:
        raise ValidationError("Stock items need a name and a code", field="item_name")
    counts = {
        "cartons_count": cartons_count,
        "bottles_per_carton": bottles_per_carton,
        "single_bottles": single_bottles,
    }
    for name, value in counts.items():
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValidationError(f"{name} must be a whole number >= 0", field=name)
    if Decimal(str(unit_price)) < Decimal("0"):
        raise ValidationError("Unit price must be zero or positive", field="unit_price")

    when = _resolve_timestamp(timestamp)
    added = cartons_count * bottles_per_carton + single_bottles
    record = data_manager.StockItemRow(
        item_id=item_id or generate_document_id(prefix="ITM", when=when),
        item_name=item_name,
        item_code=item_code,
        color=color or None,
        warehouse_id=warehouse_id or context.settings.default_warehouse_id,
        remaining_quantity=added,
        unit_price=Decimal(str(unit_price)),
        cartons_count=cartons_count,
        bottles_per_carton=bottles_per_carton,
        single_bottles=single_bottles,
        added_quantity=added,
        created_at=when.isoformat(),
        updated_at=when.isoformat(),
    )
    document = data_manager.serialize_stock_item(record)
    stock_engine.commit_batch(
        context.store,
        [data_manager.set_op(ITEMS, record.item_id, document, create_only=True)],
    )
    log.info("Registered stock item '%s' (%s) with %d units", record.item_id, record.item_code, added)
    return record


def get_stock_item(context: RuntimeContext, item_id: str) -> data_manager.StockItemRow:
    """Load one stock item or raise :class:`NotFoundError`."""

    document = context.store.get(ITEMS, item_id)
    if document is None:
        log.warning("Stock item lookup failed for id '%s'", item_id)
        raise NotFoundError("Stock item", item_id)
    return data_manager.deserialize_stock_item(document)


def list_stock_items(context: RuntimeContext, *, warehouse_id: Optional[str] = None) -> List[data_manager.StockItemRow]:
    """Return stock items, optionally limited to one warehouse, ordered by name."""

    filters = {"warehouse_id": warehouse_id} if warehouse_id else None
    documents = context.store.query(ITEMS, filters, order_by="item_name")
    return [data_manager.deserialize_stock_item(document) for document in documents]


def calculate_stock_levels(context: RuntimeContext) -> Dict[str, int]:
    """Map every stock item id to its current remaining quantity."""

    return {item.item_id: item.remaining_quantity for item in list_stock_items(context)}


# ---------------------------------------------------------------------------
# Invoice numbering and reads
# ---------------------------------------------------------------------------


def next_invoice_number(context: RuntimeContext) -> int:
    """Return one more than the highest invoice number assigned so far.

    The first invoice is number 1. The read and the later write are separate
    steps, so two writers allocating at the same moment can receive the same
    number; call this immediately before committing to keep that window
    small.

    Raises:
        PersistenceError: If the invoice collection cannot be read. No number
            is reserved in that case.
    """

    documents = context.store.query(INVOICES)
    highest = max((data_manager.coerce_int(document.get("invoice_number")) for document in documents), default=0)
    return highest + 1


def get_invoice(context: RuntimeContext, invoice_id: str) -> data_manager.InvoiceRecord:
    """Load one invoice or raise :class:`NotFoundError`."""

    document = context.store.get(INVOICES, invoice_id)
    if document is None:
        log.warning("Invoice lookup failed for id '%s'", invoice_id)
        raise NotFoundError("Invoice", invoice_id)
    return data_manager.deserialize_invoice(document)


def list_invoices(
    context: RuntimeContext,
    *,
    invoice_type: Optional[InvoiceType] = None,
    search: Optional[str] = None,
) -> List[data_manager.InvoiceRecord]:
    """Return invoices newest first, optionally filtered by type and text.

    ``search`` is matched case-insensitively against the invoice number, the
    client, supplier and recipient names, the client phone and the creator's
    username.
    """

    filters = {"invoice_type": InvoiceType(invoice_type).value} if invoice_type else None
    records = [data_manager.deserialize_invoice(document) for document in context.store.query(INVOICES, filters)]

    if search:
        needle = search.strip().lower()
        records = [record for record in records if needle in _search_text(record)]

    records.sort(key=lambda record: (record.created_at, record.invoice_number), reverse=True)
    return records


def _search_text(record: data_manager.InvoiceRecord) -> str:
    parts = [
        str(record.invoice_number),
        record.client_name,
        record.client_phone,
        record.supplier_name,
        record.recipient,
        record.created_by_username,
    ]
    return " ".join(part for part in parts if part).lower()


def list_clients(context: RuntimeContext) -> List[ClientSummary]:
    """Rebuild the customer list from SALE invoices, one entry per phone.

    When the same phone appears on several invoices the most recent one
    supplies the name and the ``last_invoice_number``.
    """

    clients: Dict[str, ClientSummary] = {}
    for record in reversed(list_invoices(context, invoice_type=InvoiceType.SALE)):
        if record.client_name and record.client_phone:
            clients[record.client_phone] = ClientSummary(
                name=record.client_name,
                phone=record.client_phone,
                last_invoice_number=record.invoice_number,
            )
    return sorted(clients.values(), key=lambda client: client.name.lower())


def invoice_totals(context: RuntimeContext) -> InvoiceTotals:
    """Count every invoice and sum the amounts of all but factory dispatches."""

    records = list_invoices(context)
    total = sum(
        (record.total_amount for record in records if record.invoice_type is not InvoiceType.FACTORY_DISPATCH),
        Decimal("0"),
    )
    return InvoiceTotals(invoice_count=len(records), total_amount=total)


# ---------------------------------------------------------------------------
# Invoice lifecycle
# ---------------------------------------------------------------------------


def validate_draft(draft: InvoiceDraft) -> None:
    """Check that ``draft`` may be persisted.

    Raises:
        ValidationError: If the type cannot be drafted, the party is missing,
            a SALE lacks a well-formed phone, there are no lines, or a line
            has a non-positive quantity or (for priced types) unit price.
    """

    try:
        invoice_type = InvoiceType(draft.invoice_type)
    except ValueError as exc:
        raise ValidationError(f"Unknown invoice type: {draft.invoice_type!r}", field="invoice_type") from exc
    if invoice_type not in DRAFT_TYPES:
        log.warning("Rejected draft of non-draftable type %s", invoice_type.value)
        raise ValidationError(f"Invoices of type {invoice_type.value} cannot be drafted", field="invoice_type")

    if not (draft.party or "").strip():
        log.warning("Rejected %s draft without a party", invoice_type.value)
        raise ValidationError("Client, supplier or recipient name is required", field="party")

    if invoice_type is InvoiceType.SALE:
        if not draft.client_phone:
            log.warning("Rejected SALE draft without a client phone")
            raise ValidationError("Client phone is required for sales", field="client_phone")
        if not PHONE_PATTERN.fullmatch(draft.client_phone):
            log.warning("Rejected SALE draft with malformed phone %r", draft.client_phone)
            raise ValidationError("Client phone may only contain digits and a leading '+'", field="client_phone")

    if not draft.lines:
        log.warning("Rejected %s draft without lines", invoice_type.value)
        raise ValidationError("Add at least one line", field="lines")

    for line in draft.lines:
        if isinstance(line.quantity, bool) or not isinstance(line.quantity, int) or line.quantity <= 0:
            log.warning("Rejected line for '%s' with quantity %r", line.stock_item_id, line.quantity)
            raise ValidationError(
                f"Quantity for item '{line.stock_item_id}' must be a positive whole number",
                field="quantity",
            )
        if line.unit_price is not None and not isinstance(line.unit_price, Decimal):
            log.warning("Rejected line for '%s' with non-decimal unit price %r", line.stock_item_id, line.unit_price)
            raise ValidationError(
                f"Unit price for item '{line.stock_item_id}' must be a Decimal",
                field="unit_price",
            )
        if invoice_type in PRICED_TYPES and (line.unit_price is None or line.unit_price <= Decimal("0")):
            log.warning("Rejected line for '%s' with unit price %r", line.stock_item_id, line.unit_price)
            raise ValidationError(
                f"Unit price for item '{line.stock_item_id}' must be greater than zero",
                field="unit_price",
            )


def _party_fields(draft: InvoiceDraft) -> Dict[str, Optional[str]]:
    invoice_type = InvoiceType(draft.invoice_type)
    party = draft.party.strip()
    return {
        "client_name": party if invoice_type is InvoiceType.SALE else None,
        "client_phone": draft.client_phone if invoice_type is InvoiceType.SALE else None,
        "supplier_name": party if invoice_type is InvoiceType.PURCHASE else None,
        "recipient": party if invoice_type is InvoiceType.FACTORY_DISPATCH else None,
    }


def create_invoice(
    context: RuntimeContext,
    draft: InvoiceDraft,
    actor: Actor,
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.InvoiceRecord:
    """Number and persist ``draft``, moving stock in the same atomic batch.

    Args:
        context (RuntimeContext): Runtime context providing the store.
        draft (InvoiceDraft): Validated client-side draft.
        actor (Actor): User creating the invoice.
        timestamp (datetime | None): Creation time, defaults to now.

    Returns:
        InvoiceRecord: The persisted invoice with its assigned number and
            ``version`` 1.

    Raises:
        ValidationError: If the draft is invalid.
        NotFoundError: If a line references an unknown stock item.
        InsufficientStockError: If a SALE or dispatch exceeds stock.
        PersistenceError: If the store cannot be read or written.
    """

    validate_draft(draft)
    when = _resolve_timestamp(timestamp)
    invoice_type = InvoiceType(draft.invoice_type)

    deltas = stock_engine.line_deltas(draft.lines, stock_engine.direction_for(invoice_type))
    ops = stock_engine.plan_adjustments(context.store, deltas, timestamp=when)

    number = next_invoice_number(context)
    record = data_manager.InvoiceRecord(
        invoice_id=generate_document_id(prefix="INV", when=when),
        invoice_type=invoice_type,
        invoice_number=number,
        lines=tuple(draft.lines),
        notes=draft.notes or "",
        total_amount=compute_total(invoice_type, draft.lines),
        created_by=actor.id,
        created_by_username=actor.username,
        version=1,
        created_at=when.isoformat(),
        updated_at=when.isoformat(),
        **_party_fields(draft),
    )
    ops.append(
        data_manager.set_op(INVOICES, record.invoice_id, data_manager.serialize_invoice(record), create_only=True)
    )
    stock_engine.commit_batch(context.store, ops)

    log.info(
        "Created %s invoice #%d '%s' by '%s' (%d lines, total=%s)",
        invoice_type.value,
        number,
        record.invoice_id,
        actor.username,
        len(record.lines),
        record.total_amount,
    )
    return record


def _require_version(record: data_manager.InvoiceRecord, expected_version: Optional[int]) -> None:
    if expected_version is not None and expected_version != record.version:
        log.warning(
            "Stale write on invoice '%s': expected version %s, stored %s",
            record.invoice_id,
            expected_version,
            record.version,
        )
        raise ConcurrentModificationError(record.invoice_id, expected_version, record.version)


def update_invoice(
    context: RuntimeContext,
    invoice_id: str,
    draft: InvoiceDraft,
    actor: Actor,
    *,
    expected_version: Optional[int] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.InvoiceRecord:
    """Replace the contents of an invoice and reconcile stock accordingly.

    The stock effect of the stored invoice is compensated and the effect of
    ``draft`` applied, but both are folded into one net delta per item and
    committed together with the document update. Availability is therefore
    judged against the quantity *after* compensation: raising a SALE line
    from 10 to 20 needs only 10 more units on hand. The invoice number and
    creator are kept; ``version`` is incremented.

    Args:
        context (RuntimeContext): Runtime context providing the store.
        invoice_id (str): Invoice to edit.
        draft (InvoiceDraft): New contents.
        actor (Actor): User performing the edit.
        expected_version (int | None): Version the caller last saw. When
            given, a different stored version is rejected up front.
        timestamp (datetime | None): Update time, defaults to now.

    Returns:
        InvoiceRecord: The updated invoice.

    Raises:
        NotFoundError: If the invoice or a referenced stock item is missing.
        ValidationError: If the draft is invalid or the invoice is a factory
            return.
        InsufficientStockError: If the net effect exceeds stock.
        ConcurrentModificationError: If the invoice changed since it was
            read.
        PersistenceError: If the store cannot be read or written.
    """

    old = get_invoice(context, invoice_id)
    if old.invoice_type is InvoiceType.FACTORY_RETURN:
        log.warning("Rejected edit of factory return '%s'", invoice_id)
        raise ValidationError("Factory return invoices cannot be edited", field="invoice_type")
    _require_version(old, expected_version)
    validate_draft(draft)

    when = _resolve_timestamp(timestamp)
    new_type = InvoiceType(draft.invoice_type)
    deltas = stock_engine.net_deltas(old.lines, old.invoice_type, draft.lines, new_type)
    ops = stock_engine.plan_adjustments(
        context.store,
        deltas,
        required_items=[line.stock_item_id for line in draft.lines],
        timestamp=when,
    )

    updated = replace(
        old,
        invoice_type=new_type,
        lines=tuple(draft.lines),
        notes=draft.notes or "",
        total_amount=compute_total(new_type, draft.lines),
        version=old.version + 1,
        updated_at=when.isoformat(),
        **_party_fields(draft),
    )
    document = data_manager.serialize_invoice(updated)
    document.pop("id")
    ops.append(data_manager.update_op(INVOICES, invoice_id, document, expected={"version": old.version}))
    stock_engine.commit_batch(context.store, ops)

    log.info(
        "Updated invoice #%d '%s' by '%s' to version %d (%d stock items adjusted)",
        updated.invoice_number,
        invoice_id,
        actor.username,
        updated.version,
        len(deltas),
    )
    return updated


def delete_invoice(
    context: RuntimeContext,
    invoice_id: str,
    actor: Actor,
    *,
    expected_version: Optional[int] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.InvoiceRecord:
    """Reverse an invoice's stock effect and remove the document.

    Both happen in one batch: if the reversal cannot be applied (for example
    a deleted PURCHASE whose stock was already sold) the invoice stays.

    Returns:
        InvoiceRecord: The invoice as it was before deletion.

    Raises:
        NotFoundError: If the invoice or a referenced stock item is missing.
        InsufficientStockError: If reversing would drive stock negative.
        ConcurrentModificationError: If the invoice changed since it was
            read.
        PersistenceError: If the store cannot be read or written.
    """

    old = get_invoice(context, invoice_id)
    _require_version(old, expected_version)

    when = _resolve_timestamp(timestamp)
    deltas = stock_engine.line_deltas(old.lines, stock_engine.inverse_direction_for(old.invoice_type))
    ops = stock_engine.plan_adjustments(context.store, deltas, timestamp=when)
    ops.append(data_manager.delete_op(INVOICES, invoice_id, expected={"version": old.version}))
    stock_engine.commit_batch(context.store, ops)

    log.info(
        "Deleted %s invoice #%d '%s' by '%s'",
        old.invoice_type.value,
        old.invoice_number,
        invoice_id,
        actor.username,
    )
    return old


def process_factory_return(
    context: RuntimeContext,
    dispatch_invoice_id: str,
    return_type: ReturnType,
    notes: Optional[str],
    actor: Actor,
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.InvoiceRecord:
    """Bring a factory dispatch's quantities back into the warehouse.

    A new FACTORY_RETURN invoice is created with a copy of the dispatch
    lines, a link to the dispatch, and a zero total; the dispatch itself is
    left untouched. Stock increases and the return document are committed
    together.

    Args:
        context (RuntimeContext): Runtime context providing the store.
        dispatch_invoice_id (str): Id of the FACTORY_DISPATCH invoice.
        return_type (ReturnType): What came back from the factory.
        notes (str | None): Free-form notes for the return.
        actor (Actor): User recording the return.
        timestamp (datetime | None): Creation time, defaults to now.

    Returns:
        InvoiceRecord: The persisted return invoice.

    Raises:
        NotFoundError: If the dispatch or one of its stock items is missing.
        ValidationError: If the source invoice is not a factory dispatch or
            ``return_type`` is unknown.
        PersistenceError: If the store cannot be read or written.
    """

    dispatch = get_invoice(context, dispatch_invoice_id)
    if dispatch.invoice_type is not InvoiceType.FACTORY_DISPATCH:
        log.warning(
            "Rejected factory return for '%s' of type %s",
            dispatch_invoice_id,
            dispatch.invoice_type.value,
        )
        raise ValidationError("Only factory dispatch invoices can be returned", field="invoice_type")
    try:
        return_type = ReturnType(return_type)
    except ValueError as exc:
        raise ValidationError(f"Unknown return type: {return_type!r}", field="return_type") from exc

    when = _resolve_timestamp(timestamp)
    deltas = stock_engine.line_deltas(dispatch.lines, stock_engine.direction_for(InvoiceType.FACTORY_RETURN))
    ops = stock_engine.plan_adjustments(context.store, deltas, timestamp=when)

    number = next_invoice_number(context)
    record = data_manager.InvoiceRecord(
        invoice_id=generate_document_id(prefix="RET", when=when),
        invoice_type=InvoiceType.FACTORY_RETURN,
        invoice_number=number,
        lines=tuple(replace(line) for line in dispatch.lines),
        client_name=dispatch.client_name,
        client_phone=None,
        supplier_name=dispatch.supplier_name,
        recipient=dispatch.recipient,
        notes=notes or "",
        total_amount=Decimal("0"),
        created_by=actor.id,
        created_by_username=actor.username,
        source_invoice_id=dispatch.invoice_id,
        source_invoice_number=dispatch.invoice_number,
        return_type=return_type.value,
        version=1,
        created_at=when.isoformat(),
        updated_at=when.isoformat(),
    )
    ops.append(
        data_manager.set_op(INVOICES, record.invoice_id, data_manager.serialize_invoice(record), create_only=True)
    )
    stock_engine.commit_batch(context.store, ops)

    log.info(
        "Recorded factory return #%d '%s' for dispatch #%d '%s' by '%s'",
        number,
        record.invoice_id,
        dispatch.invoice_number,
        dispatch.invoice_id,
        actor.username,
    )
    return record
