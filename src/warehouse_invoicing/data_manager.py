"""Data access layer for warehouse invoicing.

This module owns every read from and write to the warehouse workbook. The
business rules live in :mod:`stock_engine` and :mod:`core_logic`; nothing
here knows what an invoice *means*.

The public API covers four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. The document store: :class:`WorkbookStore` treats every worksheet as a
   collection of keyed documents and offers single-document reads, filtered
   queries, and all-or-nothing batched writes with commutative increments.
4. Record mapping: converting store documents into the typed stock item and
   invoice records consumed by the business layer.
"""


from __future__ import annotations

import configparser
import json
import threading
import zipfile
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook
from openpyxl.utils.exceptions import InvalidFileException
import openpyxl

from . import log
from .constants import Collection, InvoiceType
from .errors import PersistenceError


CONFIG_FILE_NAME = "config.ini"
WAREHOUSE_ITEMS_SHEET = Collection.WAREHOUSE_ITEMS.value
INVOICES_SHEET = Collection.INVOICES.value
META_SHEET = Collection.META.value

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    WAREHOUSE_ITEMS_SHEET: [
        "id",
        "item_name",
        "item_code",
        "color",
        "warehouse_id",
        "remaining_quantity",
        "unit_price",
        "cartons_count",
        "bottles_per_carton",
        "single_bottles",
        "added_quantity",
        "created_at",
        "updated_at",
    ],
    INVOICES_SHEET: [
        "id",
        "invoice_type",
        "invoice_number",
        "details",
        "client_name",
        "client_phone",
        "supplier_name",
        "recipient",
        "notes",
        "total_amount",
        "created_by",
        "created_by_username",
        "source_invoice_id",
        "source_invoice_number",
        "return_type",
        "version",
        "created_at",
        "updated_at",
    ],
    META_SHEET: ["key", "value"],
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    company_name: str
    schema_version: str
    default_actor_id: str
    default_actor_username: str
    default_warehouse_id: str


@dataclass(frozen=True)
class StockItemRow:
    """In-memory view of a document from the ``warehouseItems`` sheet."""

    item_id: str
    item_name: str
    item_code: str
    color: Optional[str]
    warehouse_id: str
    remaining_quantity: int
    unit_price: Decimal
    cartons_count: int = 0
    bottles_per_carton: int = 0
    single_bottles: int = 0
    added_quantity: int = 0
    created_at: str = ""
    updated_at: str = ""


@dataclass(frozen=True)
class InvoiceLine:
    """One row of an invoice, with item details snapshotted at add time."""

    stock_item_id: str
    item_name: str
    item_code: str
    color: Optional[str]
    quantity: int
    unit_price: Optional[Decimal] = None
    unit: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class InvoiceRecord:
    """In-memory view of a document from the ``invoices`` sheet."""

    invoice_id: str
    invoice_type: InvoiceType
    invoice_number: int
    lines: Tuple[InvoiceLine, ...]
    client_name: Optional[str]
    client_phone: Optional[str]
    supplier_name: Optional[str]
    recipient: Optional[str]
    notes: str
    total_amount: Decimal
    created_by: str
    created_by_username: str
    source_invoice_id: Optional[str] = None
    source_invoice_number: Optional[int] = None
    return_type: Optional[str] = None
    version: int = 1
    created_at: str = ""
    updated_at: str = ""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for
    ``CONFIG_FILE_NAME``; the first match wins.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory contains ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser holding the raw configuration data.
            Required entries are validated later by :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` must define ``DataFile``, ``CompanyName`` and
    ``SchemaVersion``; ``[Defaults]`` must define ``ActorId`` and
    ``ActorUsername``. ``WarehouseId`` is optional and defaults to ``main``.
    Relative ``DataFile`` entries are anchored to ``base_path`` (or the
    current working directory).

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to resolve a relative data
            file path.

    Returns:
        ConfigSettings: Immutable settings with an absolute data file path.

    Raises:
        KeyError: If a required section or option is missing.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        company_name = parser.get("System", "CompanyName")
        schema_version = parser.get("System", "SchemaVersion")
        default_actor_id = parser.get("Defaults", "ActorId")
        default_actor_username = parser.get("Defaults", "ActorUsername")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    default_warehouse_id = parser.get("Defaults", "WarehouseId", fallback="main")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        company_name=company_name,
        schema_version=schema_version,
        default_actor_id=default_actor_id,
        default_actor_username=default_actor_username,
        default_warehouse_id=default_warehouse_id,
    )


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def open_workbook(data_file: Path) -> Workbook:
    """Open the warehouse workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the workbook.

    Returns:
        Workbook: Workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
        PersistenceError: If the file exists but is not a readable workbook.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    try:
        return openpyxl.load_workbook(data_file)
    except (InvalidFileException, zipfile.BadZipFile, OSError, KeyError) as exc:
        log.error("Unable to open workbook '%s': %s", data_file, exc)
        raise PersistenceError(f"Unable to open workbook {data_file}: {exc}") from exc


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk at an explicitly provided destination.

    Parent directories are created on demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the workbook.

    Raises:
        PersistenceError: If the file cannot be written.
    """

    dest = Path(destination).expanduser().resolve()
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        workbook.save(dest)
    except OSError as exc:
        log.error("Unable to save workbook '%s': %s", dest, exc)
        raise PersistenceError(f"Unable to save workbook {dest}: {exc}") from exc


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


def read_schema_version(workbook: Workbook) -> Optional[str]:
    """Return the ``schema_version`` stored in the ``Meta`` sheet, if any."""

    if META_SHEET not in workbook.sheetnames:
        return None
    for key, value in workbook[META_SHEET].iter_rows(min_row=2, max_col=2, values_only=True):
        if key == "schema_version":
            return None if value is None else str(value)
    return None


# ---------------------------------------------------------------------------
# Document store
# ---------------------------------------------------------------------------


class WriteAction(str, Enum):
    """Kinds of single-document writes a batch may contain."""

    SET = "SET"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class Increment:
    """Field value that adds ``delta`` to whatever the field holds at commit time.

    ``minimum`` rejects the whole batch if the resulting value would drop
    below it.
    """

    delta: int
    minimum: Optional[int] = None


@dataclass(frozen=True)
class WriteOp:
    """One keyed write inside an atomic batch.

    ``expected`` maps field names to the values the stored document must hold
    for the batch to commit. ``create_only`` makes a ``SET`` fail when the
    document already exists.
    """

    action: WriteAction
    collection: str
    doc_id: str
    fields: Mapping[str, Any] = field(default_factory=dict)
    expected: Mapping[str, Any] = field(default_factory=dict)
    create_only: bool = False


class DocumentMissingError(PersistenceError):
    """Raised when a batch targets a document that is not in the store."""

    def __init__(self, collection: str, doc_id: str) -> None:
        super().__init__(f"Document '{doc_id}' not found in '{collection}'")
        self.collection = collection
        self.doc_id = doc_id


class PreconditionFailed(PersistenceError):
    """Raised when a batch precondition or increment floor does not hold."""

    def __init__(self, collection: str, doc_id: str, field_name: str, expected: Any, actual: Any) -> None:
        super().__init__(
            f"Precondition failed on {collection}/{doc_id}.{field_name}: expected {expected!r}, found {actual!r}"
        )
        self.collection = collection
        self.doc_id = doc_id
        self.field_name = field_name
        self.expected = expected
        self.actual = actual


def set_op(collection: str, doc_id: str, fields: Mapping[str, Any], *, create_only: bool = False) -> WriteOp:
    return WriteOp(WriteAction.SET, collection, doc_id, dict(fields), create_only=create_only)


def update_op(
    collection: str,
    doc_id: str,
    fields: Mapping[str, Any],
    *,
    expected: Optional[Mapping[str, Any]] = None,
) -> WriteOp:
    return WriteOp(WriteAction.UPDATE, collection, doc_id, dict(fields), expected=dict(expected or {}))


def delete_op(collection: str, doc_id: str, *, expected: Optional[Mapping[str, Any]] = None) -> WriteOp:
    return WriteOp(WriteAction.DELETE, collection, doc_id, expected=dict(expected or {}))


class WorkbookStore:
    """Keyed document store backed by the worksheets of one workbook.

    Each worksheet is a collection: the header row names the fields and every
    following non-empty row is one document keyed by its ``id`` column. A
    re-entrant lock serialises reads and batches so that increments applied
    by concurrent callers in the same process compose instead of overwriting
    each other.
    """

    def __init__(self, workbook: Workbook) -> None:
        self.workbook = workbook
        self._lock = threading.RLock()

    # -- reads --------------------------------------------------------------

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Return the document stored under ``doc_id`` or ``None``.

        Raises:
            PersistenceError: If ``collection`` is not a sheet of the workbook.
        """

        with self._lock:
            sheet = self._sheet(collection)
            headers = self._headers(sheet)
            row_index = self._locate_row(sheet, headers, doc_id)
            if row_index is None:
                return None
            values = next(sheet.iter_rows(min_row=row_index, max_row=row_index, values_only=True))
            return self._to_document(headers, values)

    def query(
        self,
        collection: str,
        filters: Optional[Mapping[str, Any]] = None,
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> List[Dict[str, Any]]:
        """Return every document matching ``filters`` (field equality).

        Args:
            collection (str): Sheet name to scan.
            filters (Mapping[str, Any] | None): Field/value pairs a document
                must equal to be returned.
            order_by (str | None): Field to sort on. Documents missing the
                field sort first.
            descending (bool): Reverse the sort order.

        Returns:
            list[dict[str, Any]]: Matching documents in sheet order unless
                ``order_by`` is given.

        Raises:
            PersistenceError: If the collection or a referenced field is
                unknown.
        """

        with self._lock:
            sheet = self._sheet(collection)
            headers = self._headers(sheet)
            for name in [*(filters or {}), *([order_by] if order_by else [])]:
                if name not in headers:
                    raise PersistenceError(f"Unknown field '{name}' in collection '{collection}'")

            documents = [
                self._to_document(headers, values)
                for values in sheet.iter_rows(min_row=2, values_only=True)
                if any(cell is not None for cell in values)
            ]

        if filters:
            documents = [
                document
                for document in documents
                if all(document.get(name) == value for name, value in filters.items())
            ]
        if order_by:
            documents.sort(
                key=lambda document: (document.get(order_by) is not None, document.get(order_by) or 0),
                reverse=descending,
            )
        return documents

    # -- writes -------------------------------------------------------------

    def batch_write(self, ops: Sequence[WriteOp]) -> None:
        """Commit ``ops`` atomically: every write lands, or none does.

        All preconditions (document existence, ``expected`` values,
        ``create_only`` and increment floors) are checked against a projection
        of the batch before the first cell is touched. If applying the writes
        still fails, the touched sheets are restored from a snapshot.

        Args:
            ops (Sequence[WriteOp]): Writes to commit, applied in order.

        Raises:
            DocumentMissingError: If an UPDATE or DELETE targets a missing
                document.
            PreconditionFailed: If an ``expected`` value, ``create_only`` flag
                or increment floor does not hold.
            PersistenceError: For unknown collections/fields or write failures.
        """

        if not ops:
            return

        with self._lock:
            self._validate_batch(ops)
            touched = {op.collection for op in ops}
            snapshots = {name: self._snapshot(self._sheet(name)) for name in touched}
            try:
                for op in ops:
                    self._apply(op)
            except Exception as exc:
                for name, rows in snapshots.items():
                    self._restore(self._sheet(name), rows)
                log.error("Batch of %d writes rolled back: %s", len(ops), exc)
                if isinstance(exc, PersistenceError):
                    raise
                raise PersistenceError(f"Batch write failed: {exc}") from exc

        log.debug("Committed batch of %d writes across %s", len(ops), ", ".join(sorted(touched)))

    def _validate_batch(self, ops: Sequence[WriteOp]) -> None:
        projected: Dict[Tuple[str, str], Optional[Dict[str, Any]]] = {}

        for op in ops:
            key = (op.collection, op.doc_id)
            headers = self._headers(self._sheet(op.collection))
            for name in [*op.fields, *op.expected]:
                if name not in headers:
                    raise PersistenceError(f"Unknown field '{name}' in collection '{op.collection}'")

            if key not in projected:
                projected[key] = self.get(op.collection, op.doc_id)
            current = projected[key]

            if op.expected and current is None:
                raise DocumentMissingError(op.collection, op.doc_id)
            for name, value in op.expected.items():
                if current.get(name) != value:
                    raise PreconditionFailed(op.collection, op.doc_id, name, value, current.get(name))

            if op.action is WriteAction.SET:
                if op.create_only and current is not None:
                    raise PreconditionFailed(op.collection, op.doc_id, "id", None, op.doc_id)
                projected[key] = {name: None for name in headers}
                projected[key].update(self._resolve_fields(op, {}))
                projected[key]["id"] = op.doc_id
            elif op.action is WriteAction.UPDATE:
                if current is None:
                    raise DocumentMissingError(op.collection, op.doc_id)
                updated = dict(current)
                updated.update(self._resolve_fields(op, current))
                projected[key] = updated
            else:
                if current is None:
                    raise DocumentMissingError(op.collection, op.doc_id)
                projected[key] = None

    @staticmethod
    def _resolve_fields(op: WriteOp, current: Mapping[str, Any]) -> Dict[str, Any]:
        resolved: Dict[str, Any] = {}
        for name, value in op.fields.items():
            if isinstance(value, Increment):
                base = current.get(name) or 0
                result = int(base) + value.delta
                if value.minimum is not None and result < value.minimum:
                    raise PreconditionFailed(op.collection, op.doc_id, name, f">= {value.minimum}", result)
                resolved[name] = result
            else:
                resolved[name] = value
        return resolved

    def _apply(self, op: WriteOp) -> None:
        sheet = self._sheet(op.collection)
        headers = self._headers(sheet)
        row_index = self._locate_row(sheet, headers, op.doc_id)

        if op.action is WriteAction.DELETE:
            sheet.delete_rows(row_index)
            return

        if op.action is WriteAction.SET:
            values = self._resolve_fields(op, {})
            values["id"] = op.doc_id
            if row_index is None:
                self._append_row(sheet, [values.get(name) for name in headers])
                return
            for column, name in enumerate(headers, start=1):
                sheet.cell(row=row_index, column=column).value = values.get(name)
            return

        current_values = next(sheet.iter_rows(min_row=row_index, max_row=row_index, values_only=True))
        current = self._to_document(headers, current_values)
        for name, value in self._resolve_fields(op, current).items():
            sheet.cell(row=row_index, column=headers.index(name) + 1).value = value

    # -- sheet helpers --------------------------------------------------------

    def _sheet(self, collection: str):
        if collection not in self.workbook.sheetnames:
            raise PersistenceError(f"Unknown collection: {collection}")
        return self.workbook[collection]

    @staticmethod
    def _headers(sheet) -> List[str]:
        return [cell.value for cell in sheet[1] if cell.value is not None]

    @staticmethod
    def _locate_row(sheet, headers: List[str], doc_id: str) -> Optional[int]:
        key_index = headers.index("id")
        for row_index, values in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
            if values and values[key_index] is not None and str(values[key_index]) == str(doc_id):
                return row_index
        return None

    @staticmethod
    def _to_document(headers: List[str], values: Sequence[Any]) -> Dict[str, Any]:
        padded = list(values) + [None] * (len(headers) - len(values))
        return dict(zip(headers, padded))

    @staticmethod
    def _snapshot(sheet) -> List[Tuple[Any, ...]]:
        return [tuple(values) for values in sheet.iter_rows(min_row=2, values_only=True)]

    @staticmethod
    def _append_row(sheet, values: Sequence[Any]) -> None:
        # Worksheet.append() keeps a row cursor that delete_rows() does not
        # rewind, so rows are written explicitly after the last used row.
        row_index = sheet.max_row + 1
        for column, value in enumerate(values, start=1):
            sheet.cell(row=row_index, column=column, value=value)

    @classmethod
    def _restore(cls, sheet, rows: Iterable[Tuple[Any, ...]]) -> None:
        if sheet.max_row >= 2:
            sheet.delete_rows(2, sheet.max_row - 1)
        for values in rows:
            cls._append_row(sheet, values)


# ---------------------------------------------------------------------------
# Record mapping
# ---------------------------------------------------------------------------


def coerce_int(raw: Any, default: int = 0) -> int:
    if raw is None or raw == "":
        return default
    return int(Decimal(str(raw)))


def _to_decimal(raw: Any, default: str = "0") -> Decimal:
    if raw is None or raw == "":
        return Decimal(default)
    return Decimal(str(raw))


def _to_text(raw: Any) -> Optional[str]:
    return None if raw is None else str(raw)


def serialize_stock_item(record: StockItemRow) -> Dict[str, Any]:
    """Convert a stock item record into a ``warehouseItems`` document."""

    return {
        "id": record.item_id,
        "item_name": record.item_name,
        "item_code": record.item_code,
        "color": record.color,
        "warehouse_id": record.warehouse_id,
        "remaining_quantity": record.remaining_quantity,
        "unit_price": record.unit_price,
        "cartons_count": record.cartons_count,
        "bottles_per_carton": record.bottles_per_carton,
        "single_bottles": record.single_bottles,
        "added_quantity": record.added_quantity,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    }


def deserialize_stock_item(document: Mapping[str, Any]) -> StockItemRow:
    """Convert a ``warehouseItems`` document into a typed record.

    Excel hands numbers back as ``int`` or ``float`` regardless of how they
    were written, so quantities are coerced to ``int`` and prices to
    :class:`~decimal.Decimal` via their string form.
    """

    return StockItemRow(
        item_id=str(document["id"]),
        item_name=str(document.get("item_name") or ""),
        item_code=str(document.get("item_code") or ""),
        color=_to_text(document.get("color")),
        warehouse_id=str(document.get("warehouse_id") or ""),
        remaining_quantity=coerce_int(document.get("remaining_quantity")),
        unit_price=_to_decimal(document.get("unit_price")),
        cartons_count=coerce_int(document.get("cartons_count")),
        bottles_per_carton=coerce_int(document.get("bottles_per_carton")),
        single_bottles=coerce_int(document.get("single_bottles")),
        added_quantity=coerce_int(document.get("added_quantity")),
        created_at=str(document.get("created_at") or ""),
        updated_at=str(document.get("updated_at") or ""),
    )


def serialize_lines(lines: Iterable[InvoiceLine]) -> str:
    """Encode invoice lines as the JSON text stored in the ``details`` cell.

    Prices are written as strings so no precision is lost to floats.
    """

    payload = []
    for line in lines:
        entry: Dict[str, Any] = {
            "stock_item_id": line.stock_item_id,
            "item_name": line.item_name,
            "item_code": line.item_code,
            "color": line.color,
            "quantity": line.quantity,
        }
        if line.unit_price is not None:
            entry["unit_price"] = str(line.unit_price)
        if line.unit is not None:
            entry["unit"] = line.unit
        if line.notes is not None:
            entry["notes"] = line.notes
        payload.append(entry)
    return json.dumps(payload, ensure_ascii=False)


def deserialize_lines(raw: Any) -> Tuple[InvoiceLine, ...]:
    """Decode the ``details`` cell back into :class:`InvoiceLine` records.

    Raises:
        PersistenceError: If the cell does not hold a JSON list.
    """

    if raw is None or raw == "":
        return ()
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise PersistenceError(f"Corrupt invoice details: {exc}") from exc
    if not isinstance(payload, list):
        raise PersistenceError("Corrupt invoice details: expected a list of lines")

    return tuple(
        InvoiceLine(
            stock_item_id=str(entry["stock_item_id"]),
            item_name=str(entry.get("item_name") or ""),
            item_code=str(entry.get("item_code") or ""),
            color=entry.get("color"),
            quantity=int(entry["quantity"]),
            unit_price=_to_decimal(entry["unit_price"]) if entry.get("unit_price") is not None else None,
            unit=entry.get("unit"),
            notes=entry.get("notes"),
        )
        for entry in payload
    )


def serialize_invoice(record: InvoiceRecord) -> Dict[str, Any]:
    """Convert an invoice record into an ``invoices`` document."""

    return {
        "id": record.invoice_id,
        "invoice_type": record.invoice_type.value,
        "invoice_number": record.invoice_number,
        "details": serialize_lines(record.lines),
        "client_name": record.client_name,
        "client_phone": record.client_phone,
        "supplier_name": record.supplier_name,
        "recipient": record.recipient,
        "notes": record.notes,
        "total_amount": record.total_amount,
        "created_by": record.created_by,
        "created_by_username": record.created_by_username,
        "source_invoice_id": record.source_invoice_id,
        "source_invoice_number": record.source_invoice_number,
        "return_type": record.return_type,
        "version": record.version,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    }


def deserialize_invoice(document: Mapping[str, Any]) -> InvoiceRecord:
    """Convert an ``invoices`` document into a typed record.

    Raises:
        PersistenceError: If the stored type is unknown or the details cell
            is corrupt.
    """

    try:
        invoice_type = InvoiceType(document.get("invoice_type"))
    except ValueError as exc:
        raise PersistenceError(f"Unknown invoice type: {document.get('invoice_type')!r}") from exc

    source_number = document.get("source_invoice_number")
    return InvoiceRecord(
        invoice_id=str(document["id"]),
        invoice_type=invoice_type,
        invoice_number=coerce_int(document.get("invoice_number")),
        lines=deserialize_lines(document.get("details")),
        client_name=_to_text(document.get("client_name")),
        client_phone=_to_text(document.get("client_phone")),
        supplier_name=_to_text(document.get("supplier_name")),
        recipient=_to_text(document.get("recipient")),
        notes=str(document.get("notes") or ""),
        total_amount=_to_decimal(document.get("total_amount")),
        created_by=str(document.get("created_by") or ""),
        created_by_username=str(document.get("created_by_username") or ""),
        source_invoice_id=_to_text(document.get("source_invoice_id")),
        source_invoice_number=None if source_number is None else coerce_int(source_number),
        return_type=_to_text(document.get("return_type")),
        version=coerce_int(document.get("version"), default=1),
        created_at=str(document.get("created_at") or ""),
        updated_at=str(document.get("updated_at") or ""),
    )
