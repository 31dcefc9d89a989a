"""Command-line entry points for the warehouse invoicing toolkit.

This module only wires argparse and turns command-line arguments into
drafts and calls on the business layer. The same parser configuration can
be reused by tests, scripts, or any other front-end that wants to expose
the package capabilities.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import composer, core_logic, log
from .constants import PRICED_TYPES, InvoiceType, ReturnType
from .data_manager import InvoiceRecord
from .errors import InvoicingError, ValidationError


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


@dataclass(frozen=True)
class LineArgument:
    """One ``--line`` value split into its parts."""

    item_id: str
    quantity: int
    unit_price: Optional[Decimal] = None
    unit: Optional[str] = None
    notes: Optional[str] = None


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="invoicing-cli",
        description="Command-line tools for the warehouse invoicing workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    parser.add_argument("--actor-id", default=None, help="Override the configured acting user id.")
    parser.add_argument("--actor-username", default=None, help="Override the configured acting username.")
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as invoices and returns."""
    specs = {
        "add-item": register_add_item_command(subparsers),
        "sale": register_invoice_command(subparsers, "sale", InvoiceType.SALE, "Record a sale invoice."),
        "purchase": register_invoice_command(
            subparsers, "purchase", InvoiceType.PURCHASE, "Record a purchase invoice."
        ),
        "dispatch": register_invoice_command(
            subparsers, "dispatch", InvoiceType.FACTORY_DISPATCH, "Record a dispatch to the factory."
        ),
        "update-invoice": register_update_invoice_command(subparsers),
        "delete-invoice": register_delete_invoice_command(subparsers),
        "factory-return": register_factory_return_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings."""
    specs = {
        "stock": register_stock_command(subparsers),
        "invoices": register_invoices_command(subparsers),
        "show-invoice": register_show_invoice_command(subparsers),
        "clients": register_clients_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-item``."""
    name = "add-item"
    help_text = "Register a new stock item in the warehouseItems sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-name", required=True)
        parser.add_argument("--item-code", required=True)
        parser.add_argument("--unit-price", required=True)
        parser.add_argument("--color", default=None)
        parser.add_argument("--warehouse-id", default=None)
        parser.add_argument("--cartons", type=int, default=0, help="Number of full cartons.")
        parser.add_argument("--per-carton", type=int, default=0, help="Units per carton.")
        parser.add_argument("--singles", type=int, default=0, help="Loose units outside cartons.")
        parser.add_argument("--item-id", default=None, help="Explicit id; generated when omitted.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_item)


def register_invoice_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    name: str,
    invoice_type: InvoiceType,
    help_text: str,
) -> CommandSpec:
    """Register the parser and executor for one of the invoice-creating commands."""
    line_format = "ITEM_ID:QTY:PRICE" if invoice_type in PRICED_TYPES else "ITEM_ID:QTY[:UNIT[:NOTES]]"

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--party", required=True, help="Client, supplier or recipient name.")
        if invoice_type is InvoiceType.SALE:
            parser.add_argument("--phone", required=True, help="Client phone number.")
        parser.add_argument("--line", action="append", required=True, metavar=line_format)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name, invoice_type=invoice_type.value)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_create_invoice)


def register_update_invoice_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-invoice``."""
    name = "update-invoice"
    help_text = "Replace the contents of an existing invoice."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--invoice-id", required=True)
        parser.add_argument("--party", default=None, help="New party name; keeps the current one when omitted.")
        parser.add_argument("--phone", default=None)
        parser.add_argument("--line", action="append", required=True)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.add_argument("--expected-version", type=int, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_invoice)


def register_delete_invoice_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-invoice``."""
    name = "delete-invoice"
    help_text = "Delete an invoice and reverse its stock effect."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--invoice-id", required=True)
        parser.add_argument("--expected-version", type=int, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_invoice)


def register_factory_return_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``factory-return``."""
    name = "factory-return"
    help_text = "Record goods coming back from a factory dispatch."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--dispatch-id", required=True)
        parser.add_argument(
            "--return-type",
            choices=[member.value for member in ReturnType],
            required=True,
        )
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_factory_return)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--warehouse-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_invoices_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``invoices``."""
    name = "invoices"
    help_text = "List invoices, newest first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--type", dest="invoice_type", choices=[member.value for member in InvoiceType])
        parser.add_argument("--search", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_invoices_report)


def register_show_invoice_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``show-invoice``."""
    name = "show-invoice"
    help_text = "Display one invoice with its lines."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--invoice-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_show_invoice)


def register_clients_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``clients``."""
    name = "clients"
    help_text = "List sale clients reconstructed from the invoice log."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_clients_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    context = core_logic.load_runtime_context(target)
    core_logic.ensure_schema_version(context)
    return context


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def parse_decimal(raw: str, *, field: str) -> Decimal:
    """Parse ``raw`` as a Decimal, raising :class:`ValidationError` on garbage."""
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise ValidationError(f"Invalid number for {field}: {raw!r}", field=field) from exc


def parse_line_argument(raw: str, invoice_type: InvoiceType) -> LineArgument:
    """Split a ``--line`` value according to the invoice type.

    Priced types expect ``ITEM_ID:QTY:PRICE``; dispatches accept
    ``ITEM_ID:QTY`` optionally followed by ``:UNIT`` and ``:NOTES``. Notes may
    themselves contain colons.
    """
    priced = InvoiceType(invoice_type) in PRICED_TYPES
    parts = raw.split(":", 3)
    if len(parts) < 2 or not parts[0]:
        raise ValidationError(f"Malformed line {raw!r}", field="lines")
    try:
        quantity = int(parts[1])
    except ValueError as exc:
        raise ValidationError(f"Invalid quantity in line {raw!r}", field="quantity") from exc

    if priced:
        if len(parts) != 3:
            raise ValidationError(f"Line {raw!r} must look like ITEM_ID:QTY:PRICE", field="lines")
        return LineArgument(item_id=parts[0], quantity=quantity, unit_price=parse_decimal(parts[2], field="unit_price"))
    return LineArgument(
        item_id=parts[0],
        quantity=quantity,
        unit=parts[2] if len(parts) > 2 else None,
        notes=parts[3] if len(parts) > 3 else None,
    )


def build_draft(
    context: core_logic.RuntimeContext,
    invoice_type: InvoiceType,
    party: str,
    raw_lines: Sequence[str],
    *,
    client_phone: Optional[str] = None,
    notes: Optional[str] = None,
    check_stock: bool = True,
) -> composer.InvoiceDraft:
    """Assemble a draft from CLI values, going through the composer rules."""
    draft = composer.new_draft(invoice_type, party, client_phone=client_phone, notes=notes or "")
    for raw in raw_lines:
        parsed = parse_line_argument(raw, invoice_type)
        item = core_logic.get_stock_item(context, parsed.item_id)
        draft = composer.add_line(
            draft,
            item,
            parsed.quantity,
            unit_price=parsed.unit_price,
            unit=parsed.unit,
            notes=parsed.notes,
            check_stock=check_stock,
        )
    return draft


def resolve_actor(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.Actor:
    """Use ``--actor-id``/``--actor-username`` when given, else the configured defaults."""
    fallback = core_logic.default_actor(context)
    return core_logic.Actor(
        id=getattr(args, "actor_id", None) or fallback.id,
        username=getattr(args, "actor_username", None) or fallback.username,
    )


def format_invoice(record: InvoiceRecord) -> List[str]:
    """Render an invoice as printable lines."""
    party = record.client_name or record.supplier_name or record.recipient or ""
    rows = [
        f"#{record.invoice_number} {record.invoice_type.value} {record.invoice_id} v{record.version}",
        f"  party: {party}" + (f" ({record.client_phone})" if record.client_phone else ""),
        f"  created: {record.created_at} by {record.created_by_username}",
    ]
    if record.source_invoice_id:
        rows.append(
            f"  returns: #{record.source_invoice_number} {record.source_invoice_id} ({record.return_type})"
        )
    for line in record.lines:
        detail = f"@ {line.unit_price}" if line.unit_price is not None else (line.unit or "")
        rows.append(f"  - {line.item_code} {line.item_name} x{line.quantity} {detail}".rstrip())
    rows.append(f"  total: {record.total_amount}")
    if record.notes:
        rows.append(f"  notes: {record.notes}")
    return rows


def run_add_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock item registration workflow."""
    item = core_logic.register_stock_item(
        context,
        item_name=args.item_name,
        item_code=args.item_code,
        unit_price=parse_decimal(args.unit_price, field="unit_price"),
        color=args.color,
        warehouse_id=args.warehouse_id,
        cartons_count=args.cartons,
        bottles_per_carton=args.per_carton,
        single_bottles=args.singles,
        item_id=args.item_id,
    )
    print(f"{item.item_id} {item.item_code} {item.item_name}: {item.remaining_quantity}")
    return 0


def run_create_invoice(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the invoice creation workflow via the BLL."""
    invoice_type = InvoiceType(args.invoice_type)
    draft = build_draft(
        context,
        invoice_type,
        args.party,
        args.line,
        client_phone=getattr(args, "phone", None),
        notes=args.notes,
    )
    record = core_logic.create_invoice(context, draft, resolve_actor(context, args))
    print("\n".join(format_invoice(record)))
    return 0


def run_update_invoice(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the invoice update workflow via the BLL."""
    current = composer.draft_from_invoice(core_logic.get_invoice(context, args.invoice_id))
    # Stored quantities are already deducted; the engine checks the net change.
    draft = build_draft(
        context,
        current.invoice_type,
        args.party if args.party is not None else current.party,
        args.line,
        client_phone=args.phone if args.phone is not None else current.client_phone,
        notes=args.notes if args.notes is not None else current.notes,
        check_stock=False,
    )
    record = core_logic.update_invoice(
        context,
        args.invoice_id,
        draft,
        resolve_actor(context, args),
        expected_version=args.expected_version,
    )
    print("\n".join(format_invoice(record)))
    return 0


def run_delete_invoice(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the invoice deletion workflow via the BLL."""
    record = core_logic.delete_invoice(
        context,
        args.invoice_id,
        resolve_actor(context, args),
        expected_version=args.expected_version,
    )
    print(f"Deleted invoice #{record.invoice_number} {record.invoice_id}")
    return 0


def run_factory_return(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the factory return workflow via the BLL."""
    record = core_logic.process_factory_return(
        context,
        args.dispatch_id,
        ReturnType(args.return_type),
        args.notes,
        resolve_actor(context, args),
    )
    print("\n".join(format_invoice(record)))
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    for item in core_logic.list_stock_items(context, warehouse_id=getattr(args, "warehouse_id", None)):
        color = f" [{item.color}]" if item.color else ""
        print(f"{item.item_id}\t{item.item_code}\t{item.item_name}{color}\t{item.remaining_quantity}")
    return 0


def run_invoices_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the invoice listing workflow."""
    invoice_type = InvoiceType(args.invoice_type) if args.invoice_type else None
    for record in core_logic.list_invoices(context, invoice_type=invoice_type, search=args.search):
        party = record.client_name or record.supplier_name or record.recipient or ""
        print(
            f"#{record.invoice_number}\t{record.invoice_type.value}\t{record.invoice_id}\t"
            f"{party}\t{record.total_amount}\t{record.created_at}"
        )
    return 0


def run_show_invoice(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the single-invoice display workflow."""
    print("\n".join(format_invoice(core_logic.get_invoice(context, args.invoice_id))))
    return 0


def run_clients_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the client listing workflow."""
    for client in core_logic.list_clients(context):
        print(f"{client.name}\t{client.phone}\t#{client.last_invoice_number}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, InvoicingError):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
