"""Shared pytest fixtures and utilities for warehouse invoicing tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from warehouse_invoicing import cli, constants, core_logic, data_manager  # noqa: E402
from warehouse_invoicing.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_ACTOR_ID = "U-1"
DEFAULT_ACTOR_USERNAME = "clerk"
FIXED_MOMENT = datetime(2025, 1, 15, 9, 30, tzinfo=UTC)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "CompanyName = {company_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "ActorId = {actor_id}\n"
    "ActorUsername = {actor_username}\n"
    "WarehouseId = main\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    company_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized warehouse workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        filename: str = "warehouse.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, schema_version=schema_version, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        company_name: str = "Test Glassworks",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        workbook_schema_version: str = DEFAULT_SCHEMA_VERSION,
    ) -> ConfigBundle:
        bundle_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_name
        workbook_path = workbook_factory(subdir=bundle_name, schema_version=workbook_schema_version)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                company_name=company_name,
                schema_version=schema_version,
                actor_id=DEFAULT_ACTOR_ID,
                actor_username=DEFAULT_ACTOR_USERNAME,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            company_name=company_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


@pytest.fixture
def store(runtime_context: core_logic.RuntimeContext) -> data_manager.WorkbookStore:
    return runtime_context.store


@pytest.fixture
def actor() -> core_logic.Actor:
    return core_logic.Actor(id=DEFAULT_ACTOR_ID, username=DEFAULT_ACTOR_USERNAME)


@pytest.fixture
def moment() -> datetime:
    return FIXED_MOMENT


@pytest.fixture
def add_item(runtime_context: core_logic.RuntimeContext) -> Callable[..., data_manager.StockItemRow]:
    """Register a stock item holding ``quantity`` loose units."""

    def _add(
        item_id: str,
        quantity: int,
        *,
        name: str | None = None,
        code: str | None = None,
        color: str | None = "clear",
        unit_price: Decimal = Decimal("2.50"),
    ) -> data_manager.StockItemRow:
        return core_logic.register_stock_item(
            runtime_context,
            item_name=name or f"Bottle {item_id}",
            item_code=code or f"C-{item_id}",
            unit_price=unit_price,
            color=color,
            single_bottles=quantity,
            item_id=item_id,
            timestamp=FIXED_MOMENT,
        )

    return _add


@pytest.fixture
def remaining(runtime_context: core_logic.RuntimeContext) -> Callable[[str], int]:
    """Read an item's current remaining quantity straight from the store."""

    def _remaining(item_id: str) -> int:
        return core_logic.get_stock_item(runtime_context, item_id).remaining_quantity

    return _remaining


def make_line(
    item_id: str,
    quantity: int,
    unit_price: Decimal | str | None = None,
    *,
    unit: str | None = None,
) -> data_manager.InvoiceLine:
    """Build an invoice line without going through the composer."""

    return data_manager.InvoiceLine(
        stock_item_id=item_id,
        item_name=f"Bottle {item_id}",
        item_code=f"C-{item_id}",
        color="clear",
        quantity=quantity,
        unit_price=None if unit_price is None else Decimal(str(unit_price)),
        unit=unit,
    )


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="invoicing-cli", description="Invoicing CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]
