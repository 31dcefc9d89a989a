"""Enumerations shared across the warehouse invoicing modules.

The workbook store, the stock adjustment engine, the invoice lifecycle and
the CLI all key their behaviour off these values, so they live in one place.
"""

from __future__ import annotations

import re
from enum import Enum


# Schema version every layer expects to find in the workbook's Meta sheet.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Client phone numbers on SALE invoices: digits only, optionally led by "+".
PHONE_PATTERN = re.compile(r"\+?\d+")


class InvoiceType(str, Enum):
    """Enumerate the stock-affecting invoice types."""

    SALE = "SALE"
    PURCHASE = "PURCHASE"
    FACTORY_DISPATCH = "FACTORY_DISPATCH"
    FACTORY_RETURN = "FACTORY_RETURN"


class Direction(str, Enum):
    """Direction in which an invoice moves a stock item's remaining quantity."""

    INCREASE = "INCREASE"
    DECREASE = "DECREASE"

    def inverse(self) -> "Direction":
        return Direction.DECREASE if self is Direction.INCREASE else Direction.INCREASE


class ReturnType(str, Enum):
    """What physically came back from the factory on a return."""

    GLASS_ONLY = "GLASS_ONLY"
    GLASS_WITH_ACCESSORIES = "GLASS_WITH_ACCESSORIES"


class Collection(str, Enum):
    """Enumerate the workbook sheets managed by the document store."""

    WAREHOUSE_ITEMS = "warehouseItems"
    INVOICES = "invoices"
    META = "Meta"


# Invoice types a caller may submit as a draft; returns are always derived.
DRAFT_TYPES: tuple[InvoiceType, ...] = (
    InvoiceType.SALE,
    InvoiceType.PURCHASE,
    InvoiceType.FACTORY_DISPATCH,
)

# Types whose lines carry a unit price and contribute to the total amount.
PRICED_TYPES: tuple[InvoiceType, ...] = (
    InvoiceType.SALE,
    InvoiceType.PURCHASE,
)

STOCK_DIRECTIONS: dict[InvoiceType, Direction] = {
    InvoiceType.SALE: Direction.DECREASE,
    InvoiceType.FACTORY_DISPATCH: Direction.DECREASE,
    InvoiceType.PURCHASE: Direction.INCREASE,
    InvoiceType.FACTORY_RETURN: Direction.INCREASE,
}


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "PHONE_PATTERN",
    "InvoiceType",
    "Direction",
    "ReturnType",
    "Collection",
    "DRAFT_TYPES",
    "PRICED_TYPES",
    "STOCK_DIRECTIONS",
]
