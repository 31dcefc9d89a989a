"""Exception taxonomy raised by the invoicing engine.

Every error is raised to the caller; the engine never swallows or retries.
Callers that only care about "the operation was refused" can catch
:class:`InvoicingError`.
"""

from __future__ import annotations

from typing import Optional


class InvoicingError(Exception):
    """Base class for every failure surfaced by the invoicing engine."""


class ValidationError(InvoicingError):
    """Raised when a draft or request violates a domain constraint.

    Validation always happens before any stock mutation, so the failed
    operation is a no-op.
    """

    def __init__(self, message: str, *, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class NotFoundError(InvoicingError):
    """Raised when a referenced stock item or invoice does not exist."""

    def __init__(self, resource: str, identifier: str) -> None:
        super().__init__(f"{resource} not found: {identifier}")
        self.resource = resource
        self.identifier = identifier


class InsufficientStockError(InvoicingError):
    """Raised when a decrease would take an item's remaining quantity below zero."""

    def __init__(self, item_id: str, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient stock for item '{item_id}': requested {requested}, available {available}"
        )
        self.item_id = item_id
        self.requested = requested
        self.available = available


class PersistenceError(InvoicingError):
    """Raised when the document store cannot read or commit a write."""


class ConcurrentModificationError(InvoicingError):
    """Raised when an invoice changed between being loaded and being written."""

    def __init__(self, invoice_id: str, expected_version: int, actual_version: Optional[int]) -> None:
        super().__init__(
            f"Invoice '{invoice_id}' was modified concurrently: "
            f"expected version {expected_version}, found {actual_version}"
        )
        self.invoice_id = invoice_id
        self.expected_version = expected_version
        self.actual_version = actual_version


__all__ = [
    "InvoicingError",
    "ValidationError",
    "NotFoundError",
    "InsufficientStockError",
    "PersistenceError",
    "ConcurrentModificationError",
]
