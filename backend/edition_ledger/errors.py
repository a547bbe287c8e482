# Overview: Error taxonomy for the edition ledger and its HTTP/CLI callers.

"""
Edition Ledger Errors

- ValidationError / ConflictError: 400 / 409 level input problems.
- EditionOverflow: capacity exceeded, needs an operator decision.
- LockTimeout: contention on a product lock, transient (retry with backoff).
- PersistenceConflict: the store rejected an atomic batch write.
- OrderUnavailable: the external order view could not be read or decoded.
"""

from __future__ import annotations


class ValidationError(ValueError):
    """400-level input problem."""


class ConflictError(ValueError):
    """409-level business rule conflict."""


class LedgerError(Exception):
    """Base class for edition ledger failures surfaced to callers."""


class LedgerEntryNotFound(LedgerError):
    def __init__(self, line_item_id: str):
        self.line_item_id = line_item_id
        super().__init__(f"Ledger entry for line item {line_item_id} not found")


class EditionOverflow(LedgerError):
    """
    More active entries than the configured edition size.

    `surplus` lists the newest-created active line items that would not fit.
    Nothing is committed when this is raised.
    """

    def __init__(self, product_id: str, edition_size: int, surplus: list[str]):
        self.product_id = product_id
        self.edition_size = edition_size
        self.surplus = list(surplus)
        super().__init__(
            f"Product {product_id} has {edition_size + len(self.surplus)} active entries "
            f"for an edition of {edition_size}; surplus: {', '.join(self.surplus)}"
        )

    def to_dict(self) -> dict:
        return {
            "error": "edition_overflow",
            "product_id": self.product_id,
            "edition_size": self.edition_size,
            "surplus": self.surplus,
        }


class LockTimeout(LedgerError):
    def __init__(self, product_id: str, timeout: float | None):
        self.product_id = product_id
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout}s waiting for lock on product {product_id}")


class PersistenceConflict(LedgerError):
    def __init__(self, product_id: str, cause: Exception | None = None):
        self.product_id = product_id
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Atomic write for product {product_id} was rejected{detail}")


class RepairConfirmationRequired(ConflictError):
    """Critical discrepancies must be confirmed by an operator before overwrite."""

    def __init__(self, product_id: str, discrepancies: list):
        self.product_id = product_id
        self.discrepancies = list(discrepancies)
        super().__init__(
            f"Product {product_id} has {len(self.discrepancies)} critical discrepancies; "
            "repair requires explicit confirmation"
        )


class OrderUnavailable(LedgerError):
    def __init__(self, order_id: str, source: str, cause: Exception | None = None):
        self.order_id = order_id
        self.source = source
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Order {order_id} could not be loaded from {source}{detail}")
