# Overview: Read-only reconciliation of ledger entries against the commerce backend.

"""
Reconciliation Auditor

Re-derives the expected status of each line item from the freshest external
order data (normalize + resolve) and compares it with the stored entry, then
checks the numbering invariants of the stored active set.

Never mutates. Critical findings are repaired only through
ledger_service.repair_product with explicit confirmation.

SEVERITY:
- critical: wrong active/inactive call (or an active line item missing from the ledger)
- warning:  numbering gap, duplicate, overflow, number on an inactive entry, orphaned entry
- info:     stale denormalized total, reason-only mismatch, single-signal restock,
            unavailable external order
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from ..errors import OrderUnavailable, ValidationError
from ..models import LedgerEntry
from .ledger_store import LedgerStore, get_ledger_store
from .normalizer import LineItemFact, normalize_order
from .order_source import OrderSource, default_order_source
from .status_resolver import STATUS_ACTIVE, resolve, resolve_removed

logger = logging.getLogger(__name__)


SEVERITY_CRITICAL = "critical"
SEVERITY_WARNING = "warning"
SEVERITY_INFO = "info"

SEVERITY_RANK = {SEVERITY_CRITICAL: 0, SEVERITY_WARNING: 1, SEVERITY_INFO: 2}

KIND_STATUS_MISMATCH = "status_mismatch"
KIND_MISSING_ENTRY = "missing_entry"
KIND_REASON_MISMATCH = "reason_mismatch"
KIND_RESTOCK_SIGNAL = "restock_signal_ambiguous"
KIND_ORPHANED_ENTRY = "orphaned_entry"
KIND_ORDER_UNAVAILABLE = "order_unavailable"
KIND_DUPLICATE_EDITION = "duplicate_edition"
KIND_NUMBERING_GAP = "numbering_gap"
KIND_EDITION_OVERFLOW = "edition_overflow"
KIND_MISSING_EDITION_NUMBER = "missing_edition_number"
KIND_UNEXPECTED_EDITION_NUMBER = "unexpected_edition_number"
KIND_STALE_EDITION_TOTAL = "stale_edition_total"


@dataclass(frozen=True)
class DiscrepancyReport:
    line_item_id: Optional[str]
    expected: Any
    actual: Any
    severity: str
    kind: str
    product_id: Optional[str] = None
    order_id: Optional[str] = None
    description: str = ""

    def to_dict(self) -> dict:
        return {
            "line_item_id": self.line_item_id,
            "product_id": self.product_id,
            "order_id": self.order_id,
            "kind": self.kind,
            "severity": self.severity,
            "expected": self.expected,
            "actual": self.actual,
            "description": self.description,
        }


def _sorted(reports: Iterable[DiscrepancyReport]) -> list[DiscrepancyReport]:
    return sorted(
        reports,
        key=lambda r: (SEVERITY_RANK[r.severity], r.product_id or "", r.line_item_id or "", r.kind),
    )


# =============================================================================
# STATUS COMPARISON
# =============================================================================

def compare_fact(fact: LineItemFact, entry: Optional[LedgerEntry]) -> list[DiscrepancyReport]:
    """Discrepancies between one freshly normalized line item and its stored entry."""
    reports = []
    if entry is not None and entry.manual_override:
        expected = resolve_removed(fact, entry.status_reason)
    else:
        expected = resolve(fact)
    common = {"line_item_id": fact.line_item_id, "product_id": fact.product_id, "order_id": fact.order_id}

    if entry is None:
        reports.append(DiscrepancyReport(
            expected=expected.to_dict(),
            actual=None,
            severity=SEVERITY_CRITICAL if expected.is_active else SEVERITY_INFO,
            kind=KIND_MISSING_ENTRY,
            description=f"Line item {fact.line_item_id} is not in the ledger",
            **common,
        ))
    elif entry.status != expected.status:
        reports.append(DiscrepancyReport(
            expected=expected.to_dict(),
            actual={"status": entry.status, "status_reason": entry.status_reason},
            severity=SEVERITY_CRITICAL,
            kind=KIND_STATUS_MISMATCH,
            description=(
                f"Line item {fact.line_item_id} is {entry.status} in the ledger "
                f"but resolves to {expected.status} ({expected.status_reason})"
            ),
            **common,
        ))
    elif entry.status_reason != expected.status_reason:
        reports.append(DiscrepancyReport(
            expected=expected.to_dict(),
            actual={"status": entry.status, "status_reason": entry.status_reason},
            severity=SEVERITY_INFO,
            kind=KIND_REASON_MISMATCH,
            description=f"Line item {fact.line_item_id} reason {entry.status_reason} != {expected.status_reason}",
            **common,
        ))

    if fact.is_restocked and len(fact.restock_signals) == 1:
        reports.append(DiscrepancyReport(
            expected="corroborated restock",
            actual=list(fact.restock_signals),
            severity=SEVERITY_INFO,
            kind=KIND_RESTOCK_SIGNAL,
            description=f"Restock of {fact.line_item_id} rests on a single signal ({fact.restock_signals[0]})",
            **common,
        ))
    return reports


def compare_order(
    raw_order: dict,
    entries: Iterable[LedgerEntry],
    *,
    product_id: Optional[str] = None,
) -> list[DiscrepancyReport]:
    """Compare an order's line items (optionally one product's) with stored entries."""
    entries = [e for e in entries if product_id is None or e.product_id == product_id]
    by_id = {e.line_item_id: e for e in entries}
    reports = []
    seen = set()

    for fact in normalize_order(raw_order):
        if not fact.line_item_id or not fact.product_id:
            continue
        if product_id is not None and fact.product_id != product_id:
            continue
        seen.add(fact.line_item_id)
        reports.extend(compare_fact(fact, by_id.get(fact.line_item_id)))

    for entry in entries:
        if entry.line_item_id not in seen:
            reports.append(DiscrepancyReport(
                line_item_id=entry.line_item_id,
                product_id=entry.product_id,
                order_id=entry.order_id,
                expected=None,
                actual={"status": entry.status, "edition_number": entry.edition_number},
                severity=SEVERITY_WARNING,
                kind=KIND_ORPHANED_ENTRY,
                description=f"Line item {entry.line_item_id} no longer appears on order {entry.order_id}",
            ))
    return reports


# =============================================================================
# NUMBERING INVARIANTS
# =============================================================================

def check_numbering(
    product_id: str,
    entries: Iterable[LedgerEntry],
    edition_size: Optional[int],
) -> list[DiscrepancyReport]:
    """Invariant checks on the stored entries of one product."""
    entries = list(entries)
    active = [e for e in entries if e.status == STATUS_ACTIVE]
    reports = []

    for entry in entries:
        if entry.status != STATUS_ACTIVE and entry.edition_number is not None:
            reports.append(DiscrepancyReport(
                line_item_id=entry.line_item_id, product_id=product_id, order_id=entry.order_id,
                expected=None, actual=entry.edition_number,
                severity=SEVERITY_WARNING, kind=KIND_UNEXPECTED_EDITION_NUMBER,
                description=f"Inactive line item {entry.line_item_id} still holds #{entry.edition_number}",
            ))

    if edition_size is None:
        for entry in active:
            if entry.edition_number is not None:
                reports.append(DiscrepancyReport(
                    line_item_id=entry.line_item_id, product_id=product_id, order_id=entry.order_id,
                    expected=None, actual=entry.edition_number,
                    severity=SEVERITY_WARNING, kind=KIND_UNEXPECTED_EDITION_NUMBER,
                    description=f"Open edition line item {entry.line_item_id} has a number",
                ))
            if entry.edition_total != len(active):
                reports.append(DiscrepancyReport(
                    line_item_id=entry.line_item_id, product_id=product_id, order_id=entry.order_id,
                    expected=len(active), actual=entry.edition_total,
                    severity=SEVERITY_INFO, kind=KIND_STALE_EDITION_TOTAL,
                    description=f"Line item {entry.line_item_id} shows total {entry.edition_total}",
                ))
        return reports

    holders = defaultdict(list)
    for entry in active:
        if entry.edition_number is None:
            reports.append(DiscrepancyReport(
                line_item_id=entry.line_item_id, product_id=product_id, order_id=entry.order_id,
                expected="edition number", actual=None,
                severity=SEVERITY_WARNING, kind=KIND_MISSING_EDITION_NUMBER,
                description=f"Active line item {entry.line_item_id} has no edition number",
            ))
        else:
            holders[entry.edition_number].append(entry.line_item_id)
        if entry.edition_total != edition_size:
            reports.append(DiscrepancyReport(
                line_item_id=entry.line_item_id, product_id=product_id, order_id=entry.order_id,
                expected=edition_size, actual=entry.edition_total,
                severity=SEVERITY_INFO, kind=KIND_STALE_EDITION_TOTAL,
                description=f"Line item {entry.line_item_id} shows total {entry.edition_total}",
            ))

    for number, line_item_ids in sorted(holders.items()):
        if len(line_item_ids) > 1:
            reports.append(DiscrepancyReport(
                line_item_id=None, product_id=product_id,
                expected=1, actual=sorted(line_item_ids),
                severity=SEVERITY_WARNING, kind=KIND_DUPLICATE_EDITION,
                description=f"Edition #{number} assigned to {len(line_item_ids)} line items",
            ))

    # Holes or a sequence not starting at 1; duplicates are reported above
    actual_numbers = sorted(holders)
    expected_numbers = list(range(1, len(actual_numbers) + 1))
    if actual_numbers != expected_numbers:
        reports.append(DiscrepancyReport(
            line_item_id=None, product_id=product_id,
            expected=expected_numbers, actual=actual_numbers,
            severity=SEVERITY_WARNING, kind=KIND_NUMBERING_GAP,
            description=f"Active numbering for product {product_id} is not 1..{len(active)}",
        ))

    if len(active) > edition_size:
        by_age = sorted(active, key=lambda e: (e.created_at is None, e.created_at, e.line_item_id))
        reports.append(DiscrepancyReport(
            line_item_id=None, product_id=product_id,
            expected=edition_size, actual=len(active),
            severity=SEVERITY_WARNING, kind=KIND_EDITION_OVERFLOW,
            description=(
                f"{len(active)} active line items for an edition of {edition_size}; surplus: "
                + ", ".join(e.line_item_id for e in by_age[edition_size:])
            ),
        ))
    return reports


# =============================================================================
# ENTRY POINTS
# =============================================================================

def _fetch(source: OrderSource, order_id: str, product_id: Optional[str]):
    try:
        raw = source.fetch_order(order_id)
    except OrderUnavailable as exc:
        logger.warning("%s", exc)
        raw = None
    if raw is not None:
        return raw, None
    logger.warning("Order %s unavailable from %s", order_id, source.name)
    return None, DiscrepancyReport(
        line_item_id=None, product_id=product_id, order_id=order_id,
        expected="order payload", actual=None,
        severity=SEVERITY_INFO, kind=KIND_ORDER_UNAVAILABLE,
        description=f"Order {order_id} could not be loaded from {source.name}",
    )


def audit_product(
    product_id: str,
    *,
    source: OrderSource | None = None,
    store: LedgerStore | None = None,
) -> list[DiscrepancyReport]:
    store = store or get_ledger_store()
    if source is None:
        with default_order_source(store) as owned:
            return audit_product(product_id, source=owned, store=store)

    entries = store.entries_for_product(product_id)
    reports = check_numbering(product_id, entries, store.get_edition_size(product_id))

    for order_id in sorted({e.order_id for e in entries}):
        raw, unavailable = _fetch(source, order_id, product_id)
        if unavailable is not None:
            reports.append(unavailable)
            continue
        reports.extend(compare_order(raw, [e for e in entries if e.order_id == order_id], product_id=product_id))

    logger.info("Audit of product %s: %s discrepancies", product_id, len(reports))
    return _sorted(reports)


def audit_order(
    order_id: str,
    *,
    source: OrderSource | None = None,
    store: LedgerStore | None = None,
) -> list[DiscrepancyReport]:
    store = store or get_ledger_store()
    if source is None:
        with default_order_source(store) as owned:
            return audit_order(order_id, source=owned, store=store)

    entries = store.entries_for_order(order_id)
    raw, unavailable = _fetch(source, order_id, None)
    if unavailable is not None:
        return [unavailable]

    reports = compare_order(raw, entries)

    product_ids = {e.product_id for e in entries}
    product_ids.update(f.product_id for f in normalize_order(raw) if f.product_id)
    for product_id in sorted(product_ids):
        reports.extend(check_numbering(
            product_id, store.entries_for_product(product_id), store.get_edition_size(product_id)
        ))

    logger.info("Audit of order %s: %s discrepancies", order_id, len(reports))
    return _sorted(reports)


def audit(
    product_id: str | None = None,
    order_id: str | None = None,
    *,
    source: OrderSource | None = None,
    store: LedgerStore | None = None,
) -> list[DiscrepancyReport]:
    """Audit exactly one scope: a product or an order."""
    if bool(product_id) == bool(order_id):
        raise ValidationError("Provide exactly one of product_id or order_id")
    if product_id:
        return audit_product(product_id, source=source, store=store)
    return audit_order(order_id, source=source, store=store)


def audit_all(
    *,
    source: OrderSource | None = None,
    store: LedgerStore | None = None,
) -> dict[str, list[DiscrepancyReport]]:
    """Reconciliation sweep over every product in the ledger."""
    store = store or get_ledger_store()
    if source is None:
        with default_order_source(store) as owned:
            return audit_all(source=owned, store=store)
    return {pid: audit_product(pid, source=source, store=store) for pid in store.product_ids()}
