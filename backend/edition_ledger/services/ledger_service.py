# Overview: Write paths and queries of the edition ledger; every mutation goes through the product lock.

"""
Edition Ledger Service

Webhook syncs, admin actions and repair runs all end in the same place:
normalize -> resolve -> upsert entries -> reassign, inside one product's lock
and one atomic unit. There is no other write path.

INVARIANTS (after every committed unit):
- inactive entries carry no edition number
- active entries of a limited edition are numbered exactly 1..k, k <= edition_size
  (a product left over capacity by older data keeps its oldest edition_size
  entries numbered and reports the rest until it shrinks back)
- every status change is recorded as an edition event with its reason
- entries are never deleted
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Optional

from ..errors import (
    EditionOverflow,
    LedgerEntryNotFound,
    OrderUnavailable,
    RepairConfirmationRequired,
    ValidationError,
)
from ..models import LedgerEntry
from edition_ledger.time_utils import utcnow
from .auditor import SEVERITY_CRITICAL, audit_product
from .edition_assigner import (
    AssignmentResult,
    count_active,
    edition_order_key,
    overflow_surplus,
    reassign,
    reassign_locked,
)
from .ledger_store import DEFAULT_TIMEOUT, LedgerStore, LedgerUnit, get_ledger_store
from .normalizer import LineItemFact, normalize_order
from .order_source import OrderSource, default_order_source
from .status_resolver import (
    REASON_MANUALLY_REMOVED,
    REASON_REFUNDED,
    REASON_RESTOCKED,
    STATUS_ACTIVE,
    STATUS_INACTIVE,
    resolve,
    resolve_removed,
)

logger = logging.getLogger(__name__)


EVENT_ENTRY_CREATED = "entry_created"
EVENT_STATUS_CHANGED = "status_changed"
EVENT_MANUAL_REMOVAL = "manual_removal"
EVENT_MANUAL_RESTORE = "manual_restore"

SOURCE_WEBHOOK = "webhook"
SOURCE_ADMIN = "admin"
SOURCE_REPAIR = "repair"

# Operator-facing reasons for mark_line_item_inactive
MANUAL_REASONS = {
    "refunded": REASON_REFUNDED,
    "restocked": REASON_RESTOCKED,
    "removed": REASON_MANUALLY_REMOVED,
    "manual": REASON_MANUALLY_REMOVED,
}


@dataclass
class SyncResult:
    order_id: str
    order_name: Optional[str]
    line_items: list[dict] = field(default_factory=list)
    assignments: dict[str, AssignmentResult] = field(default_factory=dict)
    overflows: list[EditionOverflow] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.overflows

    def to_dict(self) -> dict:
        return {
            "success": self.ok,
            "order_id": self.order_id,
            "order_name": self.order_name,
            "line_items_synced": len(self.line_items),
            "line_items": self.line_items,
            "assignments": {pid: a.to_dict() for pid, a in self.assignments.items()},
            "overflows": [o.to_dict() for o in self.overflows],
            "skipped": self.skipped,
        }


def _fact_fields(fact: LineItemFact) -> dict:
    """Entry columns mirrored from the latest commerce facts."""
    return {
        "order_id": fact.order_id,
        "order_name": fact.order_name,
        "title": fact.title,
        "quantity": fact.quantity,
        "refunded_quantity": fact.refunded_quantity,
        "is_restocked": fact.is_restocked,
        "financial_status": fact.order_financial_status,
        "order_cancelled_at": fact.order_cancelled_at,
        "owner_email": fact.owner_email,
        "owner_name": fact.owner_name,
    }


def fact_from_entry(entry: LedgerEntry) -> LineItemFact:
    """Rebuild a fact from the columns stored at the last sync."""
    return LineItemFact(
        line_item_id=entry.line_item_id,
        order_id=entry.order_id,
        product_id=entry.product_id,
        quantity=entry.quantity,
        refunded_quantity=entry.refunded_quantity,
        is_restocked=bool(entry.is_restocked),
        order_financial_status=entry.financial_status,
        order_cancelled_at=entry.order_cancelled_at,
        manual_removal_flag=False,
        order_name=entry.order_name,
        title=entry.title,
        owner_email=entry.owner_email,
        owner_name=entry.owner_name,
        created_at=entry.created_at,
    )


def apply_fact_locked(
    unit: LedgerUnit,
    fact: LineItemFact,
    *,
    source: str | None = None,
    actor: str | None = None,
) -> LedgerEntry:
    """Create or update one entry from a fact. Caller holds the product lock."""
    entry = unit.get_entry(fact.line_item_id)
    if entry is not None and entry.manual_override:
        # Removal stands until restore_line_item; restock and refund still refine the reason
        resolution = resolve_removed(fact, entry.status_reason)
    else:
        resolution = resolve(fact)
    cleared = {} if resolution.is_active else {"edition_number": None, "edition_total": None}

    if entry is None:
        now = utcnow()
        entry = LedgerEntry(
            line_item_id=fact.line_item_id,
            product_id=fact.product_id,
            status=resolution.status,
            status_reason=resolution.status_reason,
            edition_number=None,
            edition_total=None,
            manual_override=False,
            created_at=fact.created_at or now,
            updated_at=now,
            **_fact_fields(fact),
        )
        unit.add_entry(entry)
        unit.append_event(
            line_item_id=entry.line_item_id,
            event_type=EVENT_ENTRY_CREATED,
            status_reason=resolution.status_reason,
            source=source,
            actor=actor,
            payload={"status": resolution.status, "order_id": fact.order_id},
        )
        return entry

    before = (entry.status, entry.status_reason)
    unit.update_entry(
        entry,
        status=resolution.status,
        status_reason=resolution.status_reason,
        **cleared,
        **_fact_fields(fact),
    )
    if before != (resolution.status, resolution.status_reason):
        unit.append_event(
            line_item_id=entry.line_item_id,
            event_type=EVENT_STATUS_CHANGED,
            status_reason=resolution.status_reason,
            source=source,
            actor=actor,
            payload={
                "before_status": before[0],
                "before_reason": before[1],
                "after_status": resolution.status,
            },
        )
    return entry


def check_capacity_locked(unit: LedgerUnit, prior_active_count: int) -> Optional[EditionOverflow]:
    """
    Capacity check without renumbering, for syncs that defer numbering.

    Raises when the unit would grow a product past its edition size. A unit
    that does not grow a product already over capacity may commit; the
    remaining overflow is returned for reporting.
    """
    edition_size = unit.edition_size()
    if edition_size is None:
        return None
    active = [e for e in unit.entries() if e.status == STATUS_ACTIVE]
    if len(active) <= edition_size:
        return None
    overflow = EditionOverflow(unit.product_id, edition_size, overflow_surplus(active, edition_size))
    if len(active) > prior_active_count:
        raise overflow
    return overflow


def _sync_product_locked(unit, facts, *, skip_editions, source, actor):
    prior_active_count = count_active(unit)
    entries = [apply_fact_locked(unit, fact, source=source, actor=actor) for fact in facts]
    assignment = None
    if skip_editions:
        overflow = check_capacity_locked(unit, prior_active_count)
    else:
        assignment = reassign_locked(unit, source=source, actor=actor, prior_active_count=prior_active_count)
        overflow = assignment.overflow
    lines = [
        {
            "line_item_id": e.line_item_id,
            "product_id": e.product_id,
            "status": e.status,
            "status_reason": e.status_reason,
            "edition_number": e.edition_number,
        }
        for e in entries
    ]
    return lines, assignment, overflow


# =============================================================================
# WRITE PATHS
# =============================================================================

def sync_order(
    raw_order: dict,
    *,
    skip_editions: bool = False,
    store: LedgerStore | None = None,
    source: str = SOURCE_WEBHOOK,
    actor: str | None = None,
    timeout=DEFAULT_TIMEOUT,
) -> SyncResult:
    """
    Sync every line item of an order into the ledger.

    Each product is its own atomic unit under its own lock. An overflow on
    one product rolls back only that product and is reported in the result;
    LockTimeout / PersistenceConflict propagate (the sync is safe to retry).

    skip_editions defers renumbering to a later reassign but still enforces
    capacity, so a deferred sync can never push a product past its size.
    """
    if not isinstance(raw_order, dict) or raw_order.get("id") in (None, ""):
        raise ValidationError("order payload with an id is required")

    store = store or get_ledger_store()
    order_id = str(raw_order["id"])
    order_name = raw_order.get("name") if isinstance(raw_order.get("name"), str) else None
    result = SyncResult(order_id=order_id, order_name=order_name)

    store.save_order_snapshot(order_id, raw_order, order_name)

    by_product: dict[str, list[LineItemFact]] = {}
    for fact in normalize_order(raw_order):
        if not fact.line_item_id or not fact.product_id:
            logger.info("Skipping line item %r on order %s: no product", fact.line_item_id, order_id)
            result.skipped.append(fact.line_item_id)
            continue
        by_product.setdefault(fact.product_id, []).append(fact)

    for product_id, facts in by_product.items():
        work = partial(_sync_product_locked, facts=facts, skip_editions=skip_editions, source=source, actor=actor)
        try:
            lines, assignment, overflow = store.with_product_lock(product_id, work, timeout=timeout)
        except EditionOverflow as exc:
            result.overflows.append(exc)
            continue
        if overflow is not None:
            result.overflows.append(overflow)
        result.line_items.extend(lines)
        if assignment is not None:
            result.assignments[product_id] = assignment

    logger.info(
        "Synced order %s: %s line items, %s products, %s overflows",
        order_id, len(result.line_items), len(result.assignments), len(result.overflows),
    )
    return result


def _require_entry(store: LedgerStore, line_item_id: str) -> LedgerEntry:
    entry = store.get_entry(str(line_item_id))
    if entry is None:
        raise LedgerEntryNotFound(str(line_item_id))
    return entry


def mark_line_item_inactive(
    line_item_id: str,
    reason: str = "manual",
    notes: str | None = None,
    *,
    actor: str | None = None,
    store: LedgerStore | None = None,
    timeout=DEFAULT_TIMEOUT,
) -> dict:
    """Operator removal. Persists across later syncs until restore_line_item."""
    if reason not in MANUAL_REASONS:
        raise ValidationError(f"reason must be one of: {', '.join(sorted(MANUAL_REASONS))}")

    store = store or get_ledger_store()
    product_id = _require_entry(store, line_item_id).product_id

    def _op(unit: LedgerUnit) -> dict:
        entry = unit.get_entry(str(line_item_id))
        if entry is None:
            raise LedgerEntryNotFound(str(line_item_id))
        prior_active_count = count_active(unit)
        before = {
            "status": entry.status,
            "status_reason": entry.status_reason,
            "edition_number": entry.edition_number,
        }
        unit.update_entry(
            entry,
            status=STATUS_INACTIVE,
            status_reason=MANUAL_REASONS[reason],
            manual_override=True,
            edition_number=None,
            edition_total=None,
        )
        unit.append_event(
            line_item_id=entry.line_item_id,
            event_type=EVENT_MANUAL_REMOVAL,
            status_reason=entry.status_reason,
            edition_number=before["edition_number"],
            source=SOURCE_ADMIN,
            actor=actor,
            payload={"reason": reason, "notes": notes, "before": before},
        )
        assignment = reassign_locked(
            unit, source=SOURCE_ADMIN, actor=actor, prior_active_count=prior_active_count
        )
        return {
            "success": True,
            "line_item_id": entry.line_item_id,
            "before": before,
            "after": {"status": entry.status, "status_reason": entry.status_reason},
            "reason": reason,
            "notes": notes,
            "assignment": assignment.to_dict(),
        }

    return store.with_product_lock(product_id, _op, timeout=timeout)


def restore_line_item(
    line_item_id: str,
    *,
    actor: str | None = None,
    store: LedgerStore | None = None,
    timeout=DEFAULT_TIMEOUT,
) -> dict:
    """
    Clear an operator removal and re-resolve the entry.

    Uses the latest order snapshot when one exists, else the stored facts.
    May raise EditionOverflow, in which case the removal stays in place.
    """
    store = store or get_ledger_store()
    entry = _require_entry(store, line_item_id)
    product_id = entry.product_id

    fact = None
    snapshot = store.get_order_snapshot(entry.order_id)
    if snapshot is not None:
        fact = next((f for f in normalize_order(snapshot) if f.line_item_id == entry.line_item_id), None)

    def _op(unit: LedgerUnit) -> dict:
        current = unit.get_entry(str(line_item_id))
        if current is None:
            raise LedgerEntryNotFound(str(line_item_id))
        prior_active_count = count_active(unit)
        unit.update_entry(current, manual_override=False)
        resolution = resolve(fact or fact_from_entry(current))
        before = (current.status, current.status_reason)
        fields = {"status": resolution.status, "status_reason": resolution.status_reason}
        if not resolution.is_active:
            fields.update(edition_number=None, edition_total=None)
        unit.update_entry(current, **fields)
        unit.append_event(
            line_item_id=current.line_item_id,
            event_type=EVENT_MANUAL_RESTORE,
            status_reason=resolution.status_reason,
            source=SOURCE_ADMIN,
            actor=actor,
            payload={"before_status": before[0], "before_reason": before[1], "after_status": resolution.status},
        )
        assignment = reassign_locked(
            unit, source=SOURCE_ADMIN, actor=actor, prior_active_count=prior_active_count
        )
        return {
            "success": True,
            "line_item_id": current.line_item_id,
            "status": current.status,
            "status_reason": current.status_reason,
            "edition_number": current.edition_number,
            "assignment": assignment.to_dict(),
        }

    return store.with_product_lock(product_id, _op, timeout=timeout)


def set_edition_size(
    product_id: str,
    edition_size: Optional[int],
    *,
    title: str | None = None,
    actor: str | None = None,
    store: LedgerStore | None = None,
    timeout=DEFAULT_TIMEOUT,
) -> AssignmentResult:
    """
    Configure a product's edition size (None = open edition) and resequence.

    Shrinking below the current active count raises EditionOverflow and
    leaves the old size in place.
    """
    if edition_size is not None:
        if isinstance(edition_size, bool) or not isinstance(edition_size, int) or edition_size <= 0:
            raise ValidationError("edition_size must be a positive integer or null")

    store = store or get_ledger_store()

    def _op(unit: LedgerUnit) -> AssignmentResult:
        unit.set_edition_size(edition_size, title)
        return reassign_locked(unit, edition_size=edition_size, source=SOURCE_ADMIN, actor=actor)

    return store.with_product_lock(str(product_id), _op, timeout=timeout)


def repair_product(
    product_id: str,
    *,
    confirm_critical: bool = False,
    source: OrderSource | None = None,
    actor: str | None = None,
    store: LedgerStore | None = None,
) -> dict:
    """
    Re-sync a product's orders from the external view and resequence.

    Critical discrepancies may point at a resolver bug rather than bad data,
    so they need confirm_critical=True before the ledger is overwritten.
    """
    store = store or get_ledger_store()
    if source is None:
        with default_order_source(store) as owned:
            return repair_product(
                product_id, confirm_critical=confirm_critical, source=owned, actor=actor, store=store
            )

    reports = audit_product(product_id, source=source, store=store)
    critical = [r for r in reports if r.severity == SEVERITY_CRITICAL]
    if critical and not confirm_critical:
        raise RepairConfirmationRequired(product_id, critical)

    order_ids = {e.order_id for e in store.entries_for_product(product_id)}
    order_ids.update(r.order_id for r in reports if r.order_id)

    resynced, unavailable, overflows = [], [], []
    for order_id in sorted(order_ids):
        try:
            raw = source.fetch_order(order_id)
        except OrderUnavailable as exc:
            logger.warning("Repair of product %s skipped order %s: %s", product_id, order_id, exc)
            unavailable.append(order_id)
            continue
        if raw is None:
            unavailable.append(order_id)
            continue
        result = sync_order(raw, store=store, source=SOURCE_REPAIR, actor=actor)
        resynced.append(order_id)
        overflows.extend(o.to_dict() for o in result.overflows)

    try:
        assignment = reassign(product_id, store=store, source=SOURCE_REPAIR, actor=actor).to_dict()
    except EditionOverflow as exc:
        # Still over capacity; the resyncs above already committed
        overflows.append(exc.to_dict())
        assignment = None
    logger.info("Repaired product %s: resynced %s orders", product_id, len(resynced))
    return {
        "product_id": product_id,
        "discrepancies_before": [r.to_dict() for r in reports],
        "orders_resynced": resynced,
        "orders_unavailable": unavailable,
        "overflows": overflows,
        "assignment": assignment,
    }


# =============================================================================
# QUERIES
# =============================================================================

def verify_edition(
    line_item_id: str,
    order_id: str | None = None,
    *,
    store: LedgerStore | None = None,
) -> dict:
    store = store or get_ledger_store()
    entry = _require_entry(store, line_item_id)
    if order_id is not None and entry.order_id != str(order_id):
        raise LedgerEntryNotFound(str(line_item_id))
    data = entry.to_dict()
    data["verified"] = True
    return data


def get_edition_history(line_item_id: str, *, store: LedgerStore | None = None) -> dict:
    store = store or get_ledger_store()
    events = store.events_for(str(line_item_id))
    if not events and store.get_entry(str(line_item_id)) is None:
        raise LedgerEntryNotFound(str(line_item_id))
    return {
        "line_item_id": str(line_item_id),
        "event_count": len(events),
        "events": [e.to_dict() for e in events],
    }


def get_product_editions(
    product_id: str,
    *,
    include_history: bool = False,
    store: LedgerStore | None = None,
) -> dict:
    store = store or get_ledger_store()
    active = [e for e in store.entries_for_product(product_id) if e.status == STATUS_ACTIVE]
    editions = []
    for entry in sorted(active, key=edition_order_key):
        data = entry.to_dict()
        if include_history:
            data["history"] = [e.to_dict() for e in store.events_for(entry.line_item_id)]
        editions.append(data)
    return {
        "product_id": product_id,
        "edition_size": store.get_edition_size(product_id),
        "total_editions": len(editions),
        "editions": editions,
    }


def check_duplicates(product_id: str, *, store: LedgerStore | None = None) -> dict:
    store = store or get_ledger_store()
    holders: dict[int, list[str]] = {}
    for entry in store.entries_for_product(product_id):
        if entry.status == STATUS_ACTIVE and entry.edition_number is not None:
            holders.setdefault(entry.edition_number, []).append(entry.line_item_id)
    duplicates = {n: ids for n, ids in sorted(holders.items()) if len(ids) > 1}
    return {
        "product_id": product_id,
        "total_editions": sum(len(ids) for ids in holders.values()),
        "unique_editions": len(holders),
        "has_duplicates": bool(duplicates),
        "duplicate_edition_numbers": list(duplicates),
        "duplicate_items": [
            {"edition_number": n, "line_item_ids": ids} for n, ids in duplicates.items()
        ],
    }


def get_collector_editions(owner_email: str, *, store: LedgerStore | None = None) -> dict:
    if not owner_email or not owner_email.strip():
        raise ValidationError("collector email is required")
    store = store or get_ledger_store()
    seen = set()
    editions = []
    for entry in store.active_entries_for_owner(owner_email):
        if entry.line_item_id in seen:
            continue
        seen.add(entry.line_item_id)
        editions.append(entry.to_dict())
    return {
        "collector": owner_email.strip().lower(),
        "total_editions": len(editions),
        "editions": editions,
    }
