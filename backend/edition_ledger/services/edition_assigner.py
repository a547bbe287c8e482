# Overview: Dense 1..k edition numbering for a product's active ledger entries.

"""
Edition Assigner

Every status transition for a product triggers a full recompute from the
current set of entries, never an incremental patch. That is what makes
out-of-order webhooks harmless.

ALGORITHM (inside the product lock):
1. Load all entries for the product.
2. Split active / inactive.
3. Order active entries: existing edition_number first (held numbers keep
   their relative order), then created_at, then line_item_id.
4. Limited edition: number 1..k. If k > edition_size, nothing is written and
   EditionOverflow names the newest-created surplus entries; the oldest
   edition_size active entries are the ones entitled to numbers.
   Open edition: no numbers, edition_total = k.
   A product already over capacity is not stuck: a pass that does not grow
   its active set commits, the oldest edition_size entries are numbered and
   the surplus holds no number (see plan_over_capacity).
5. Inactive entries lose edition_number and edition_total.
6. Only changed rows are written, all in one atomic unit.

Re-running on a consistent set changes nothing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from ..errors import EditionOverflow
from ..models import LedgerEntry
from .ledger_store import DEFAULT_TIMEOUT, LedgerStore, LedgerUnit, get_ledger_store
from .status_resolver import STATUS_ACTIVE

logger = logging.getLogger(__name__)

# Sentinel: read edition_size from the product configuration
CONFIGURED = object()

EVENT_EDITION_ASSIGNED = "edition_assigned"
EVENT_EDITION_CLEARED = "edition_cleared"


@dataclass(frozen=True)
class EntryAssignment:
    line_item_id: str
    edition_number: Optional[int]
    edition_total: Optional[int]
    previous_number: Optional[int] = None


@dataclass
class AssignmentPlan:
    product_id: str
    edition_size: Optional[int]
    active_count: int
    numbers: dict[str, Optional[int]] = field(default_factory=dict)
    changes: list[EntryAssignment] = field(default_factory=list)
    surplus: list[str] = field(default_factory=list)

    @property
    def is_overflow(self) -> bool:
        return bool(self.surplus)

    @property
    def is_noop(self) -> bool:
        return not self.changes and not self.surplus


@dataclass
class AssignmentResult:
    product_id: str
    edition_size: Optional[int]
    active_count: int
    numbers: dict[str, Optional[int]]
    changed: list[str]
    surplus: list[str] = field(default_factory=list)

    @property
    def overflow(self) -> Optional[EditionOverflow]:
        """Overflow that was reported, not raised, on an over-capacity product."""
        if not self.surplus:
            return None
        return EditionOverflow(self.product_id, self.edition_size, self.surplus)

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "edition_size": self.edition_size,
            "active_count": self.active_count,
            "numbers": self.numbers,
            "changed": self.changed,
            "surplus": self.surplus,
        }


def _created_key(entry: LedgerEntry):
    return (entry.created_at or datetime.min, entry.line_item_id)


def edition_order_key(entry: LedgerEntry):
    """Total order over active entries; see module docstring step 3."""
    held = entry.edition_number is not None
    return (
        0 if held else 1,
        entry.edition_number if held else 0,
        entry.created_at or datetime.min,
        entry.line_item_id,
    )


def overflow_surplus(active: Iterable[LedgerEntry], edition_size: int) -> list[str]:
    """Newest-created active entries beyond edition_size (oldest keep their claim)."""
    by_age = sorted(active, key=_created_key)
    return [e.line_item_id for e in by_age[edition_size:]]


def plan_assignment(
    product_id: str,
    entries: Iterable[LedgerEntry],
    edition_size: Optional[int],
) -> AssignmentPlan:
    """Pure computation of the target numbering. Does not touch the entries."""
    entries = list(entries)
    active = [e for e in entries if e.status == STATUS_ACTIVE]
    inactive = [e for e in entries if e.status != STATUS_ACTIVE]

    plan = AssignmentPlan(product_id=product_id, edition_size=edition_size, active_count=len(active))

    if edition_size is not None and len(active) > edition_size:
        plan.surplus = overflow_surplus(active, edition_size)
        return plan

    targets: list[tuple[LedgerEntry, Optional[int], Optional[int]]] = []
    if edition_size is not None:
        for number, entry in enumerate(sorted(active, key=edition_order_key), start=1):
            targets.append((entry, number, edition_size))
    else:
        for entry in sorted(active, key=_created_key):
            targets.append((entry, None, len(active)))
    for entry in sorted(inactive, key=_created_key):
        targets.append((entry, None, None))

    for entry, number, total in targets:
        if entry.status == STATUS_ACTIVE:
            plan.numbers[entry.line_item_id] = number
        if entry.edition_number != number or entry.edition_total != total:
            plan.changes.append(EntryAssignment(
                line_item_id=entry.line_item_id,
                edition_number=number,
                edition_total=total,
                previous_number=entry.edition_number,
            ))
    return plan


def plan_over_capacity(
    product_id: str,
    entries: Iterable[LedgerEntry],
    edition_size: int,
) -> AssignmentPlan:
    """
    Numbering for a product that stays over capacity after this pass.

    The oldest edition_size active entries are numbered 1..edition_size as
    usual; surplus entries hold no number until enough of the edition frees
    up. plan.surplus is left populated so callers can report it.
    """
    entries = list(entries)
    active = [e for e in entries if e.status == STATUS_ACTIVE]
    surplus = overflow_surplus(active, edition_size)
    excluded = set(surplus)

    plan = plan_assignment(product_id, [e for e in entries if e.line_item_id not in excluded], edition_size)
    plan.active_count = len(active)
    plan.surplus = surplus
    for entry in sorted((e for e in active if e.line_item_id in excluded), key=_created_key):
        plan.numbers[entry.line_item_id] = None
        if entry.edition_number is not None or entry.edition_total is not None:
            plan.changes.append(EntryAssignment(
                line_item_id=entry.line_item_id,
                edition_number=None,
                edition_total=None,
                previous_number=entry.edition_number,
            ))
    return plan


def count_active(unit: LedgerUnit) -> int:
    return sum(1 for e in unit.entries() if e.status == STATUS_ACTIVE)


def reassign_locked(
    unit: LedgerUnit,
    *,
    edition_size=CONFIGURED,
    source: str | None = None,
    actor: str | None = None,
    prior_active_count: Optional[int] = None,
) -> AssignmentResult:
    """
    Assignment pass for a unit that already holds the product lock.

    prior_active_count is the active count when the unit opened. When the
    product was already over capacity and this pass does not grow the active
    set, the pass commits with the overflow reported on the result instead of
    raised, so refunds and operator removals can bring the product back under
    its size.
    """
    product_id = unit.product_id
    if edition_size is CONFIGURED:
        edition_size = unit.edition_size()

    entries = unit.entries()
    plan = plan_assignment(product_id, entries, edition_size)

    if plan.is_overflow:
        growing = prior_active_count is None or plan.active_count > prior_active_count
        logger.warning(
            "Edition overflow on product %s: %s active for %s; surplus %s",
            product_id, plan.active_count, edition_size, plan.surplus,
        )
        if growing:
            raise EditionOverflow(product_id, edition_size, plan.surplus)
        plan = plan_over_capacity(product_id, entries, edition_size)

    by_id = {e.line_item_id: e for e in entries}
    for change in plan.changes:
        entry = by_id[change.line_item_id]
        unit.update_entry(entry, edition_number=change.edition_number, edition_total=change.edition_total)
        if change.edition_number != change.previous_number:
            if change.edition_number is None:
                unit.append_event(
                    line_item_id=entry.line_item_id,
                    event_type=EVENT_EDITION_CLEARED,
                    status_reason=entry.status_reason,
                    edition_number=change.previous_number,
                    source=source,
                    actor=actor,
                )
            else:
                unit.append_event(
                    line_item_id=entry.line_item_id,
                    event_type=EVENT_EDITION_ASSIGNED,
                    status_reason=entry.status_reason,
                    edition_number=change.edition_number,
                    source=source,
                    actor=actor,
                    payload={"previous_number": change.previous_number, "edition_total": change.edition_total},
                )

    if plan.changes:
        logger.info(
            "Reassigned product %s: %s active, %s rows changed",
            product_id, plan.active_count, len(plan.changes),
        )

    return AssignmentResult(
        product_id=product_id,
        edition_size=edition_size,
        active_count=plan.active_count,
        numbers=dict(plan.numbers),
        changed=[c.line_item_id for c in plan.changes],
        surplus=list(plan.surplus),
    )


def reassign(
    product_id: str,
    edition_size=CONFIGURED,
    *,
    store: LedgerStore | None = None,
    timeout=DEFAULT_TIMEOUT,
    source: str | None = None,
    actor: str | None = None,
) -> AssignmentResult:
    """
    Resequence a product's edition numbers under its lock.

    edition_size defaults to the product's configured size; pass None to
    treat the product as an open edition for this pass.

    Raises:
        EditionOverflow: more active entries than edition_size (nothing written)
        LockTimeout: the lock was not acquired within timeout
        PersistenceConflict: the atomic write was rejected
    """
    store = store or get_ledger_store()
    return store.with_product_lock(
        product_id,
        lambda unit: reassign_locked(unit, edition_size=edition_size, source=source, actor=actor),
        timeout=timeout,
    )
