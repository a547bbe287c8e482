# Overview: Pure mapping from a line item fact to active/inactive plus a reason code.

"""
Status Resolver

Precedence (first match wins):
1. restocked                         -> inactive / restocked
2. refunded_quantity >= quantity     -> inactive / refunded
3. manual removal                    -> inactive / manually_removed
4. cancelled_at set or voided        -> inactive / order_cancelled
5. not paid / partially_paid / authorized -> inactive / order_unpaid
6. otherwise                         -> active / active

The order matters: a restocked-and-refunded item reports "restocked", never
a less specific reason.
"""

from __future__ import annotations

from dataclasses import dataclass

from .normalizer import (
    FINANCIAL_AUTHORIZED,
    FINANCIAL_PAID,
    FINANCIAL_PARTIALLY_PAID,
    FINANCIAL_VOIDED,
    LineItemFact,
)


STATUS_ACTIVE = "active"
STATUS_INACTIVE = "inactive"

REASON_ACTIVE = "active"
REASON_RESTOCKED = "restocked"
REASON_REFUNDED = "refunded"
REASON_MANUALLY_REMOVED = "manually_removed"
REASON_ORDER_CANCELLED = "order_cancelled"
REASON_ORDER_UNPAID = "order_unpaid"

STATUS_REASONS = (
    REASON_RESTOCKED,
    REASON_REFUNDED,
    REASON_MANUALLY_REMOVED,
    REASON_ORDER_CANCELLED,
    REASON_ORDER_UNPAID,
    REASON_ACTIVE,
)

COUNTABLE_FINANCIAL_STATUSES = frozenset({
    FINANCIAL_PAID,
    FINANCIAL_PARTIALLY_PAID,
    FINANCIAL_AUTHORIZED,
})


@dataclass(frozen=True)
class StatusResolution:
    status: str
    status_reason: str

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE

    def to_dict(self) -> dict:
        return {"status": self.status, "status_reason": self.status_reason}


ACTIVE = StatusResolution(STATUS_ACTIVE, REASON_ACTIVE)


def _inactive(reason: str) -> StatusResolution:
    return StatusResolution(STATUS_INACTIVE, reason)


def resolve(fact: LineItemFact, *, manual_override: bool = False) -> StatusResolution:
    """
    Resolve a fact to a status.

    manual_override carries an operator removal persisted in the ledger; it
    ranks with the fact's own manual_removal_flag.
    """
    if fact.is_restocked:
        return _inactive(REASON_RESTOCKED)
    if fact.refunded_quantity >= fact.quantity:
        return _inactive(REASON_REFUNDED)
    if fact.manual_removal_flag or manual_override:
        return _inactive(REASON_MANUALLY_REMOVED)
    if fact.order_cancelled_at is not None or fact.order_financial_status == FINANCIAL_VOIDED:
        return _inactive(REASON_ORDER_CANCELLED)
    if fact.order_financial_status not in COUNTABLE_FINANCIAL_STATUSES:
        return _inactive(REASON_ORDER_UNPAID)
    return ACTIVE


def resolve_removed(fact: LineItemFact, operator_reason: str | None) -> StatusResolution:
    """
    Status of an entry held inactive by an operator removal.

    Always inactive. Restock and refund outrank the removal and replace the
    operator's reason; weaker rules leave the operator's reason in place.
    """
    resolution = resolve(fact, manual_override=True)
    if resolution.status_reason in (REASON_RESTOCKED, REASON_REFUNDED):
        return resolution
    return _inactive(operator_reason or REASON_MANUALLY_REMOVED)
