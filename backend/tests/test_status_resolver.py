"""
Status resolver precedence tests.

Each case names the rule that must win; reasons are asserted exactly.
"""

from datetime import datetime

import pytest

from edition_ledger.services.normalizer import LineItemFact, normalize_order
from edition_ledger.services.status_resolver import (
    REASON_ACTIVE,
    REASON_MANUALLY_REMOVED,
    REASON_ORDER_CANCELLED,
    REASON_ORDER_UNPAID,
    REASON_REFUNDED,
    REASON_RESTOCKED,
    STATUS_ACTIVE,
    STATUS_INACTIVE,
    resolve,
)
from ledger_factories import make_line_item, make_order, refund


def fact(**overrides) -> LineItemFact:
    values = dict(
        line_item_id="L1",
        order_id="O1",
        product_id="P",
        quantity=1,
        refunded_quantity=0,
        is_restocked=False,
        order_financial_status="paid",
        order_cancelled_at=None,
        manual_removal_flag=False,
    )
    values.update(overrides)
    return LineItemFact(**values)


CANCELLED = datetime(2026, 1, 2)


@pytest.mark.parametrize(
    "overrides,expected_reason",
    [
        # restock beats everything, including a paid order
        ({"is_restocked": True}, REASON_RESTOCKED),
        ({"is_restocked": True, "refunded_quantity": 1}, REASON_RESTOCKED),
        ({"is_restocked": True, "manual_removal_flag": True, "order_cancelled_at": CANCELLED}, REASON_RESTOCKED),
        # full refund beats manual removal / cancellation / payment
        ({"refunded_quantity": 1, "manual_removal_flag": True}, REASON_REFUNDED),
        ({"refunded_quantity": 2, "quantity": 2, "order_financial_status": "refunded"}, REASON_REFUNDED),
        # manual removal beats cancellation
        ({"manual_removal_flag": True, "order_cancelled_at": CANCELLED}, REASON_MANUALLY_REMOVED),
        # cancellation beats unpaid
        ({"order_cancelled_at": CANCELLED, "order_financial_status": "pending"}, REASON_ORDER_CANCELLED),
        ({"order_financial_status": "voided"}, REASON_ORDER_CANCELLED),
        ({"order_financial_status": "pending"}, REASON_ORDER_UNPAID),
        ({"order_financial_status": "refunded", "quantity": 2, "refunded_quantity": 1}, REASON_ORDER_UNPAID),
    ],
)
def test_inactive_precedence(overrides, expected_reason):
    resolution = resolve(fact(**overrides))
    assert resolution.status == STATUS_INACTIVE
    assert resolution.status_reason == expected_reason


@pytest.mark.parametrize("financial_status", ["paid", "partially_paid", "authorized"])
def test_countable_statuses_are_active(financial_status):
    resolution = resolve(fact(order_financial_status=financial_status))
    assert resolution.status == STATUS_ACTIVE
    assert resolution.status_reason == REASON_ACTIVE


def test_restocked_paid_item_is_never_active():
    resolution = resolve(fact(is_restocked=True, order_financial_status="paid"))
    assert resolution.is_active is False
    assert resolution.status_reason == REASON_RESTOCKED


def test_partial_refund_stays_active():
    resolution = resolve(fact(quantity=2, refunded_quantity=1))
    assert resolution.to_dict() == {"status": STATUS_ACTIVE, "status_reason": REASON_ACTIVE}


def test_zero_quantity_counts_as_refunded():
    assert resolve(fact(quantity=0)).status_reason == REASON_REFUNDED


def test_persisted_manual_override():
    assert resolve(fact(), manual_override=True).status_reason == REASON_MANUALLY_REMOVED
    # A refund is still the more specific reason
    assert resolve(fact(refunded_quantity=1), manual_override=True).status_reason == REASON_REFUNDED


def test_partial_refund_webhook_keeps_item_active():
    order = make_order(1, [make_line_item("L1", "P", quantity=2)], refunds=[refund("L1", 1)])
    resolution = resolve(normalize_order(order)[0])
    assert resolution.status == STATUS_ACTIVE
