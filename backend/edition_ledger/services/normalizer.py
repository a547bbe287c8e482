# Overview: Converts raw commerce order payloads into typed line item facts.

"""
Source Event Normalizer

The only place that reads raw order / line item / refund JSON. Everything
downstream consumes LineItemFact.

RULES:
- Total: never raises. Missing or malformed fields fall back to values that
  cannot make a line item count as active (unknown financial status -> pending).
- All refunds on the order are examined, not just the latest one.
- refunded_quantity is clamped to quantity.
- A restock is recorded if ANY signal fires; which signals fired is kept in
  restock_signals so the auditor can flag single-signal restocks.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional

from edition_ledger.time_utils import parse_external_datetime

logger = logging.getLogger(__name__)


FINANCIAL_PENDING = "pending"
FINANCIAL_AUTHORIZED = "authorized"
FINANCIAL_PAID = "paid"
FINANCIAL_PARTIALLY_PAID = "partially_paid"
FINANCIAL_REFUNDED = "refunded"
FINANCIAL_VOIDED = "voided"

FINANCIAL_STATUSES = frozenset({
    FINANCIAL_PENDING,
    FINANCIAL_AUTHORIZED,
    FINANCIAL_PAID,
    FINANCIAL_PARTIALLY_PAID,
    FINANCIAL_REFUNDED,
    FINANCIAL_VOIDED,
})

# The order was paid; per-line refunds are accounted for by refunded_quantity.
FINANCIAL_STATUS_ALIASES = {
    "partially_refunded": FINANCIAL_PAID,
}

# refund_line_items[].restock_type values that put stock back
RESTOCK_TYPES = frozenset({"return", "cancel", "legacy_restock"})

SIGNAL_REFUND_RESTOCK_FLAG = "refund_restock_flag"
SIGNAL_REFUND_RESTOCK_TYPE = "refund_restock_type"
SIGNAL_LINE_RESTOCKED_FLAG = "line_restocked_flag"
SIGNAL_LINE_RESTOCK_TYPE = "line_restock_type"
SIGNAL_STATUS_TEXT = "status_text"

REMOVAL_PROPERTY_NAMES = frozenset({"removed", "_removed"})
TRUTHY_STRINGS = frozenset({"true", "1", "yes"})


@dataclass(frozen=True)
class LineItemFact:
    """Observed state of one line item at the time of the event."""
    line_item_id: str
    order_id: str
    product_id: str
    quantity: int
    refunded_quantity: int
    is_restocked: bool
    order_financial_status: str
    order_cancelled_at: Optional[datetime]
    manual_removal_flag: bool
    restock_signals: tuple[str, ...] = field(default_factory=tuple)
    order_name: Optional[str] = None
    title: Optional[str] = None
    owner_email: Optional[str] = None
    owner_name: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_fully_refunded(self) -> bool:
        return self.refunded_quantity >= self.quantity


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _as_id(value: Any) -> str:
    if value is None or isinstance(value, bool):
        return ""
    return str(value).strip()


def _coerce_count(value: Any, *, default: int, label: str) -> int:
    """Non-negative int, or default (logged) when missing/malformed."""
    if isinstance(value, bool):
        logger.warning("Ignoring boolean %s=%r; using %s", label, value, default)
        return default
    if isinstance(value, int):
        count = value
    elif isinstance(value, str) and value.strip().isdigit():
        count = int(value.strip())
    else:
        if value is not None:
            logger.warning("Malformed %s=%r; using %s", label, value, default)
        return default
    if count < 0:
        logger.warning("Negative %s=%r; using %s", label, value, default)
        return default
    return count


def _is_truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in TRUTHY_STRINGS
    return False


def normalize_financial_status(value: Any) -> str:
    """Map the order's financial status onto the known set; unknown -> pending."""
    raw = value.strip().lower() if isinstance(value, str) else ""
    raw = FINANCIAL_STATUS_ALIASES.get(raw, raw)
    if raw in FINANCIAL_STATUSES:
        return raw
    logger.warning("Unknown financial_status %r; treating as pending", value)
    return FINANCIAL_PENDING


def _owner_email(order: dict) -> Optional[str]:
    email = order.get("email") or _as_dict(order.get("customer")).get("email")
    if not isinstance(email, str):
        return None
    email = email.strip().lower()
    return email or None


def _owner_name(order: dict) -> Optional[str]:
    for key in ("customer", "shipping_address", "billing_address"):
        source = _as_dict(order.get(key))
        first = source.get("first_name") or ""
        last = source.get("last_name") or ""
        if first or last:
            return f"{first} {last}".strip()
    return None


def _restock_signals_for_line(line_item: dict) -> list[str]:
    signals = []
    if line_item.get("restocked") is True:
        signals.append(SIGNAL_LINE_RESTOCKED_FLAG)
    restock_type = line_item.get("restock_type")
    if isinstance(restock_type, str) and restock_type.strip().lower() in RESTOCK_TYPES:
        signals.append(SIGNAL_LINE_RESTOCK_TYPE)
    for key in ("fulfillment_status", "status"):
        text = line_item.get(key)
        if isinstance(text, str) and "restock" in text.lower():
            signals.append(SIGNAL_STATUS_TEXT)
            break
    return signals


def _has_removal_property(line_item: dict) -> bool:
    for prop in _as_list(line_item.get("properties")):
        prop = _as_dict(prop)
        name = prop.get("name", prop.get("key"))
        if isinstance(name, str) and name.strip().lower() in REMOVAL_PROPERTY_NAMES:
            if _is_truthy(prop.get("value")):
                return True
    return False


def normalize(
    raw_order: Any,
    raw_line_item: Any,
    raw_refunds: Optional[Iterable[Any]] = None,
) -> LineItemFact:
    """
    Build a LineItemFact for one line item of an order.

    raw_refunds defaults to raw_order["refunds"] when not given.
    """
    order = _as_dict(raw_order)
    line_item = _as_dict(raw_line_item)
    if raw_refunds is None:
        raw_refunds = order.get("refunds")
    refunds = raw_refunds if isinstance(raw_refunds, (list, tuple)) else []

    line_item_id = _as_id(line_item.get("id"))
    order_id = _as_id(order.get("id"))
    product_id = _as_id(line_item.get("product_id"))

    if "quantity" not in line_item:
        logger.info("Line item %s has no quantity; assuming 1", line_item_id)
    quantity = _coerce_count(line_item.get("quantity"), default=1, label="quantity")

    refunded_quantity = 0
    signals = _restock_signals_for_line(line_item)

    for refund in refunds:
        for refund_line in _as_list(_as_dict(refund).get("refund_line_items")):
            refund_line = _as_dict(refund_line)
            if _as_id(refund_line.get("line_item_id")) != line_item_id:
                continue
            # A refund line with no quantity refunds the whole line
            refunded_quantity += _coerce_count(
                refund_line.get("quantity"), default=quantity, label="refund quantity"
            )
            if refund_line.get("restock") is True:
                signals.append(SIGNAL_REFUND_RESTOCK_FLAG)
            restock_type = refund_line.get("restock_type")
            if isinstance(restock_type, str) and restock_type.strip().lower() in RESTOCK_TYPES:
                signals.append(SIGNAL_REFUND_RESTOCK_TYPE)

    if refunded_quantity > quantity:
        logger.warning(
            "Line item %s refunded %s of %s units (double refund?); clamping",
            line_item_id, refunded_quantity, quantity,
        )
        refunded_quantity = quantity

    manual_removal = _has_removal_property(line_item)
    if not manual_removal and "current_quantity" in line_item:
        # Removed through an order edit
        current = _coerce_count(line_item.get("current_quantity"), default=quantity, label="current_quantity")
        manual_removal = current == 0 and refunded_quantity < quantity

    title = line_item.get("title") or line_item.get("name")
    order_name = order.get("name")

    return LineItemFact(
        line_item_id=line_item_id,
        order_id=order_id,
        product_id=product_id,
        quantity=quantity,
        refunded_quantity=refunded_quantity,
        is_restocked=bool(signals),
        order_financial_status=normalize_financial_status(order.get("financial_status")),
        order_cancelled_at=parse_external_datetime(order.get("cancelled_at")),
        manual_removal_flag=manual_removal,
        restock_signals=tuple(dict.fromkeys(signals)),
        order_name=order_name if isinstance(order_name, str) else None,
        title=title if isinstance(title, str) else None,
        owner_email=_owner_email(order),
        owner_name=_owner_name(order),
        created_at=parse_external_datetime(order.get("created_at")),
    )


def normalize_order(raw_order: Any) -> list[LineItemFact]:
    """Facts for every line item on an order, in payload order."""
    order = _as_dict(raw_order)
    refunds = order.get("refunds")
    return [normalize(order, li, refunds) for li in _as_list(order.get("line_items"))]
