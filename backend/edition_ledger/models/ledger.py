from __future__ import annotations

from ..extensions import db
from edition_ledger.time_utils import to_utc_z, utcnow


class LedgerEntry(db.Model):
    """
    One purchased line item as seen by the edition ledger.

    INVARIANTS:
    - status is "active" or "inactive"; status_reason explains the last transition.
    - edition_number is NULL whenever status is "inactive".
    - For a limited edition, active edition numbers are exactly 1..k (no gaps, no duplicates).
    - Rows are never hard-deleted; certificates and audits keep referring to them.

    edition_total is a display snapshot of the edition size at assignment time.
    The product_editions row is authoritative.

    The fact columns (quantity, refunded_quantity, is_restocked, financial_status,
    order_cancelled_at) record what the commerce backend reported at the last sync,
    so an operator restore can re-resolve without refetching the order.
    """
    __tablename__ = "ledger_entries"
    __table_args__ = (
        db.Index("ix_ledger_entries_product_status", "product_id", "status"),
        db.Index("ix_ledger_entries_product_edition", "product_id", "edition_number"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    line_item_id = db.Column(db.String(64), nullable=False, unique=True)
    product_id = db.Column(db.String(64), nullable=False, index=True)
    order_id = db.Column(db.String(64), nullable=False, index=True)
    order_name = db.Column(db.String(64), nullable=True)
    title = db.Column(db.String(255), nullable=True)

    status = db.Column(db.String(16), nullable=False, default="inactive")  # active, inactive
    status_reason = db.Column(db.String(32), nullable=False, default="order_unpaid")

    edition_number = db.Column(db.Integer, nullable=True)
    edition_total = db.Column(db.Integer, nullable=True)

    # Operator removal survives later syncs until explicitly restored
    manual_override = db.Column(db.Boolean, nullable=False, default=False)

    # Last observed commerce facts
    quantity = db.Column(db.Integer, nullable=False, default=1)
    refunded_quantity = db.Column(db.Integer, nullable=False, default=0)
    is_restocked = db.Column(db.Boolean, nullable=False, default=False)
    financial_status = db.Column(db.String(32), nullable=False, default="pending")
    order_cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    owner_email = db.Column(db.String(255), nullable=True, index=True)
    owner_name = db.Column(db.String(255), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def __repr__(self) -> str:
        return (
            f"<LedgerEntry line_item_id={self.line_item_id!r} product_id={self.product_id!r} "
            f"status={self.status} edition={self.edition_number}/{self.edition_total}>"
        )

    def to_dict(self) -> dict:
        return {
            "line_item_id": self.line_item_id,
            "product_id": self.product_id,
            "order_id": self.order_id,
            "order_name": self.order_name,
            "title": self.title,
            "status": self.status,
            "status_reason": self.status_reason,
            "edition_number": self.edition_number,
            "edition_total": self.edition_total,
            "manual_override": self.manual_override,
            "quantity": self.quantity,
            "refunded_quantity": self.refunded_quantity,
            "is_restocked": self.is_restocked,
            "financial_status": self.financial_status,
            "order_cancelled_at": to_utc_z(self.order_cancelled_at) if self.order_cancelled_at else None,
            "owner": {
                "email": self.owner_email,
                "name": self.owner_name,
            },
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class EditionEvent(db.Model):
    """
    Append-only audit trail for ledger entries.

    - Written in the same transaction as the change it records.
    - No updates or deletes of existing events.
    """
    __tablename__ = "edition_events"
    __table_args__ = (
        db.Index("ix_edition_events_line_item_created", "line_item_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    line_item_id = db.Column(db.String(64), nullable=False)
    product_id = db.Column(db.String(64), nullable=False, index=True)

    # entry_created, status_changed, edition_assigned, edition_cleared, manual_removal, manual_restore
    event_type = db.Column(db.String(32), nullable=False, index=True)
    status_reason = db.Column(db.String(32), nullable=True)
    edition_number = db.Column(db.Integer, nullable=True)

    # webhook, admin, repair, cli ...
    source = db.Column(db.String(32), nullable=True)
    actor = db.Column(db.String(255), nullable=True)

    payload = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "line_item_id": self.line_item_id,
            "product_id": self.product_id,
            "event_type": self.event_type,
            "status_reason": self.status_reason,
            "edition_number": self.edition_number,
            "source": self.source,
            "actor": self.actor,
            "payload": self.payload,
            "created_at": to_utc_z(self.created_at),
        }
