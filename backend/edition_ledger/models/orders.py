from __future__ import annotations

from ..extensions import db
from edition_ledger.time_utils import to_utc_z, utcnow


class OrderSnapshot(db.Model):
    """
    Last raw order payload received from the commerce backend.

    Used as the external view by the reconciliation auditor when no live
    commerce client is configured.
    """
    __tablename__ = "order_snapshots"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(64), nullable=False, unique=True)
    order_name = db.Column(db.String(64), nullable=True)
    payload = db.Column(db.JSON, nullable=False)
    received_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "order_name": self.order_name,
            "received_at": to_utc_z(self.received_at),
        }
