from __future__ import annotations

from ..extensions import db
from edition_ledger.time_utils import to_utc_z, utcnow


class ProductEdition(db.Model):
    """
    Per-product edition configuration.

    edition_size NULL means an open edition (no numbering).

    The row is also the database-level lock target for assignment passes:
    SELECT ... FOR UPDATE on it serializes writers across processes on
    databases that honour row locks.
    """
    __tablename__ = "product_editions"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.String(64), nullable=False, unique=True)
    title = db.Column(db.String(255), nullable=True)
    edition_size = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def is_limited(self) -> bool:
        return self.edition_size is not None

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "title": self.title,
            "edition_size": self.edition_size,
            "is_limited": self.is_limited,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
