from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class StockAdjustment(db.Model):
    """
    Append-only audit trail of stock movements.

    Rows are written best-effort inside a savepoint; products.stock_quantity
    stays authoritative if a row is missing.
    """
    __tablename__ = "stock_adjustments"
    __table_args__ = (
        db.CheckConstraint(
            "reason IN ('order', 'return', 'damaged', 'lost', 'correction', 'transfer', "
            "'received', 'expired', 'manual', 'bulk')",
            name="ck_stock_adjustments_reason",
        ),
        db.Index("ix_stock_adjustments_product_created", "product_id", "created_at"),
        db.Index("ix_stock_adjustments_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    quantity_change = db.Column(db.Integer, nullable=False)
    previous_quantity = db.Column(db.Integer, nullable=False)
    new_quantity = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(32), nullable=False)
    note = db.Column(db.Text, nullable=True)
    adjusted_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    reference_type = db.Column(db.String(32), nullable=True)
    reference_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product is not None else None,
            "quantity_change": self.quantity_change,
            "previous_quantity": self.previous_quantity,
            "new_quantity": self.new_quantity,
            "reason": self.reason,
            "note": self.note,
            "adjusted_by_user_id": self.adjusted_by_user_id,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "created_at": to_utc_z(self.created_at),
        }


class StoreCreditEntry(db.Model):
    """Append-only store credit ledger. Balance = SUM(amount_cents) per user."""
    __tablename__ = "store_credit_entries"
    __table_args__ = (
        db.Index("ix_store_credit_entries_user_created", "user_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.Text, nullable=False)
    reference_id = db.Column(db.Integer, nullable=True)
    reference_type = db.Column(db.String(32), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "amount_cents": self.amount_cents,
            "reason": self.reason,
            "reference_id": self.reference_id,
            "reference_type": self.reference_type,
            "created_at": to_utc_z(self.created_at),
        }


class EventOutbox(db.Model):
    """
    Realtime events written in the same transaction as the state change
    they describe, and emitted to subscribers only after commit.
    """
    __tablename__ = "event_outbox"
    __table_args__ = (
        db.CheckConstraint("status IN ('NEW', 'PUBLISHED', 'FAILED')", name="ck_event_outbox_status"),
        db.Index("ix_event_outbox_status_id", "status", "id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    event_name = db.Column(db.String(64), nullable=False)
    rooms = db.Column(db.JSON, nullable=False)
    payload = db.Column(db.JSON, nullable=False)
    status = db.Column(db.String(16), nullable=False, default="NEW")
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    published_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_name": self.event_name,
            "rooms": list(self.rooms or []),
            "payload": self.payload,
            "status": self.status,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "created_at": to_utc_z(self.created_at),
            "published_at": to_utc_z(self.published_at),
        }
