from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class Return(db.Model):
    """
    Customer return request.

    State machine: pending -> approved | rejected, approved -> refunded.
    Stock is restored only when the refund is processed.
    """
    __tablename__ = "returns"
    __table_args__ = (
        db.CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'refunded')",
            name="ck_returns_status",
        ),
        db.CheckConstraint("return_type IN ('online', 'in-store')", name="ck_returns_type"),
        db.CheckConstraint("refund_amount_cents >= 0", name="ck_returns_refund_nonnegative"),
        db.Index("ix_returns_order", "order_id"),
        db.Index("ix_returns_user", "user_id"),
        db.Index("ix_returns_status", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)

    status = db.Column(db.String(32), nullable=False, default="pending")
    refund_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    reason = db.Column(db.Text, nullable=False)
    return_type = db.Column(db.String(16), nullable=False, default="online")
    rejection_reason = db.Column(db.Text, nullable=True)

    approved_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refunded_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    items = db.relationship(
        "ReturnItem",
        backref="return_doc",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="ReturnItem.product_id",
    )
    order = db.relationship("Order", backref=db.backref("returns", lazy=True))
    refund = db.relationship("Refund", backref="return_doc", uselist=False, lazy=True)

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Return id={self.id} order_id={self.order_id} status={self.status!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "user_id": self.user_id,
            "status": self.status,
            "items": [item.to_dict() for item in self.items],
            "refund_amount_cents": self.refund_amount_cents,
            "reason": self.reason,
            "return_type": self.return_type,
            "rejection_reason": self.rejection_reason,
            "approved_by_user_id": self.approved_by_user_id,
            "approved_at": to_utc_z(self.approved_at),
            "rejected_by_user_id": self.rejected_by_user_id,
            "rejected_at": to_utc_z(self.rejected_at),
            "refunded_by_user_id": self.refunded_by_user_id,
            "refunded_at": to_utc_z(self.refunded_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class ReturnItem(db.Model):
    __tablename__ = "return_items"
    __table_args__ = (
        db.UniqueConstraint("return_id", "product_id", name="uq_return_items_return_product"),
        db.CheckConstraint("quantity > 0", name="ck_return_items_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    return_id = db.Column(db.Integer, db.ForeignKey("returns.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = db.Column(db.Integer, nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)

    def to_dict(self) -> dict:
        return {"product_id": self.product_id, "quantity": self.quantity}


class Refund(db.Model):
    """At most one refund per return, enforced by the unique return_id."""
    __tablename__ = "refunds"
    __table_args__ = (
        db.CheckConstraint("method IN ('original', 'store_credit')", name="ck_refunds_method"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    return_id = db.Column(db.Integer, db.ForeignKey("returns.id"), nullable=False, unique=True)
    payment_reference = db.Column(db.String(255), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    method = db.Column(db.String(32), nullable=False)
    processed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "return_id": self.return_id,
            "payment_reference": self.payment_reference,
            "amount_cents": self.amount_cents,
            "method": self.method,
            "processed_by_user_id": self.processed_by_user_id,
            "processed_at": to_utc_z(self.processed_at),
        }
