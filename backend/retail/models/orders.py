from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class Cart(db.Model):
    __tablename__ = "carts"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    items = db.relationship(
        "CartItem",
        backref="cart",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="CartItem.id",
    )

    def to_dict(self) -> dict:
        items = [item.to_dict() for item in self.items]
        return {
            "id": self.id,
            "user_id": self.user_id,
            "items": items,
            "item_count": sum(item["quantity"] for item in items),
            "subtotal_cents": sum(item["line_total_cents"] or 0 for item in items),
            "updated_at": to_utc_z(self.updated_at),
        }


class CartItem(db.Model):
    __tablename__ = "cart_items"
    __table_args__ = (
        db.UniqueConstraint("cart_id", "product_id", name="uq_cart_items_cart_product"),
        db.CheckConstraint("quantity > 0", name="ck_cart_items_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    cart_id = db.Column(db.Integer, db.ForeignKey("carts.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        product = self.product
        price = product.price_cents if product is not None else None
        return {
            "id": self.id,
            "product_id": self.product_id,
            "name": product.name if product is not None else None,
            "price_cents": price,
            "stock_quantity": product.stock_quantity if product is not None else None,
            "quantity": self.quantity,
            "line_total_cents": price * self.quantity if price is not None else None,
        }


class Order(db.Model):
    """
    Customer order, online or POS.

    Stock is decremented in the same transaction that inserts the order, so
    an order row never exists without its stock effect.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.CheckConstraint(
            "status IN ('pending', 'paid', 'preparing', 'shipped', 'completed', 'cancelled')",
            name="ck_orders_status",
        ),
        db.CheckConstraint("source IN ('online', 'pos')", name="ck_orders_source"),
        db.CheckConstraint("total_cents >= 0", name="ck_orders_total_nonnegative"),
        db.Index("ix_orders_user", "user_id"),
        db.Index("ix_orders_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    guest_name = db.Column(db.String(255), nullable=True)
    guest_email = db.Column(db.String(255), nullable=True)

    status = db.Column(db.String(32), nullable=False, default="pending")
    source = db.Column(db.String(16), nullable=False, default="online")

    total_cents = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)

    payment_method = db.Column(db.String(32), nullable=True)
    payment_intent_id = db.Column(db.String(255), nullable=True)
    shipping_address = db.Column(db.Text, nullable=False)
    promo_code_used = db.Column(db.String(64), nullable=True)

    # POS cash handling
    amount_tendered_cents = db.Column(db.Integer, nullable=True)
    change_due_cents = db.Column(db.Integer, nullable=True)
    cashier_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )
    user = db.relationship("User", foreign_keys=[user_id])
    cashier = db.relationship("User", foreign_keys=[cashier_id])

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def customer_email(self) -> str | None:
        if self.user is not None:
            return self.user.email
        return self.guest_email

    @property
    def customer_name(self) -> str | None:
        if self.user is not None:
            return self.user.name
        return self.guest_name

    def __repr__(self) -> str:
        return f"<Order id={self.id} status={self.status!r} source={self.source!r} total_cents={self.total_cents}>"

    def to_dict(self, include_items: bool = False) -> dict:
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "guest_name": self.guest_name,
            "guest_email": self.guest_email,
            "status": self.status,
            "source": self.source,
            "total_cents": self.total_cents,
            "discount_cents": self.discount_cents,
            "payment_method": self.payment_method,
            "payment_intent_id": self.payment_intent_id,
            "shipping_address": self.shipping_address,
            "promo_code_used": self.promo_code_used,
            "amount_tendered_cents": self.amount_tendered_cents,
            "change_due_cents": self.change_due_cents,
            "cashier_id": self.cashier_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class OrderItem(db.Model):
    """Immutable snapshot of a product line at sale time."""
    __tablename__ = "order_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        db.Index("ix_order_items_order", "order_id"),
        db.Index("ix_order_items_product", "product_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id", ondelete="SET NULL"), nullable=True)
    product_name = db.Column(db.String(255), nullable=False)
    product_price_cents = db.Column(db.Integer, nullable=False)
    quantity = db.Column(db.Integer, nullable=False)

    @property
    def line_total_cents(self) -> int:
        return self.product_price_cents * self.quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "product_price_cents": self.product_price_cents,
            "quantity": self.quantity,
            "line_total_cents": self.line_total_cents,
        }
