# Overview: Service-layer operations for orders; checkout is one transaction over stock, order rows, cart and events.

"""
Order Transaction Manager

create_order() is the only path that creates orders. It runs:

1. input normalization (no transaction yet)
2. BEGIN (IMMEDIATE on SQLite)
3. lock + decrement every product in ascending product id order
4. insert the order and its item snapshots
5. clear the buyer's cart
6. enqueue realtime events in the outbox
7. commit, then dispatch events and send the confirmation email

Any failure before commit rolls back all of it. Nothing observable happens
outside the transaction until it has committed.
"""

from __future__ import annotations

from ..extensions import db
from ..models import Order, OrderItem, Product
from ..validation import ValidationError, normalize_line_items
from . import cart_service, event_service, notification_service, stock_service
from .concurrency import begin_write_transaction, lock_for_update, run_with_retry


ORDER_STATUS_PENDING = "pending"
ORDER_STATUS_PAID = "paid"
ORDER_STATUS_PREPARING = "preparing"
ORDER_STATUS_SHIPPED = "shipped"
ORDER_STATUS_COMPLETED = "completed"
ORDER_STATUS_CANCELLED = "cancelled"

VALID_ORDER_STATUSES = (
    ORDER_STATUS_PENDING,
    ORDER_STATUS_PAID,
    ORDER_STATUS_PREPARING,
    ORDER_STATUS_SHIPPED,
    ORDER_STATUS_COMPLETED,
    ORDER_STATUS_CANCELLED,
)
CANCELLABLE_STATUSES = frozenset({ORDER_STATUS_PENDING, ORDER_STATUS_PAID})

SOURCE_ONLINE = "online"
SOURCE_POS = "pos"
VALID_SOURCES = (SOURCE_ONLINE, SOURCE_POS)

VALID_PAYMENT_METHODS = ("cash", "card", "stripe", "cod", "gcash", "maya", "bank_transfer", "store_credit")
DEFAULT_POS_PAYMENT_METHOD = "cash"
DEFAULT_ONLINE_PAYMENT_METHOD = "stripe"

POS_SHIPPING_ADDRESS = "In-store purchase"


class OrderError(Exception):
    """Raised for order operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class OrderNotFound(OrderError):
    pass


class OrderAccessDenied(OrderError):
    pass


class OrderStateError(OrderError):
    pass


def _resolve_payment_method(source: str, payment_method: str | None) -> str:
    method = (payment_method or "").strip().lower()
    if not method:
        return DEFAULT_POS_PAYMENT_METHOD if source == SOURCE_POS else DEFAULT_ONLINE_PAYMENT_METHOD
    if method not in VALID_PAYMENT_METHODS:
        raise ValidationError(f"payment_method must be one of: {', '.join(VALID_PAYMENT_METHODS)}")
    return method


def _resolve_guest(guest_info: dict | None) -> tuple[str | None, str | None]:
    if not guest_info:
        return None, None
    if not isinstance(guest_info, dict):
        raise ValidationError("guest_info must be an object")
    name = (guest_info.get("name") or "").strip() or None
    email = (guest_info.get("email") or "").strip() or None
    return name, email


def create_order(
    *,
    items,
    shipping_address: str | None,
    total_cents: int,
    payment_intent_id: str | None = None,
    discount_cents: int = 0,
    source: str = SOURCE_ONLINE,
    payment_method: str | None = None,
    user_id: int | None = None,
    guest_info: dict | None = None,
    cashier_id: int | None = None,
    promo_code: str | None = None,
    amount_tendered_cents: int | None = None,
    change_due_cents: int | None = None,
) -> Order:
    """
    Place an order and decrement stock for every line, atomically.

    Raises:
        ValidationError: malformed input (before any transaction)
        ProductNotFound / InsufficientStock: nothing was written
    """
    lines = normalize_line_items(items, kind="order")

    if source not in VALID_SOURCES:
        raise ValidationError(f"source must be one of: {', '.join(VALID_SOURCES)}")
    if total_cents is None or total_cents < 0:
        raise ValidationError("total_cents must be a non-negative amount")
    if discount_cents is None or discount_cents < 0:
        raise ValidationError("discount_cents cannot be negative")

    method = _resolve_payment_method(source, payment_method)
    guest_name, guest_email = _resolve_guest(guest_info)

    if source == SOURCE_POS:
        # POS sales are walk-in: no customer account, cashier is attributed
        owner_id = None
        address = (shipping_address or "").strip() or POS_SHIPPING_ADDRESS
    else:
        owner_id = user_id
        cashier_id = None
        address = (shipping_address or "").strip()
        if not address:
            raise ValidationError("shipping_address is required for online orders")
        if owner_id is None and not guest_email:
            raise ValidationError("guest_info.email is required for guest checkout")

    actor_id = cashier_id if source == SOURCE_POS else owner_id

    def _op():
        begin_write_transaction()

        changes = []
        for line in lines:
            changes.append(
                stock_service.try_decrement(
                    line.product_id,
                    line.quantity,
                    reason=stock_service.REASON_ORDER,
                    adjusted_by=actor_id,
                    reference_type="order",
                )
            )

        order = Order(
            user_id=owner_id,
            guest_name=guest_name if owner_id is None else None,
            guest_email=guest_email if owner_id is None else None,
            status=ORDER_STATUS_PAID,
            source=source,
            total_cents=total_cents,
            discount_cents=discount_cents or 0,
            payment_method=method,
            payment_intent_id=payment_intent_id,
            shipping_address=address,
            promo_code_used=promo_code,
            amount_tendered_cents=amount_tendered_cents,
            change_due_cents=change_due_cents,
            cashier_id=cashier_id,
        )
        for line in lines:
            product = db.session.get(Product, line.product_id)
            order.items.append(
                OrderItem(
                    product_id=product.id,
                    product_name=product.name,
                    product_price_cents=product.price_cents,
                    quantity=line.quantity,
                )
            )
        db.session.add(order)
        db.session.flush()

        for change in changes:
            if change.adjustment_record is not None:
                change.adjustment_record.reference_id = order.id

        if owner_id is not None:
            cart_service.clear_cart(owner_id)

        event_service.enqueue_order_created(order.to_dict(include_items=True))
        for change in changes:
            event_service.enqueue_stock_change(change)

        db.session.commit()
        return order

    order = run_with_retry(_op)

    event_service.publish_pending_events()
    notification_service.notify_order_confirmation(order)
    return order


def _locked_order(order_id: int) -> Order:
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
    if order is None:
        raise OrderNotFound(f"Order {order_id} not found")
    return order


def cancel_order(order_id: int, *, user_id: int, is_staff: bool = False) -> Order:
    """
    Cancel a pending or paid order.

    Pure status transition: stock is not restored (a return is the path
    back into inventory).
    """
    def _op():
        begin_write_transaction()
        order = _locked_order(order_id)
        if not is_staff and order.user_id != user_id:
            raise OrderAccessDenied("Access denied")
        if order.status not in CANCELLABLE_STATUSES:
            raise OrderStateError(
                "Order cannot be cancelled once it is being prepared or shipped",
                details={"status": order.status},
            )
        order.status = ORDER_STATUS_CANCELLED
        db.session.flush()
        event_service.enqueue_order_updated(order.to_dict())
        db.session.commit()
        return order

    order = run_with_retry(_op)
    event_service.publish_pending_events()
    return order


def update_order_status(order_id: int, status: str) -> Order:
    if status not in VALID_ORDER_STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(VALID_ORDER_STATUSES)}")

    def _op():
        begin_write_transaction()
        order = _locked_order(order_id)
        if order.status == status:
            db.session.rollback()
            return order
        order.status = status
        db.session.flush()
        event_service.enqueue_order_updated(order.to_dict())
        db.session.commit()
        return order

    order = run_with_retry(_op)
    event_service.publish_pending_events()
    return order


def get_order(order_id: int, *, user_id: int | None, is_staff: bool = False) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise OrderNotFound(f"Order {order_id} not found")
    if not is_staff and (user_id is None or order.user_id != user_id):
        raise OrderAccessDenied("Access denied")
    return order


def list_orders(status: str | None = None, source: str | None = None, limit: int = 100) -> list[Order]:
    query = db.session.query(Order)
    if status:
        query = query.filter(Order.status == status)
    if source:
        query = query.filter(Order.source == source)
    return query.order_by(Order.created_at.desc(), Order.id.desc()).limit(max(1, min(limit, 500))).all()


def list_user_orders(user_id: int) -> list[Order]:
    return (
        db.session.query(Order)
        .filter(Order.user_id == user_id)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .all()
    )
