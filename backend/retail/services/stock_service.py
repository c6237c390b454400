# Overview: Service-layer operations for stock; the only writer of products.stock_quantity.

"""
Stock Ledger

Invariants:
- products.stock_quantity is authoritative and never negative. Decrements
  are checked against the locked current value and never clamped; the
  CHECK constraint backs this up at the database level.
- Every mutation reads the row under lock_for_update() inside a write
  transaction (BEGIN IMMEDIATE on SQLite), so two writers can never both
  observe the same pre-image.
- try_decrement / increment run inside the caller's transaction and never
  commit. The manual operations below (adjust_stock, set_stock,
  bulk_update_stock) own their transaction.
- Multi-product writers lock rows in ascending product id order.
- StockAdjustment rows are best-effort audit; a failure to write one rolls
  back only its savepoint.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Product, StockAdjustment
from ..validation import ValidationError, coerce_int
from . import event_service
from .concurrency import begin_write_transaction, lock_for_update, run_with_retry

logger = logging.getLogger(__name__)


REASON_ORDER = "order"
REASON_RETURN = "return"
REASON_MANUAL = "manual"
REASON_BULK = "bulk"

ADJUSTMENT_REASONS = (
    "order", "return", "damaged", "lost", "correction",
    "transfer", "received", "expired", "manual", "bulk",
)
# Reasons reserved for the order and refund paths
SYSTEM_REASONS = frozenset({REASON_ORDER, REASON_RETURN})

ADJUSTMENT_TYPES = ("set", "add", "subtract")


class StockError(Exception):
    """Raised when a stock operation is not allowed."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class ProductNotFound(StockError):
    def __init__(self, product_id: int):
        super().__init__(f"Product {product_id} not found", details={"product_id": product_id})
        self.product_id = product_id


class InsufficientStock(StockError):
    def __init__(self, product_id: int, product_name: str, requested: int, available: int):
        super().__init__(
            f"Insufficient stock for {product_name}: requested {requested}, available {available}",
            details={
                "product_id": product_id,
                "product_name": product_name,
                "requested": requested,
                "available": available,
            },
        )
        self.product_id = product_id
        self.product_name = product_name
        self.requested = requested
        self.available = available


class NegativeStock(StockError):
    def __init__(self, product_id: int, product_name: str, current: int, change: int):
        super().__init__(
            f"Stock for {product_name} cannot go below zero (current {current}, change {change})",
            details={
                "product_id": product_id,
                "product_name": product_name,
                "current": current,
                "change": change,
            },
        )


@dataclass(frozen=True)
class StockChange:
    product_id: int
    name: str
    previous_quantity: int
    new_quantity: int
    low_stock_threshold: int
    adjustment_record: StockAdjustment | None = None

    @property
    def adjustment(self) -> int:
        return self.new_quantity - self.previous_quantity

    @property
    def is_low_stock(self) -> bool:
        return self.new_quantity <= self.low_stock_threshold

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "name": self.name,
            "previous_quantity": self.previous_quantity,
            "new_quantity": self.new_quantity,
            "adjustment": self.adjustment,
            "low_stock_threshold": self.low_stock_threshold,
            "is_low_stock": self.is_low_stock,
        }


def _lock_product(product_id: int) -> Product:
    product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
    if product is None:
        raise ProductNotFound(product_id)
    return product


def record_adjustment(
    *,
    product_id: int,
    quantity_change: int,
    previous_quantity: int,
    new_quantity: int,
    reason: str,
    note: str | None = None,
    adjusted_by: int | None = None,
    reference_type: str | None = None,
    reference_id: int | None = None,
) -> StockAdjustment | None:
    """
    Append an adjustment audit row inside a savepoint.

    Returns None (and logs) if the row could not be written; the caller's
    transaction is left intact.
    """
    adjustment = StockAdjustment(
        product_id=product_id,
        quantity_change=quantity_change,
        previous_quantity=previous_quantity,
        new_quantity=new_quantity,
        reason=reason,
        note=note,
        adjusted_by_user_id=adjusted_by,
        reference_type=reference_type,
        reference_id=reference_id,
    )
    try:
        with db.session.begin_nested():
            db.session.add(adjustment)
    except SQLAlchemyError as exc:
        logger.warning("Could not record stock adjustment for product %s: %s", product_id, exc)
        return None
    return adjustment


def _apply(
    product: Product,
    new_quantity: int,
    *,
    reason: str,
    note: str | None,
    adjusted_by: int | None,
    reference_type: str | None,
    reference_id: int | None,
) -> StockChange:
    previous = product.stock_quantity
    adjustment = record_adjustment(
        product_id=product.id,
        quantity_change=new_quantity - previous,
        previous_quantity=previous,
        new_quantity=new_quantity,
        reason=reason,
        note=note,
        adjusted_by=adjusted_by,
        reference_type=reference_type,
        reference_id=reference_id,
    )
    product.stock_quantity = new_quantity
    db.session.flush()
    return StockChange(
        product_id=product.id,
        name=product.name,
        previous_quantity=previous,
        new_quantity=new_quantity,
        low_stock_threshold=product.low_stock_threshold,
        adjustment_record=adjustment,
    )


# =============================================================================
# IN-TRANSACTION PRIMITIVES
# =============================================================================

def try_decrement(
    product_id: int,
    quantity: int,
    *,
    reason: str = REASON_ORDER,
    adjusted_by: int | None = None,
    note: str | None = None,
    reference_type: str | None = None,
    reference_id: int | None = None,
) -> StockChange:
    """
    Lock the product row and remove `quantity` units.

    Must run inside an open write transaction; does not commit.
    Raises ProductNotFound or InsufficientStock, leaving the row unchanged.
    """
    if quantity <= 0:
        raise ValidationError("quantity must be a positive integer")

    product = _lock_product(product_id)
    current = product.stock_quantity
    if current < quantity:
        raise InsufficientStock(product.id, product.name, quantity, current)

    return _apply(
        product,
        current - quantity,
        reason=reason,
        note=note,
        adjusted_by=adjusted_by,
        reference_type=reference_type,
        reference_id=reference_id,
    )


def increment(
    product_id: int,
    quantity: int,
    *,
    reason: str = REASON_RETURN,
    adjusted_by: int | None = None,
    note: str | None = None,
    reference_type: str | None = None,
    reference_id: int | None = None,
) -> StockChange:
    """Lock the product row and add `quantity` units. Does not commit."""
    if quantity <= 0:
        raise ValidationError("quantity must be a positive integer")

    product = _lock_product(product_id)
    return _apply(
        product,
        product.stock_quantity + quantity,
        reason=reason,
        note=note,
        adjusted_by=adjusted_by,
        reference_type=reference_type,
        reference_id=reference_id,
    )


# =============================================================================
# MANUAL OPERATIONS (own transaction)
# =============================================================================

def _validate_manual_reason(reason: str) -> str:
    if reason not in ADJUSTMENT_REASONS or reason in SYSTEM_REASONS:
        allowed = ", ".join(r for r in ADJUSTMENT_REASONS if r not in SYSTEM_REASONS)
        raise ValidationError(f"reason must be one of: {allowed}")
    return reason


def adjust_stock(
    *,
    product_id: int,
    quantity_change,
    reason: str = REASON_MANUAL,
    note: str | None = None,
    adjusted_by: int | None = None,
) -> StockChange:
    """
    Apply a signed manual correction (damaged, lost, received, ...).

    Rejects results below zero with NegativeStock. Commits and dispatches
    inventory events.
    """
    change_by = coerce_int(quantity_change, "quantity_change")
    if change_by == 0:
        raise ValidationError("quantity_change cannot be zero")
    _validate_manual_reason(reason)

    def _op():
        begin_write_transaction()
        product = _lock_product(product_id)
        current = product.stock_quantity
        if current + change_by < 0:
            raise NegativeStock(product.id, product.name, current, change_by)
        change = _apply(
            product,
            current + change_by,
            reason=reason,
            note=note,
            adjusted_by=adjusted_by,
            reference_type=None,
            reference_id=None,
        )
        event_service.enqueue_stock_change(change)
        db.session.commit()
        return change

    change = run_with_retry(_op)
    event_service.publish_pending_events()
    return change


def set_stock(
    *,
    product_id: int,
    quantity,
    adjustment_type: str = "set",
    note: str | None = None,
    adjusted_by: int | None = None,
) -> StockChange:
    """
    Set, add to, or subtract from a product's stock level.

    "set" with the current value is a no-op that still reports the level.
    """
    amount = coerce_int(quantity, "quantity")
    if amount < 0:
        raise ValidationError("quantity cannot be negative")
    if adjustment_type not in ADJUSTMENT_TYPES:
        raise ValidationError(f"adjustment_type must be one of: {', '.join(ADJUSTMENT_TYPES)}")

    def _op():
        begin_write_transaction()
        product = _lock_product(product_id)
        current = product.stock_quantity
        if adjustment_type == "add":
            target = current + amount
        elif adjustment_type == "subtract":
            target = current - amount
        else:
            target = amount
        if target < 0:
            raise NegativeStock(product.id, product.name, current, target - current)

        if target == current:
            unchanged = StockChange(
                product_id=product_id,
                name=product.name,
                previous_quantity=current,
                new_quantity=current,
                low_stock_threshold=product.low_stock_threshold,
            )
            db.session.rollback()
            return unchanged

        change = _apply(
            product,
            target,
            reason=REASON_MANUAL,
            note=note or f"Stock {adjustment_type} via inventory update",
            adjusted_by=adjusted_by,
            reference_type=None,
            reference_id=None,
        )
        event_service.enqueue_stock_change(change)
        db.session.commit()
        return change

    change = run_with_retry(_op)
    event_service.publish_pending_events()
    return change


def bulk_update_stock(updates, *, adjusted_by: int | None = None) -> dict:
    """
    Apply many absolute stock levels in one transaction.

    updates: [{"product_id": int, "stock_quantity": int}, ...]

    Rows are locked in ascending product id order. Missing products and
    negative targets are reported as failed without blocking the others.
    """
    if not isinstance(updates, list) or not updates:
        raise ValidationError("updates must be a non-empty list")

    normalized: list[tuple[int, int]] = []
    for index, raw in enumerate(updates):
        if not isinstance(raw, dict):
            raise ValidationError(f"Update {index + 1} must be an object")
        pid = raw.get("product_id", raw.get("productId"))
        qty = raw.get("stock_quantity", raw.get("stockQuantity"))
        if pid is None or qty is None:
            raise ValidationError(f"Update {index + 1} requires product_id and stock_quantity")
        normalized.append((coerce_int(pid, "product_id"), coerce_int(qty, "stock_quantity")))

    # Stable sort keeps request order for repeated ids
    ordered = sorted(normalized, key=lambda pair: pair[0])

    def _op():
        begin_write_transaction()
        results = []
        changes = []
        for pid, target in ordered:
            if target < 0:
                results.append({"product_id": pid, "success": False, "error": "Stock quantity cannot be negative"})
                continue
            try:
                product = _lock_product(pid)
            except ProductNotFound:
                results.append({"product_id": pid, "success": False, "error": "Product not found"})
                continue

            previous = product.stock_quantity
            if target != previous:
                change = _apply(
                    product,
                    target,
                    reason=REASON_BULK,
                    note="Bulk stock update",
                    adjusted_by=adjusted_by,
                    reference_type=None,
                    reference_id=None,
                )
                changes.append(change)
            results.append({
                "product_id": pid,
                "success": True,
                "name": product.name,
                "previous_stock": previous,
                "new_stock": target,
            })

        for change in changes:
            event_service.enqueue_stock_change(change)
        db.session.commit()
        return results

    results = run_with_retry(_op)
    event_service.publish_pending_events()

    success_count = sum(1 for r in results if r["success"])
    return {
        "results": results,
        "success_count": success_count,
        "failed_count": len(results) - success_count,
    }


# =============================================================================
# QUERIES
# =============================================================================

def get_stock_level(product_id: int) -> dict:
    product = db.session.get(Product, product_id)
    if product is None:
        raise ProductNotFound(product_id)
    return {
        "product_id": product.id,
        "name": product.name,
        "stock_quantity": product.stock_quantity,
        "low_stock_threshold": product.low_stock_threshold,
        "stock_status": product.stock_status,
    }


def list_inventory() -> list[Product]:
    """Every product with its stock level, emptiest first."""
    return (
        db.session.query(Product)
        .order_by(Product.stock_quantity.asc(), Product.name.asc(), Product.id.asc())
        .all()
    )


def get_low_stock_products() -> list[Product]:
    return (
        db.session.query(Product)
        .filter(Product.is_active.is_(True))
        .filter(Product.stock_quantity <= Product.low_stock_threshold)
        .order_by(Product.stock_quantity.asc(), Product.id.asc())
        .all()
    )


def list_stock_adjustments(product_id: int | None = None, limit: int = 200) -> list[StockAdjustment]:
    query = db.session.query(StockAdjustment)
    if product_id is not None:
        query = query.filter(StockAdjustment.product_id == product_id)
    return (
        query.order_by(StockAdjustment.created_at.desc(), StockAdjustment.id.desc())
        .limit(max(1, min(int(limit), 1000)))
        .all()
    )
