"""
Return & Refund Service

LIFECYCLE:
1. Create return (pending) - customer selects items from one of their orders
2. Approve / Reject (staff decision, status only)
3. Process refund (approved -> refunded) - money out, stock back in

The refund is a single transaction: lock the return row, re-check that it is
still approved, move the money (gateway or store credit), write the Refund
row, flip the status, restock every item, enqueue events, commit. A gateway
error aborts all of it and the return stays approved. Because the status
check happens under the row lock, two concurrent refund requests for the
same return cannot both pass it.
"""

from __future__ import annotations

from sqlalchemy import func

from ..extensions import db
from ..models import Order, OrderItem, Refund, Return, ReturnItem
from ..time_utils import utcnow
from ..validation import ValidationError, normalize_line_items, require_text
from . import event_service, notification_service, stock_service, store_credit_service
from .concurrency import begin_write_transaction, lock_for_update, run_with_retry
from .order_service import ORDER_STATUS_CANCELLED, OrderNotFound
from .payment_gateway import get_payment_gateway


class ReturnError(Exception):
    """Raised for return operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class ReturnNotFound(ReturnError):
    pass


class ReturnAccessDenied(ReturnError):
    pass


class ReturnStateError(ReturnError):
    pass


class ReturnNotApproved(ReturnStateError):
    pass


# =============================================================================
# RETURN STATUS CONSTANTS
# =============================================================================

RETURN_STATUS_PENDING = "pending"
RETURN_STATUS_APPROVED = "approved"
RETURN_STATUS_REJECTED = "rejected"
RETURN_STATUS_REFUNDED = "refunded"

VALID_RETURN_STATUSES = (
    RETURN_STATUS_PENDING,
    RETURN_STATUS_APPROVED,
    RETURN_STATUS_REJECTED,
    RETURN_STATUS_REFUNDED,
)

RETURN_TYPES = ("online", "in-store")

REFUND_METHOD_ORIGINAL = "original"
REFUND_METHOD_STORE_CREDIT = "store_credit"
VALID_REFUND_METHODS = (REFUND_METHOD_ORIGINAL, REFUND_METHOD_STORE_CREDIT)


# =============================================================================
# RETURN CREATION
# =============================================================================

def _returned_quantities(order_id: int) -> dict[int, int]:
    """Units of each product already on non-rejected returns for an order."""
    rows = (
        db.session.query(ReturnItem.product_id, func.sum(ReturnItem.quantity))
        .join(Return, Return.id == ReturnItem.return_id)
        .filter(Return.order_id == order_id, Return.status != RETURN_STATUS_REJECTED)
        .group_by(ReturnItem.product_id)
        .all()
    )
    return {product_id: int(qty or 0) for product_id, qty in rows}


def _ordered_quantities(order_id: int) -> dict[int, int]:
    rows = (
        db.session.query(OrderItem.product_id, func.sum(OrderItem.quantity))
        .filter(OrderItem.order_id == order_id, OrderItem.product_id.isnot(None))
        .group_by(OrderItem.product_id)
        .all()
    )
    return {product_id: int(qty or 0) for product_id, qty in rows}


def create_return(
    *,
    order_id: int,
    user_id: int,
    items,
    reason,
    refund_amount_cents: int,
    return_type: str = "online",
) -> Return:
    """
    Create a return request (status: pending). No stock effect.

    Each requested quantity is limited to what was ordered minus what is
    already on other non-rejected returns for the same order.
    """
    lines = normalize_line_items(items, kind="return")
    reason_text = require_text(reason, "reason", max_length=2000)
    if refund_amount_cents is None or refund_amount_cents < 0:
        raise ValidationError("refund_amount_cents must be a non-negative amount")
    if return_type not in RETURN_TYPES:
        raise ValidationError(f"return_type must be one of: {', '.join(RETURN_TYPES)}")

    def _op():
        # Serializes concurrent returns against the same order
        begin_write_transaction()
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")
        if order.user_id != user_id:
            raise ReturnAccessDenied("Access denied")
        if order.status == ORDER_STATUS_CANCELLED:
            raise ReturnStateError(f"Cannot return items from cancelled order {order_id}")
        if refund_amount_cents > order.total_cents:
            raise ValidationError("Refund amount cannot exceed the order total")

        ordered = _ordered_quantities(order_id)
        already = _returned_quantities(order_id)
        for line in lines:
            if line.product_id not in ordered:
                raise ValidationError(f"Product {line.product_id} is not part of order {order_id}")
            available = ordered[line.product_id] - already.get(line.product_id, 0)
            if line.quantity > available:
                raise ReturnError(
                    f"Cannot return {line.quantity} units of product {line.product_id}. "
                    f"Only {available} units remain returnable.",
                    details={
                        "product_id": line.product_id,
                        "requested": line.quantity,
                        "ordered": ordered[line.product_id],
                        "already_returned": already.get(line.product_id, 0),
                    },
                )

        return_doc = Return(
            order_id=order_id,
            user_id=user_id,
            status=RETURN_STATUS_PENDING,
            refund_amount_cents=refund_amount_cents,
            reason=reason_text,
            return_type=return_type,
            items=[ReturnItem(product_id=line.product_id, quantity=line.quantity) for line in lines],
        )
        db.session.add(return_doc)
        db.session.flush()

        event_service.enqueue_return_created(return_doc.to_dict())
        db.session.commit()
        return return_doc

    return_doc = run_with_retry(_op)
    event_service.publish_pending_events()
    return return_doc


# =============================================================================
# APPROVAL WORKFLOW
# =============================================================================

def _locked_return(return_id: int) -> Return:
    return_doc = lock_for_update(db.session.query(Return).filter_by(id=return_id)).first()
    if return_doc is None:
        raise ReturnNotFound(f"Return {return_id} not found")
    return return_doc


def approve_return(return_id: int, staff_user_id: int) -> Return:
    """pending -> approved. Status only; stock and money are untouched."""
    def _op():
        begin_write_transaction()
        return_doc = _locked_return(return_id)
        if return_doc.status != RETURN_STATUS_PENDING:
            raise ReturnStateError(
                f"Can only approve pending returns. Return {return_id} has status: {return_doc.status}"
            )
        return_doc.status = RETURN_STATUS_APPROVED
        return_doc.approved_by_user_id = staff_user_id
        return_doc.approved_at = utcnow()
        db.session.flush()
        event_service.enqueue_return_updated(return_doc.to_dict())
        db.session.commit()
        return return_doc

    return_doc = run_with_retry(_op)
    event_service.publish_pending_events()
    return return_doc


def reject_return(return_id: int, staff_user_id: int, reason: str | None = None) -> Return:
    """pending -> rejected. Rejected quantities become returnable again."""
    def _op():
        begin_write_transaction()
        return_doc = _locked_return(return_id)
        if return_doc.status != RETURN_STATUS_PENDING:
            raise ReturnStateError(
                f"Can only reject pending returns. Return {return_id} has status: {return_doc.status}"
            )
        return_doc.status = RETURN_STATUS_REJECTED
        return_doc.rejected_by_user_id = staff_user_id
        return_doc.rejected_at = utcnow()
        return_doc.rejection_reason = (reason or "").strip() or None
        db.session.flush()
        event_service.enqueue_return_updated(return_doc.to_dict())
        db.session.commit()
        return return_doc

    return_doc = run_with_retry(_op)
    event_service.publish_pending_events()
    return return_doc


# =============================================================================
# REFUND
# =============================================================================

def process_refund(return_id: int, method: str, staff_user_id: int) -> tuple[Return, Refund]:
    """
    approved -> refunded: pay out, record the refund, restock items.

    Raises:
        ReturnNotFound
        ReturnNotApproved: the return is not (or no longer) approved
        PaymentGatewayError: gateway refund failed; nothing was written
    """
    if method not in VALID_REFUND_METHODS:
        raise ValidationError(f"refund_method must be one of: {', '.join(VALID_REFUND_METHODS)}")

    gateway = get_payment_gateway() if method == REFUND_METHOD_ORIGINAL else None

    def _op():
        begin_write_transaction()
        return_doc = _locked_return(return_id)
        if return_doc.status != RETURN_STATUS_APPROVED:
            raise ReturnNotApproved(
                f"Return {return_id} is not in approved state (status: {return_doc.status})"
            )

        order = db.session.get(Order, return_doc.order_id)
        amount = return_doc.refund_amount_cents

        if method == REFUND_METHOD_STORE_CREDIT:
            if amount > 0:
                store_credit_service.grant_store_credit(
                    user_id=return_doc.user_id,
                    amount_cents=amount,
                    reason=f"Refund for return #{return_id}",
                    reference_id=return_id,
                    reference_type="return",
                )
            payment_reference = f"STORE_CREDIT_{return_id}"
        elif order is not None and order.payment_intent_id and amount > 0:
            gateway_refund = gateway.refund(
                order.payment_intent_id,
                amount,
                idempotency_key=f"return-{return_id}",
            )
            payment_reference = gateway_refund.id
        else:
            payment_reference = f"MANUAL_REFUND_{return_id}"

        refund = Refund(
            return_id=return_id,
            payment_reference=payment_reference,
            amount_cents=amount,
            method=method,
            processed_by_user_id=staff_user_id,
        )
        db.session.add(refund)

        return_doc.status = RETURN_STATUS_REFUNDED
        return_doc.refunded_by_user_id = staff_user_id
        return_doc.refunded_at = utcnow()

        changes = []
        for item in sorted(return_doc.items, key=lambda i: i.product_id):
            changes.append(
                stock_service.increment(
                    item.product_id,
                    item.quantity,
                    reason=stock_service.REASON_RETURN,
                    adjusted_by=staff_user_id,
                    reference_type="return",
                    reference_id=return_id,
                )
            )
        db.session.flush()

        event_service.enqueue_return_updated(return_doc.to_dict())
        for change in changes:
            event_service.enqueue_stock_change(change)

        db.session.commit()
        return return_doc, refund

    return_doc, refund = run_with_retry(_op)

    event_service.publish_pending_events()
    notification_service.notify_refund_processed(return_doc, refund)
    return return_doc, refund


# =============================================================================
# QUERIES
# =============================================================================

def get_return(return_id: int, *, user_id: int | None, is_staff: bool = False) -> Return:
    return_doc = db.session.get(Return, return_id)
    if return_doc is None:
        raise ReturnNotFound(f"Return {return_id} not found")
    if not is_staff and return_doc.user_id != user_id:
        raise ReturnAccessDenied("Access denied")
    return return_doc


def list_returns(status: str | None = None, limit: int = 200) -> list[Return]:
    query = db.session.query(Return)
    if status:
        if status not in VALID_RETURN_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(VALID_RETURN_STATUSES)}")
        query = query.filter(Return.status == status)
    return query.order_by(Return.created_at.desc(), Return.id.desc()).limit(limit).all()


def list_user_returns(user_id: int) -> list[Return]:
    return (
        db.session.query(Return)
        .filter(Return.user_id == user_id)
        .order_by(Return.created_at.desc(), Return.id.desc())
        .all()
    )
