"""
Return and refund tests.

Verifies:
- pending -> approved|rejected -> refunded state machine
- Return quantities are limited by what was ordered and not yet returned
- A refund is processed at most once, and only for approved returns
- A gateway failure leaves the return approved with nothing written
- Store credit refunds update both the ledger and the balance
- Refunded items are restocked with adjustment rows
"""

import pytest

from retail.extensions import db
from retail.models import Product, Refund, Return, StockAdjustment, StoreCreditEntry, User
from retail.services import order_service, return_service, store_credit_service
from retail.services.order_service import OrderNotFound
from retail.services.payment_gateway import PaymentGatewayError
from retail.services.return_service import (
    ReturnAccessDenied,
    ReturnError,
    ReturnNotApproved,
    ReturnStateError,
)
from retail.services.stock_service import ProductNotFound
from retail.validation import ValidationError

from conftest import drain, events_named


def make_order(user, product, quantity, *, total_cents=3000, payment_intent_id=None):
    return order_service.create_order(
        items=[{"product_id": product.id, "quantity": quantity}],
        shipping_address="1 Main St",
        total_cents=total_cents,
        payment_intent_id=payment_intent_id,
        user_id=user.id,
    )


def request_return(user, order, product, quantity, refund_amount_cents=1000):
    return return_service.create_return(
        order_id=order.id,
        user_id=user.id,
        items=[{"product_id": product.id, "quantity": quantity}],
        reason="Wrong colour",
        refund_amount_cents=refund_amount_cents,
    )


# =============================================================================
# RETURN CREATION
# =============================================================================


class TestCreateReturn:
    def test_creates_pending_return_without_stock_effect(self, db_session, customer, make_product, subscribe):
        product = make_product(stock=10)
        order = make_order(customer, product, 3)
        staff = subscribe("staff")

        return_doc = request_return(customer, order, product, 2)

        assert return_doc.status == "pending"
        assert return_doc.to_dict()["items"] == [{"product_id": product.id, "quantity": 2}]
        assert db_session.get(Product, product.id).stock_quantity == 7
        assert events_named(drain(staff), "return:new")[0]["id"] == return_doc.id

    def test_quantity_limited_by_previous_returns(self, db_session, customer, manager, make_product):
        product = make_product(stock=10)
        order = make_order(customer, product, 3)
        first = request_return(customer, order, product, 2)

        with pytest.raises(ReturnError) as exc_info:
            request_return(customer, order, product, 2)
        assert exc_info.value.details["already_returned"] == 2

        # Rejected returns free their quantities again
        return_service.reject_return(first.id, manager.id, "Outside window")
        assert request_return(customer, order, product, 3).status == "pending"

    def test_product_not_on_order(self, db_session, customer, make_product):
        ordered = make_product(stock=10)
        other = make_product(stock=10)
        order = make_order(customer, ordered, 1)

        with pytest.raises(ValidationError):
            request_return(customer, order, other, 1)

    def test_refund_cannot_exceed_order_total(self, db_session, customer, make_product):
        product = make_product(stock=10)
        order = make_order(customer, product, 1, total_cents=500)

        with pytest.raises(ValidationError):
            request_return(customer, order, product, 1, refund_amount_cents=501)

    def test_only_order_owner_may_return(self, db_session, customer, make_user, make_product):
        product = make_product(stock=10)
        order = make_order(customer, product, 1)
        stranger = make_user("customer")

        with pytest.raises(ReturnAccessDenied):
            request_return(stranger, order, product, 1)

    def test_cancelled_order_cannot_be_returned(self, db_session, customer, make_product):
        product = make_product(stock=10)
        order = make_order(customer, product, 1)
        order_service.cancel_order(order.id, user_id=customer.id)

        with pytest.raises(ReturnStateError):
            request_return(customer, order, product, 1)

    def test_unknown_order(self, db_session, customer, make_product):
        product = make_product(stock=10)
        with pytest.raises(OrderNotFound):
            return_service.create_return(
                order_id=999999,
                user_id=customer.id,
                items=[{"product_id": product.id, "quantity": 1}],
                reason="Broken",
                refund_amount_cents=100,
            )

    def test_reason_required(self, db_session, customer, make_product):
        product = make_product(stock=10)
        order = make_order(customer, product, 1)
        with pytest.raises(ValidationError):
            return_service.create_return(
                order_id=order.id,
                user_id=customer.id,
                items=[{"product_id": product.id, "quantity": 1}],
                reason="   ",
                refund_amount_cents=100,
            )


# =============================================================================
# APPROVAL WORKFLOW
# =============================================================================


class TestApproval:
    def test_approve_then_approve_again_fails(self, db_session, customer, manager, make_product):
        product = make_product(stock=10)
        order = make_order(customer, product, 1)
        return_doc = request_return(customer, order, product, 1)

        approved = return_service.approve_return(return_doc.id, manager.id)
        assert approved.status == "approved"
        assert approved.approved_by_user_id == manager.id
        assert approved.approved_at is not None

        with pytest.raises(ReturnStateError):
            return_service.approve_return(return_doc.id, manager.id)
        with pytest.raises(ReturnStateError):
            return_service.reject_return(return_doc.id, manager.id)

    def test_reject_records_reason(self, db_session, customer, manager, make_product, gateway):
        product = make_product(stock=10)
        order = make_order(customer, product, 2, payment_intent_id="pi_reject")
        return_doc = request_return(customer, order, product, 2)

        rejected = return_service.reject_return(return_doc.id, manager.id, "  Item was used  ")

        assert rejected.status == "rejected"
        assert rejected.rejection_reason == "Item was used"
        with pytest.raises(ReturnStateError):
            return_service.approve_return(return_doc.id, manager.id)
        with pytest.raises(ReturnNotApproved):
            return_service.process_refund(return_doc.id, "original", manager.id)

        # Rejection never puts stock back or moves money
        assert db_session.get(Product, product.id).stock_quantity == 8
        assert db_session.query(StoreCreditEntry).count() == 0
        assert db_session.query(Refund).count() == 0
        assert gateway.calls == []

    def test_approval_notifies_owner(self, db_session, customer, manager, make_product, subscribe):
        product = make_product(stock=10)
        order = make_order(customer, product, 1)
        return_doc = request_return(customer, order, product, 1)
        owner = subscribe(f"user:{customer.id}")

        return_service.approve_return(return_doc.id, manager.id)

        updates = events_named(drain(owner), "return:updated")
        assert [u["status"] for u in updates] == ["approved"]


# =============================================================================
# REFUND
# =============================================================================


def approved_return(customer, manager, product, *, quantity=1, refund_amount_cents=1000, payment_intent_id=None):
    order = make_order(customer, product, quantity, payment_intent_id=payment_intent_id)
    return_doc = request_return(customer, order, product, quantity, refund_amount_cents)
    return_service.approve_return(return_doc.id, manager.id)
    return return_doc


class TestProcessRefund:
    def test_pending_return_cannot_be_refunded(self, db_session, customer, manager, make_product, gateway):
        product = make_product(stock=10)
        order = make_order(customer, product, 1, payment_intent_id="pi_pending")
        return_doc = request_return(customer, order, product, 1)

        with pytest.raises(ReturnNotApproved):
            return_service.process_refund(return_doc.id, "store_credit", manager.id)
        with pytest.raises(ReturnNotApproved):
            return_service.process_refund(return_doc.id, "original", manager.id)

        assert db_session.query(Refund).count() == 0
        assert db_session.query(StoreCreditEntry).count() == 0
        assert db_session.query(StockAdjustment).filter_by(reason="return").count() == 0
        assert db_session.get(Product, product.id).stock_quantity == 9
        assert db_session.get(User, customer.id).store_credit_cents == 0
        assert gateway.calls == []
        assert db_session.get(Return, return_doc.id).status == "pending"

    def test_second_refund_is_rejected(self, db_session, customer, manager, make_product, gateway):
        product = make_product(stock=10)
        return_doc = approved_return(customer, manager, product, quantity=2)

        return_service.process_refund(return_doc.id, "store_credit", manager.id)
        with pytest.raises(ReturnNotApproved):
            return_service.process_refund(return_doc.id, "store_credit", manager.id)

        assert db_session.query(Refund).count() == 1
        assert db_session.get(Product, product.id).stock_quantity == 10
        assert db_session.get(User, customer.id).store_credit_cents == 1000

    def test_original_method_calls_gateway_with_idempotency_key(
        self, db_session, customer, manager, make_product, gateway
    ):
        product = make_product(stock=10)
        return_doc = approved_return(customer, manager, product, refund_amount_cents=1250, payment_intent_id="pi_123")

        refunded, refund = return_service.process_refund(return_doc.id, "original", manager.id)

        assert gateway.calls == [("pi_123", 1250, f"return-{return_doc.id}")]
        assert refund.payment_reference == "re_1"
        assert refund.method == "original"
        assert refunded.status == "refunded"
        assert refunded.refunded_by_user_id == manager.id

    def test_gateway_failure_leaves_return_approved(
        self, db_session, customer, manager, make_product, declining_gateway
    ):
        product = make_product(stock=10)
        return_doc = approved_return(customer, manager, product, payment_intent_id="pi_declined")

        with pytest.raises(PaymentGatewayError):
            return_service.process_refund(return_doc.id, "original", manager.id)

        assert db_session.get(Return, return_doc.id).status == "approved"
        assert db_session.query(Refund).count() == 0
        assert db_session.get(Product, product.id).stock_quantity == 9
        assert db_session.query(StockAdjustment).filter_by(reason="return").count() == 0

    def test_no_payment_intent_uses_manual_reference(self, db_session, customer, manager, make_product, gateway):
        product = make_product(stock=10)
        return_doc = approved_return(customer, manager, product)

        _, refund = return_service.process_refund(return_doc.id, "original", manager.id)

        assert gateway.calls == []
        assert refund.payment_reference == f"MANUAL_REFUND_{return_doc.id}"

    def test_unknown_method_rejected(self, db_session, customer, manager, make_product, gateway):
        product = make_product(stock=10)
        return_doc = approved_return(customer, manager, product)
        with pytest.raises(ValidationError):
            return_service.process_refund(return_doc.id, "cheque", manager.id)

    def test_restock_writes_adjustments(self, db_session, customer, manager, make_product, gateway):
        product = make_product(stock=10)
        return_doc = approved_return(customer, manager, product, quantity=3)

        return_service.process_refund(return_doc.id, "original", manager.id)

        adjustment = db_session.query(StockAdjustment).filter_by(reason="return").one()
        assert adjustment.quantity_change == 3
        assert adjustment.reference_type == "return"
        assert adjustment.reference_id == return_doc.id
        assert db_session.get(Product, product.id).stock_quantity == 10


def test_low_stock_order_then_store_credit_return(db_session, customer, manager, make_product, gateway, subscribe):
    product = make_product(stock=5, threshold=3, price_cents=1000, name="Vase")
    admin_room = subscribe("admin")
    staff = subscribe("staff")

    order = make_order(customer, product, 3, total_cents=3000)

    assert events_named(drain(admin_room), "inventory:low-stock") == [{
        "product_id": product.id,
        "name": "Vase",
        "stock_quantity": 2,
        "low_stock_threshold": 3,
    }]
    drain(staff)

    return_doc = request_return(customer, order, product, 2, refund_amount_cents=2000)
    return_service.approve_return(return_doc.id, manager.id)
    refunded, refund = return_service.process_refund(return_doc.id, "store_credit", manager.id)

    assert refunded.status == "refunded"
    assert refund.payment_reference == f"STORE_CREDIT_{return_doc.id}"
    assert db_session.get(Product, product.id).stock_quantity == 4
    assert store_credit_service.get_balance(customer.id) == 2000

    entry = db_session.query(StoreCreditEntry).filter_by(user_id=customer.id).one()
    assert entry.amount_cents == 2000
    assert entry.reference_type == "return"
    assert entry.reference_id == return_doc.id

    inventory = events_named(drain(staff), "inventory:updated")
    assert inventory[-1]["stock_quantity"] == 4
    assert inventory[-1]["adjustment"] == 2
    assert gateway.calls == []


def test_missing_product_aborts_refund(db_session, customer, manager, make_product, gateway):
    product = make_product(stock=10)
    return_doc = approved_return(customer, manager, product)

    db.session.query(StockAdjustment).delete()
    db.session.query(Product).filter_by(id=product.id).delete()
    db.session.commit()

    with pytest.raises(ProductNotFound):
        return_service.process_refund(return_doc.id, "store_credit", manager.id)

    assert db_session.get(Return, return_doc.id).status == "approved"
    assert db_session.get(User, customer.id).store_credit_cents == 0
