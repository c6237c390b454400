"""
Stock ledger tests.

Verifies:
- Decrements never go below zero and are never clamped
- Every mutation writes an adjustment row with before/after quantities
- Manual operations (adjust, set/add/subtract, bulk) own their transaction
- A failed audit row does not abort the stock change
"""

import pytest

from retail.extensions import db
from retail.models import Product, StockAdjustment
from retail.services import stock_service
from retail.services.concurrency import begin_write_transaction
from retail.services.stock_service import InsufficientStock, NegativeStock, ProductNotFound
from retail.validation import ValidationError

from conftest import drain, events_named


# =============================================================================
# IN-TRANSACTION PRIMITIVES
# =============================================================================


class TestTryDecrement:
    def test_decrement_updates_stock_and_records_adjustment(self, db_session, make_product):
        product = make_product(stock=10)

        begin_write_transaction()
        change = stock_service.try_decrement(product.id, 4, reference_type="order", reference_id=77)
        db_session.commit()

        assert change.previous_quantity == 10
        assert change.new_quantity == 6
        assert change.adjustment == -4
        assert db_session.get(Product, product.id).stock_quantity == 6

        adjustment = db_session.query(StockAdjustment).filter_by(product_id=product.id).one()
        assert adjustment.quantity_change == -4
        assert adjustment.previous_quantity == 10
        assert adjustment.new_quantity == 6
        assert adjustment.reason == "order"
        assert adjustment.reference_id == 77

    def test_insufficient_stock_is_not_clamped(self, db_session, make_product):
        product = make_product(stock=2, name="Mug")

        begin_write_transaction()
        with pytest.raises(InsufficientStock) as exc_info:
            stock_service.try_decrement(product.id, 3)
        db_session.rollback()

        assert exc_info.value.details == {
            "product_id": product.id,
            "product_name": "Mug",
            "requested": 3,
            "available": 2,
        }
        assert db_session.get(Product, product.id).stock_quantity == 2
        assert db_session.query(StockAdjustment).count() == 0

    def test_exact_quantity_reaches_zero(self, db_session, make_product):
        product = make_product(stock=3)

        begin_write_transaction()
        change = stock_service.try_decrement(product.id, 3)
        db_session.commit()

        assert change.new_quantity == 0
        assert db_session.get(Product, product.id).stock_quantity == 0

    def test_unknown_product(self, db_session):
        begin_write_transaction()
        with pytest.raises(ProductNotFound):
            stock_service.try_decrement(999999, 1)
        db_session.rollback()

    @pytest.mark.parametrize("quantity", [0, -1])
    def test_non_positive_quantity_rejected(self, db_session, make_product, quantity):
        product = make_product(stock=5)
        with pytest.raises(ValidationError):
            stock_service.try_decrement(product.id, quantity)


class TestIncrement:
    def test_increment_adds_units(self, db_session, make_product):
        product = make_product(stock=1)

        begin_write_transaction()
        change = stock_service.increment(product.id, 2, reference_type="return", reference_id=5)
        db_session.commit()

        assert change.new_quantity == 3
        adjustment = db_session.query(StockAdjustment).filter_by(product_id=product.id).one()
        assert adjustment.reason == "return"
        assert adjustment.quantity_change == 2


def test_failed_audit_row_does_not_abort_stock_change(db_session, make_product):
    product = make_product(stock=5)

    begin_write_transaction()
    # Violates the reason CHECK constraint inside its savepoint
    bad = stock_service.record_adjustment(
        product_id=product.id,
        quantity_change=-1,
        previous_quantity=5,
        new_quantity=4,
        reason="not-a-reason",
    )
    change = stock_service.try_decrement(product.id, 1)
    db_session.commit()

    assert bad is None
    assert change.new_quantity == 4
    assert db_session.get(Product, product.id).stock_quantity == 4
    assert db_session.query(StockAdjustment).count() == 1


# =============================================================================
# MANUAL OPERATIONS
# =============================================================================


class TestAdjustStock:
    def test_damaged_units_removed(self, db_session, make_product, manager):
        product = make_product(stock=10)

        change = stock_service.adjust_stock(
            product_id=product.id, quantity_change=-3, reason="damaged", note="Crushed box", adjusted_by=manager.id
        )

        assert change.new_quantity == 7
        adjustment = db_session.query(StockAdjustment).filter_by(product_id=product.id).one()
        assert adjustment.reason == "damaged"
        assert adjustment.note == "Crushed box"
        assert adjustment.adjusted_by_user_id == manager.id

    def test_cannot_go_negative(self, db_session, make_product):
        product = make_product(stock=2)

        with pytest.raises(NegativeStock):
            stock_service.adjust_stock(product_id=product.id, quantity_change=-5, reason="lost")

        assert db_session.get(Product, product.id).stock_quantity == 2
        assert db_session.query(StockAdjustment).count() == 0

    @pytest.mark.parametrize("reason", ["order", "return", "bogus"])
    def test_system_and_unknown_reasons_rejected(self, db_session, make_product, reason):
        product = make_product(stock=2)
        with pytest.raises(ValidationError):
            stock_service.adjust_stock(product_id=product.id, quantity_change=1, reason=reason)

    def test_zero_change_rejected(self, db_session, make_product):
        product = make_product(stock=2)
        with pytest.raises(ValidationError):
            stock_service.adjust_stock(product_id=product.id, quantity_change=0)

    def test_emits_inventory_update_after_commit(self, db_session, make_product, subscribe):
        product = make_product(stock=10, threshold=2)
        staff = subscribe("staff")

        stock_service.adjust_stock(product_id=product.id, quantity_change=5, reason="received")

        updates = events_named(drain(staff), "inventory:updated")
        assert updates == [{
            "product_id": product.id,
            "name": product.name,
            "stock_quantity": 15,
            "previous_stock": 10,
            "adjustment": 5,
        }]


class TestSetStock:
    def test_set_absolute_level(self, db_session, make_product):
        product = make_product(stock=10)
        change = stock_service.set_stock(product_id=product.id, quantity=4)
        assert (change.previous_quantity, change.new_quantity) == (10, 4)
        assert db_session.get(Product, product.id).stock_quantity == 4

    def test_add_and_subtract(self, db_session, make_product):
        product = make_product(stock=10)
        stock_service.set_stock(product_id=product.id, quantity=5, adjustment_type="add")
        change = stock_service.set_stock(product_id=product.id, quantity=12, adjustment_type="subtract")
        assert change.new_quantity == 3
        assert db_session.query(StockAdjustment).filter_by(product_id=product.id).count() == 2

    def test_subtract_below_zero_rejected(self, db_session, make_product):
        product = make_product(stock=3)
        with pytest.raises(NegativeStock):
            stock_service.set_stock(product_id=product.id, quantity=4, adjustment_type="subtract")
        assert db_session.get(Product, product.id).stock_quantity == 3

    def test_negative_quantity_rejected(self, db_session, make_product):
        product = make_product(stock=3)
        with pytest.raises(ValidationError):
            stock_service.set_stock(product_id=product.id, quantity=-1)

    def test_unchanged_level_writes_nothing(self, db_session, make_product):
        product = make_product(stock=6)
        change = stock_service.set_stock(product_id=product.id, quantity=6)
        assert change.adjustment == 0
        assert db_session.query(StockAdjustment).count() == 0


class TestBulkUpdate:
    def test_partial_success(self, db_session, make_product):
        first = make_product(stock=1)
        second = make_product(stock=2)

        result = stock_service.bulk_update_stock([
            {"product_id": second.id, "stock_quantity": 20},
            {"product_id": 999999, "stock_quantity": 5},
            {"productId": first.id, "stockQuantity": -1},
        ])

        assert result["success_count"] == 1
        assert result["failed_count"] == 2
        # Results follow lock order (ascending product id)
        assert [r["product_id"] for r in result["results"]] == [first.id, second.id, 999999]
        assert db_session.get(Product, first.id).stock_quantity == 1
        assert db_session.get(Product, second.id).stock_quantity == 20

        adjustment = db_session.query(StockAdjustment).one()
        assert adjustment.reason == "bulk"
        assert adjustment.product_id == second.id

    def test_empty_updates_rejected(self, db_session):
        with pytest.raises(ValidationError):
            stock_service.bulk_update_stock([])


# =============================================================================
# QUERIES
# =============================================================================


def test_low_stock_products(db_session, make_product):
    low = make_product(stock=2, threshold=3)
    at_threshold = make_product(stock=3, threshold=3)
    make_product(stock=10, threshold=3)
    inactive = make_product(stock=0, threshold=3)
    inactive.is_active = False
    db.session.commit()

    ids = [p.id for p in stock_service.get_low_stock_products()]
    assert ids == [low.id, at_threshold.id]


def test_stock_level_reports_status(db_session, make_product):
    product = make_product(stock=0, threshold=3)
    level = stock_service.get_stock_level(product.id)
    assert level["stock_quantity"] == 0
    assert level["low_stock_threshold"] == 3
    assert level["stock_status"] == "out_of_stock"
