"""
Cart and store credit tests.
"""

import pytest

from retail.extensions import db
from retail.models import StoreCreditEntry, User
from retail.services import cart_service, store_credit_service
from retail.services.cart_service import CartError, CartItemNotFound
from retail.services.store_credit_service import StoreCreditError
from retail.validation import ValidationError


# =============================================================================
# CART
# =============================================================================


class TestCart:
    def test_add_merges_quantities(self, db_session, customer, make_product):
        product = make_product(stock=5, price_cents=300)

        cart_service.add_to_cart(customer.id, product.id, 2)
        cart_service.add_to_cart(customer.id, str(product.id), "1")

        cart = cart_service.get_cart(customer.id)
        assert [(i["product_id"], i["quantity"]) for i in cart["items"]] == [(product.id, 3)]
        assert cart["item_count"] == 3
        assert cart["subtotal_cents"] == 900

    def test_cannot_exceed_available_stock(self, db_session, customer, make_product):
        product = make_product(stock=2)

        with pytest.raises(CartError) as exc_info:
            cart_service.add_to_cart(customer.id, product.id, 3)

        assert exc_info.value.details["available"] == 2
        assert cart_service.get_cart(customer.id)["items"] == []

    def test_inactive_product_not_found(self, db_session, customer, make_product):
        product = make_product(stock=2)
        product.is_active = False
        db.session.commit()

        with pytest.raises(CartItemNotFound):
            cart_service.add_to_cart(customer.id, product.id, 1)

    def test_update_and_remove(self, db_session, customer, make_product):
        product = make_product(stock=5)
        item = cart_service.add_to_cart(customer.id, product.id, 1)

        cart_service.update_cart_item(customer.id, item.id, 4)
        assert cart_service.get_cart(customer.id)["items"][0]["quantity"] == 4

        cart_service.remove_cart_item(customer.id, item.id)
        assert cart_service.get_cart(customer.id)["items"] == []

    def test_items_of_other_users_are_hidden(self, db_session, customer, make_user, make_product):
        product = make_product(stock=5)
        item = cart_service.add_to_cart(customer.id, product.id, 1)
        stranger = make_user("customer")

        with pytest.raises(CartItemNotFound):
            cart_service.update_cart_item(stranger.id, item.id, 2)
        with pytest.raises(CartItemNotFound):
            cart_service.remove_cart_item(stranger.id, item.id)

    @pytest.mark.parametrize("quantity", [0, -2, 1.5, "two", True])
    def test_invalid_quantity(self, db_session, customer, make_product, quantity):
        product = make_product(stock=5)
        with pytest.raises(ValidationError):
            cart_service.add_to_cart(customer.id, product.id, quantity)


# =============================================================================
# STORE CREDIT
# =============================================================================


class TestStoreCredit:
    def test_grant_updates_ledger_and_balance(self, db_session, customer):
        store_credit_service.grant_store_credit(user_id=customer.id, amount_cents=500, reason="Goodwill")
        store_credit_service.grant_store_credit(user_id=customer.id, amount_cents=250, reason="Goodwill")
        db.session.commit()

        assert store_credit_service.get_balance(customer.id) == 750
        assert store_credit_service.ledger_balance(customer.id) == 750
        history = store_credit_service.get_history(customer.id)
        assert sorted(e.amount_cents for e in history) == [250, 500]

    def test_grant_requires_positive_amount(self, db_session, customer):
        with pytest.raises(StoreCreditError):
            store_credit_service.grant_store_credit(user_id=customer.id, amount_cents=0, reason="Nothing")

    def test_grant_is_rolled_back_with_caller(self, db_session, customer):
        store_credit_service.grant_store_credit(user_id=customer.id, amount_cents=500, reason="Goodwill")
        db.session.rollback()

        assert store_credit_service.get_balance(customer.id) == 0
        assert db_session.query(StoreCreditEntry).count() == 0

    def test_verify_reports_and_fixes_drift(self, db_session, customer, make_user):
        drifted = make_user("customer", store_credit_cents=999)
        store_credit_service.grant_store_credit(user_id=customer.id, amount_cents=300, reason="Refund")
        db.session.commit()

        assert store_credit_service.verify_balances() == [
            {"user_id": drifted.id, "balance_cents": 999, "ledger_cents": 0},
        ]
        store_credit_service.verify_balances(fix=True)

        assert db_session.get(User, drifted.id).store_credit_cents == 0
        assert store_credit_service.verify_balances() == []

    def test_recompute_balance(self, db_session, customer):
        store_credit_service.grant_store_credit(user_id=customer.id, amount_cents=400, reason="Refund")
        db.session.commit()
        db_session.get(User, customer.id).store_credit_cents = 1
        db.session.commit()

        assert store_credit_service.recompute_balance(customer.id) == 400
