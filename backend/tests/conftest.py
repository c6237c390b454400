"""
Pytest fixtures for retail core backend tests.

Provides an in-memory database, per-test table wipe, user/product factories,
session tokens, a fake payment gateway and realtime subscriptions.
"""

import queue

import pytest

from retail import create_app
from retail.extensions import broadcaster, db
from retail.models import Product, User
from retail.services import session_service
from retail.services.payment_gateway import GatewayRefund, PaymentGatewayError


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'BCRYPT_ROUNDS': 4,
        'PAYMENT_GATEWAY_SECRET_KEY': None,
        'EMAIL_API_URL': None,
        'EVENT_STREAM_HEARTBEAT_SECONDS': 0.05,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        db.session.rollback()
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def make_user(db_session):
    """Factory for users. Password hashing is skipped; use auth_service for login tests."""
    counter = {"n": 0}

    def _make(role="customer", name=None, email=None, store_credit_cents=0):
        counter["n"] += 1
        user = User(
            name=name or f"{role.title()} {counter['n']}",
            email=email or f"{role}{counter['n']}@example.com",
            password_hash="not-a-bcrypt-hash",
            role=role,
            store_credit_cents=store_credit_cents,
        )
        db_session.add(user)
        db_session.commit()
        return user

    return _make


@pytest.fixture(scope='function')
def make_product(db_session):
    counter = {"n": 0}

    def _make(stock=10, price_cents=1000, threshold=5, name=None):
        counter["n"] += 1
        product = Product(
            sku=f"SKU-{counter['n']:04d}",
            name=name or f"Product {counter['n']}",
            price_cents=price_cents,
            stock_quantity=stock,
            low_stock_threshold=threshold,
        )
        db_session.add(product)
        db_session.commit()
        return product

    return _make


@pytest.fixture(scope='function')
def customer(make_user):
    return make_user("customer")


@pytest.fixture(scope='function')
def cashier(make_user):
    return make_user("cashier")


@pytest.fixture(scope='function')
def manager(make_user):
    return make_user("manager")


@pytest.fixture(scope='function')
def admin(make_user):
    return make_user("admin")


def get_auth_token(user) -> str:
    """Helper to issue a session token without going through bcrypt."""
    _, token = session_service.create_session(user.id)
    return token


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


def headers_for(user) -> dict:
    return auth_headers(get_auth_token(user))


class FakePaymentGateway:
    """Records refund calls; set fail_with to make the next calls raise."""

    def __init__(self):
        self.calls = []
        self.fail_with = None

    def refund(self, payment_reference, amount_cents, *, idempotency_key=None):
        self.calls.append((payment_reference, amount_cents, idempotency_key))
        if self.fail_with is not None:
            raise self.fail_with
        return GatewayRefund(id=f"re_{len(self.calls)}", status="succeeded", amount_cents=amount_cents)


@pytest.fixture(scope='function')
def gateway(app, monkeypatch):
    fake = FakePaymentGateway()
    monkeypatch.setitem(app.extensions, "payment_gateway", fake)
    return fake


@pytest.fixture(scope='function')
def declining_gateway(gateway):
    gateway.fail_with = PaymentGatewayError("Your card was declined", status_code=402)
    return gateway


@pytest.fixture(scope='function')
def subscribe(app):
    """Subscribe to broadcaster rooms; all subscriptions are removed after the test."""
    subscriptions = []

    def _subscribe(*rooms):
        subscription = broadcaster.subscribe(rooms)
        subscriptions.append(subscription)
        return subscription

    yield _subscribe

    for subscription in subscriptions:
        broadcaster.unsubscribe(subscription)


def drain(subscription) -> list[dict]:
    """All messages currently queued for a subscription, oldest first."""
    messages = []
    while True:
        try:
            messages.append(subscription.queue.get_nowait())
        except queue.Empty:
            return messages


def events_named(messages, name) -> list[dict]:
    return [m["data"] for m in messages if m["event"] == name]
