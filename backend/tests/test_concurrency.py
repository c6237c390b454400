"""
Threaded concurrency tests against a file-backed SQLite database.

Each worker runs in its own app context (own session and connection), so
serialization comes from BEGIN IMMEDIATE and row locks, not from the test.
"""
import os
import tempfile
import threading
import unittest

from retail import create_app
from retail.extensions import db
from retail.models import Order, Product, Refund, StockAdjustment, User
from retail.services import order_service, return_service
from retail.services.return_service import ReturnNotApproved
from retail.services.stock_service import InsufficientStock


class ConcurrencyTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self.tmpdir.name, "concurrency.db")
        self.app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
            "BCRYPT_ROUNDS": 4,
            "EMAIL_API_URL": None,
        })

        with self.app.app_context():
            db.drop_all()
            db.create_all()

            customer = User(name="Racer", email="racer@example.com", password_hash="dummy", role="customer")
            manager = User(name="Boss", email="boss@example.com", password_hash="dummy", role="manager")
            db.session.add_all([customer, manager])
            db.session.commit()
            self.customer_id = customer.id
            self.manager_id = manager.id

            product = Product(name="Last One", price_cents=1000, stock_quantity=1, low_stock_threshold=0)
            db.session.add(product)
            db.session.commit()
            self.product_id = product.id

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.session.remove()
            db.engine.dispose()
        self.tmpdir.cleanup()

    def _run_threads(self, target, count):
        results = []
        lock = threading.Lock()

        def worker():
            with self.app.app_context():
                try:
                    outcome = target()
                    with lock:
                        results.append(outcome)
                except Exception as exc:
                    with lock:
                        results.append(exc)
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=worker) for _ in range(count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return results

    def test_last_unit_sold_exactly_once(self):
        def buy():
            order = order_service.create_order(
                items=[{"product_id": self.product_id, "quantity": 1}],
                shipping_address="1 Race Way",
                total_cents=1000,
                user_id=self.customer_id,
            )
            return order.id

        results = self._run_threads(buy, 5)

        successes = [r for r in results if isinstance(r, int)]
        failures = [r for r in results if not isinstance(r, int)]
        self.assertEqual(len(successes), 1, results)
        self.assertTrue(all(isinstance(f, InsufficientStock) for f in failures), failures)

        with self.app.app_context():
            self.assertEqual(db.session.get(Product, self.product_id).stock_quantity, 0)
            self.assertEqual(db.session.query(Order).count(), 1)
            self.assertEqual(db.session.query(StockAdjustment).count(), 1)

    def test_concurrent_refunds_pay_out_once(self):
        with self.app.app_context():
            order = order_service.create_order(
                items=[{"product_id": self.product_id, "quantity": 1}],
                shipping_address="1 Race Way",
                total_cents=1000,
                user_id=self.customer_id,
            )
            return_doc = return_service.create_return(
                order_id=order.id,
                user_id=self.customer_id,
                items=[{"product_id": self.product_id, "quantity": 1}],
                reason="Changed my mind",
                refund_amount_cents=1000,
            )
            return_service.approve_return(return_doc.id, self.manager_id)
            return_id = return_doc.id

        def refund():
            return_service.process_refund(return_id, "store_credit", self.manager_id)
            return "refunded"

        results = self._run_threads(refund, 3)

        self.assertEqual(results.count("refunded"), 1, results)
        self.assertTrue(all(isinstance(r, ReturnNotApproved) for r in results if r != "refunded"), results)

        with self.app.app_context():
            self.assertEqual(db.session.query(Refund).count(), 1)
            self.assertEqual(db.session.get(User, self.customer_id).store_credit_cents, 1000)
            self.assertEqual(db.session.get(Product, self.product_id).stock_quantity, 1)


if __name__ == "__main__":
    unittest.main()
