# Overview: Service-layer operations for store credit; append-only ledger plus denormalized user balance.

from __future__ import annotations

from sqlalchemy import func

from ..extensions import db
from ..models import StoreCreditEntry, User
from .concurrency import begin_write_transaction, lock_for_update, run_with_retry


class StoreCreditError(Exception):
    """Raised for store credit operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


def grant_store_credit(
    *,
    user_id: int,
    amount_cents: int,
    reason: str,
    reference_id: int | None = None,
    reference_type: str | None = None,
) -> StoreCreditEntry:
    """
    Append a ledger entry and bump the user's balance.

    Runs inside the caller's transaction and does not commit.
    """
    if amount_cents <= 0:
        raise StoreCreditError("Store credit amount must be positive")

    user = lock_for_update(db.session.query(User).filter_by(id=user_id)).first()
    if user is None:
        raise StoreCreditError(f"User {user_id} not found")

    entry = StoreCreditEntry(
        user_id=user_id,
        amount_cents=amount_cents,
        reason=reason,
        reference_id=reference_id,
        reference_type=reference_type,
    )
    db.session.add(entry)
    user.store_credit_cents = (user.store_credit_cents or 0) + amount_cents
    db.session.flush()
    return entry


def get_balance(user_id: int) -> int:
    user = db.session.get(User, user_id)
    if user is None:
        raise StoreCreditError(f"User {user_id} not found")
    return user.store_credit_cents or 0


def get_history(user_id: int, limit: int = 100) -> list[StoreCreditEntry]:
    return (
        db.session.query(StoreCreditEntry)
        .filter(StoreCreditEntry.user_id == user_id)
        .order_by(StoreCreditEntry.created_at.desc(), StoreCreditEntry.id.desc())
        .limit(limit)
        .all()
    )


def ledger_balance(user_id: int) -> int:
    total = (
        db.session.query(func.coalesce(func.sum(StoreCreditEntry.amount_cents), 0))
        .filter(StoreCreditEntry.user_id == user_id)
        .scalar()
    )
    return int(total or 0)


def recompute_balance(user_id: int) -> int:
    """Rewrite one user's balance from the ledger and commit."""
    def _op():
        begin_write_transaction()
        user = lock_for_update(db.session.query(User).filter_by(id=user_id)).first()
        if user is None:
            raise StoreCreditError(f"User {user_id} not found")
        user.store_credit_cents = ledger_balance(user_id)
        db.session.commit()
        return user.store_credit_cents

    return run_with_retry(_op)


def verify_balances(*, fix: bool = False) -> list[dict]:
    """
    Compare every user's denormalized balance with the ledger sum.

    Returns one entry per mismatch. With fix=True the balances are
    rewritten from the ledger and committed.
    """
    sums = dict(
        db.session.query(StoreCreditEntry.user_id, func.sum(StoreCreditEntry.amount_cents))
        .group_by(StoreCreditEntry.user_id)
        .all()
    )
    mismatches = []
    for user in db.session.query(User).order_by(User.id).all():
        expected = int(sums.get(user.id) or 0)
        actual = user.store_credit_cents or 0
        if expected != actual:
            mismatches.append({"user_id": user.id, "balance_cents": actual, "ledger_cents": expected})
            if fix:
                user.store_credit_cents = expected
    if fix and mismatches:
        db.session.commit()
    return mismatches
