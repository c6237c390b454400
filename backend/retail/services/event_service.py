# Overview: Service-layer operations for realtime events; transactional outbox and post-commit dispatch.

"""
Realtime event outbox.

State-changing services call the enqueue_* helpers inside their own
transaction, so an event row exists if and only if the change committed.
After commit they call publish_pending_events(), which claims NEW rows and
hands them to the in-process broadcaster. Dispatch never raises into the
caller: a dispatch problem is logged and the row stays in the outbox.
"""

from __future__ import annotations

import json
import logging
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db, broadcaster
from ..models import EventOutbox
from ..time_utils import days_ago, utcnow

logger = logging.getLogger(__name__)


ROOM_STAFF = "staff"
ROOM_ADMIN = "admin"
ROOM_POS = "pos"

EVENT_ORDER_NEW = "order:new"
EVENT_ORDER_UPDATED = "order:updated"
EVENT_INVENTORY_UPDATED = "inventory:updated"
EVENT_INVENTORY_LOW_STOCK = "inventory:low-stock"
EVENT_RETURN_NEW = "return:new"
EVENT_RETURN_UPDATED = "return:updated"

OUTBOX_STATUS_NEW = "NEW"
OUTBOX_STATUS_PUBLISHED = "PUBLISHED"
OUTBOX_STATUS_FAILED = "FAILED"


def user_room(user_id: int) -> str:
    return f"user:{user_id}"


def rooms_for_user(user, *, is_pos: bool = False) -> list[str]:
    """Rooms a principal joins when it opens an event stream."""
    rooms = [user_room(user.id)]
    if user.is_staff:
        rooms.append(ROOM_STAFF)
    if user.is_admin:
        rooms.append(ROOM_ADMIN)
    if is_pos and user.is_staff:
        rooms.append(ROOM_POS)
    return rooms


def _owner_rooms(user_id: int | None) -> list[str]:
    rooms = [ROOM_STAFF]
    if user_id is not None:
        rooms.append(user_room(user_id))
    return rooms


# =============================================================================
# ENQUEUE (inside the caller's transaction)
# =============================================================================

def enqueue_event(event_name: str, rooms: list[str], payload: dict) -> EventOutbox:
    """Add an outbox row to the current transaction. Does not flush or commit."""
    row = EventOutbox(
        event_name=event_name,
        rooms=list(rooms),
        payload=payload,
        status=OUTBOX_STATUS_NEW,
        attempts=0,
    )
    db.session.add(row)
    return row


def enqueue_order_created(order_data: dict) -> EventOutbox:
    return enqueue_event(EVENT_ORDER_NEW, _owner_rooms(order_data.get("user_id")), order_data)


def enqueue_order_updated(order_data: dict) -> EventOutbox:
    return enqueue_event(EVENT_ORDER_UPDATED, _owner_rooms(order_data.get("user_id")), order_data)


def enqueue_return_created(return_data: dict) -> EventOutbox:
    return enqueue_event(EVENT_RETURN_NEW, _owner_rooms(return_data.get("user_id")), return_data)


def enqueue_return_updated(return_data: dict) -> EventOutbox:
    return enqueue_event(EVENT_RETURN_UPDATED, _owner_rooms(return_data.get("user_id")), return_data)


def enqueue_stock_change(change) -> list[EventOutbox]:
    """
    inventory:updated for every change, plus inventory:low-stock when the
    new level is at or below the product's threshold.
    """
    rows = [
        enqueue_event(
            EVENT_INVENTORY_UPDATED,
            [ROOM_STAFF, ROOM_POS],
            {
                "product_id": change.product_id,
                "name": change.name,
                "stock_quantity": change.new_quantity,
                "previous_stock": change.previous_quantity,
                "adjustment": change.adjustment,
            },
        )
    ]
    if change.is_low_stock:
        rows.append(
            enqueue_event(
                EVENT_INVENTORY_LOW_STOCK,
                [ROOM_STAFF, ROOM_ADMIN],
                {
                    "product_id": change.product_id,
                    "name": change.name,
                    "stock_quantity": change.new_quantity,
                    "low_stock_threshold": change.low_stock_threshold,
                },
            )
        )
    return rows


# =============================================================================
# DISPATCH (after commit)
# =============================================================================

def _claim(event_id: int) -> bool:
    """Mark a NEW row as published; only one dispatcher wins the claim."""
    claimed = (
        db.session.query(EventOutbox)
        .filter(EventOutbox.id == event_id, EventOutbox.status == OUTBOX_STATUS_NEW)
        .update(
            {
                EventOutbox.status: OUTBOX_STATUS_PUBLISHED,
                EventOutbox.published_at: utcnow(),
                EventOutbox.attempts: EventOutbox.attempts + 1,
            },
            synchronize_session=False,
        )
    )
    db.session.commit()
    return claimed == 1


def _mark_failed(event_id: int, error: Exception) -> None:
    try:
        db.session.query(EventOutbox).filter(EventOutbox.id == event_id).update(
            {EventOutbox.status: OUTBOX_STATUS_FAILED, EventOutbox.last_error: str(error)[:2000]},
            synchronize_session=False,
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Could not mark outbox event %s as failed", event_id)


def dispatch_pending_events(limit: int = 500) -> int:
    """
    Emit NEW outbox rows in id order. Returns the number emitted.

    Each row is claimed (committed as PUBLISHED) before it is emitted, so two
    concurrent dispatchers never deliver the same event twice. Errors are
    logged and swallowed.
    """
    emitted = 0
    try:
        pending = (
            db.session.query(EventOutbox.id, EventOutbox.event_name, EventOutbox.rooms, EventOutbox.payload)
            .filter(EventOutbox.status == OUTBOX_STATUS_NEW)
            .order_by(EventOutbox.id.asc())
            .limit(limit)
            .all()
        )
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Could not read event outbox")
        return 0

    for event_id, event_name, rooms, payload in pending:
        try:
            if not _claim(event_id):
                continue
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Could not claim outbox event %s", event_id)
            continue

        try:
            broadcaster.emit(rooms or [], event_name, payload)
            emitted += 1
        except Exception as exc:
            logger.exception("Failed to emit %s (outbox id %s)", event_name, event_id)
            _mark_failed(event_id, exc)

    return emitted


def publish_pending_events() -> int:
    """Post-commit hook used by services. Never raises."""
    return dispatch_pending_events()


def purge_published_events(days: int = 7) -> int:
    cutoff = days_ago(days)
    deleted = (
        db.session.query(EventOutbox)
        .filter(EventOutbox.status == OUTBOX_STATUS_PUBLISHED, EventOutbox.published_at < cutoff)
        .delete(synchronize_session=False)
    )
    db.session.commit()
    return deleted


def pending_event_count() -> int:
    return db.session.query(EventOutbox).filter(EventOutbox.status == OUTBOX_STATUS_NEW).count()


def format_sse(message: dict) -> str:
    """Render a broadcaster message as a Server-Sent Events frame."""
    data = json.dumps(message.get("data"), separators=(",", ":"), default=str)
    return f"event: {message.get('event')}\ndata: {data}\n\n"
