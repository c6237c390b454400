# Overview: In-process realtime fan-out; room-scoped subscriptions with bounded queues.

"""
Event Broadcaster

Subscribers (SSE streams) register a set of rooms and receive every event
emitted to any of those rooms, once per emit. Delivery is at-most-once:
a subscriber whose queue is full misses the event, and nothing is replayed
for subscribers that connect later.

The registry is the only shared mutable state here and carries no business
data; it is guarded by a plain lock.
"""

from __future__ import annotations

import logging
import queue
import threading
import uuid
from dataclasses import dataclass, field
from typing import Iterable

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 100


@dataclass(eq=False)
class Subscription:
    rooms: frozenset
    queue: queue.Queue
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    dropped: int = 0

    def get(self, timeout: float | None = None) -> dict | None:
        """Next event, or None if nothing arrived within timeout."""
        try:
            return self.queue.get(timeout=timeout)
        except queue.Empty:
            return None


class EventBroadcaster:
    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.queue_size = queue_size
        self._lock = threading.Lock()
        self._subscriptions: dict[str, Subscription] = {}

    def init_app(self, app) -> None:
        self.queue_size = int(app.config.get("EVENT_QUEUE_SIZE", DEFAULT_QUEUE_SIZE))
        app.extensions["broadcaster"] = self

    def subscribe(self, rooms: Iterable[str]) -> Subscription:
        room_set = frozenset(room for room in rooms if room)
        if not room_set:
            raise ValueError("Subscription requires at least one room")
        subscription = Subscription(rooms=room_set, queue=queue.Queue(maxsize=self.queue_size))
        with self._lock:
            self._subscriptions[subscription.id] = subscription
        logger.debug("Subscriber %s joined rooms %s", subscription.id, sorted(room_set))
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.pop(subscription.id, None)
        logger.debug("Subscriber %s left", subscription.id)

    def emit(self, rooms: str | Iterable[str], event_name: str, payload: dict) -> int:
        """
        Deliver an event to every subscriber in any of the given rooms.

        A subscriber present in several target rooms receives it once.
        Returns the number of subscribers the event was queued for.
        """
        target_rooms = {rooms} if isinstance(rooms, str) else set(rooms)
        with self._lock:
            targets = [s for s in self._subscriptions.values() if s.rooms & target_rooms]

        delivered = 0
        for subscription in targets:
            message = {"event": event_name, "data": payload}
            try:
                subscription.queue.put_nowait(message)
                delivered += 1
            except queue.Full:
                subscription.dropped += 1
                logger.warning(
                    "Dropping %s for slow subscriber %s (%s dropped so far)",
                    event_name, subscription.id, subscription.dropped,
                )
        return delivered

    def subscriber_count(self, room: str | None = None) -> int:
        with self._lock:
            if room is None:
                return len(self._subscriptions)
            return sum(1 for s in self._subscriptions.values() if room in s.rooms)
