"""Change feed used to tell dashboards that stored records moved."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

from .exceptions import TransportError

PICKUP_REQUESTS = "pickup_requests"
ATTENDANCE_LOGS = "attendance_logs"
CHAT_MESSAGES = "chat_messages"
AUTHORIZED_PICKUPS = "authorized_pickups"

TABLES = (PICKUP_REQUESTS, ATTENDANCE_LOGS, CHAT_MESSAGES, AUTHORIZED_PICKUPS)


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """Signal that something changed in ``table``; carries no diff."""

    table: str
    kind: str
    record_id: Optional[str] = None
    child_id: Optional[str] = None


ChangeHandler = Callable[[ChangeEvent], None]


class Subscription:
    """Cancellation handle returned by :meth:`ChangeFeed.subscribe`."""

    def __init__(self, feed: "ChangeFeed", table: str, handler: ChangeHandler, child_id: Optional[str]) -> None:
        self._feed = feed
        self.table = table
        self.handler = handler
        self.child_id = child_id
        self.active = True

    def matches(self, event: ChangeEvent) -> bool:
        if not self.active or event.table != self.table:
            return False
        return self.child_id is None or event.child_id == self.child_id

    def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        self._feed._remove(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *_exc: object) -> None:
        self.cancel()


class ChangeFeed:
    """Synchronous in-process change broadcaster.

    When ``online`` is false, :meth:`subscribe` raises :class:`TransportError`
    and published events are dropped.
    """

    def __init__(self) -> None:
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()
        self.online = True

    def subscribe(self, table: str, handler: ChangeHandler, *, child_id: Optional[str] = None) -> Subscription:
        if table not in TABLES:
            raise ValueError(f"Unknown table '{table}'.")
        if not self.online:
            raise TransportError("Change feed is unreachable.")
        subscription = Subscription(self, table, handler, child_id)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def publish(self, event: ChangeEvent) -> int:
        """Deliver ``event`` to matching subscribers and return how many saw it."""

        if not self.online:
            return 0
        with self._lock:
            subscriptions = list(self._subscriptions)
        delivered = 0
        for subscription in subscriptions:
            if subscription.matches(event):
                subscription.handler(event)
                delivered += 1
        return delivered

    def subscriber_count(self, table: Optional[str] = None) -> int:
        with self._lock:
            subscriptions = list(self._subscriptions)
        if table is None:
            return len(subscriptions)
        return sum(1 for subscription in subscriptions if subscription.table == table)

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)


__all__ = [
    "ATTENDANCE_LOGS",
    "AUTHORIZED_PICKUPS",
    "CHAT_MESSAGES",
    "ChangeEvent",
    "ChangeFeed",
    "ChangeHandler",
    "PICKUP_REQUESTS",
    "Subscription",
]
