"""Local alerts about pickup requests, drained by the web frontend."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Sequence

from .models import utcnow

STAFF_RECIPIENT = "staff"


class NotificationChannel(str, Enum):
    PUSH = "push"


class NotificationType(str, Enum):
    PICKUP_REQUESTED = "pickup_requested"
    PICKUP_APPROVED = "pickup_approved"
    PICKUP_REJECTED = "pickup_rejected"
    PICKUP_COMPLETED = "pickup_completed"


@dataclass(slots=True)
class Notification:
    """An alert waiting for ``recipient`` (a user id or :data:`STAFF_RECIPIENT`)."""

    recipient: str
    channel: NotificationChannel
    type: NotificationType
    subject: str
    body: str
    metadata: Dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def as_dict(self) -> Dict[str, str]:
        payload = {
            "recipient": self.recipient,
            "channel": self.channel.value,
            "type": self.type.value,
            "subject": self.subject,
            "body": self.body,
            "created_at": self.created_at.isoformat(),
        }
        payload.update(self.metadata)
        return payload


class NotificationCenter:
    """In-memory inbox; each alert is handed out once by :meth:`pop_all`."""

    def __init__(self) -> None:
        self._queue: List[Notification] = []
        self._lock = threading.Lock()

    def queue(self, notification: Notification) -> None:
        with self._lock:
            self._queue.append(notification)

    def pending(
        self,
        *,
        notification_type: Optional[NotificationType] = None,
        recipient: Optional[str] = None,
    ) -> Sequence[Notification]:
        with self._lock:
            items = list(self._queue)
        if notification_type is not None:
            items = [item for item in items if item.type is notification_type]
        if recipient is not None:
            items = [item for item in items if item.recipient == recipient]
        return tuple(items)

    def pop_all(self, *, recipient: Optional[str] = None) -> Sequence[Notification]:
        """Remove and return the queued alerts, only those for ``recipient`` when given."""

        taken: List[Notification] = []
        kept: List[Notification] = []
        with self._lock:
            for item in self._queue:
                (taken if recipient is None or item.recipient == recipient else kept).append(item)
            self._queue = kept
        return tuple(taken)


__all__ = [
    "Notification",
    "NotificationCenter",
    "NotificationChannel",
    "NotificationType",
    "STAFF_RECIPIENT",
]
