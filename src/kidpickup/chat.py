"""Short-lived conversations between staff and parents about one child."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

from . import validation
from .exceptions import NotLinkedError, PermissionDeniedError
from .models import ChatMessage, Role, utcnow
from .ops import StructuredLogger
from .store import Store

DEFAULT_RETENTION = timedelta(hours=24)


class ChatService:
    """Post and read messages keyed by child; messages expire after ``retention``."""

    def __init__(
        self,
        store: Store,
        *,
        retention: timedelta = DEFAULT_RETENTION,
        clock: Callable[[], datetime] = utcnow,
        logger: Optional[StructuredLogger] = None,
    ) -> None:
        self.store = store
        self.retention = retention
        self._clock = clock
        self.logger = logger or StructuredLogger(clock=clock)

    def _check_access(self, user_id: str, role: Role, child_id: str) -> None:
        if role is Role.PARENT:
            if not self.store.is_linked(user_id, child_id):
                raise NotLinkedError(f"Parent '{user_id}' is not linked to child '{child_id}'.")
        elif role not in (Role.EMPLOYEE, Role.ADMIN):
            raise PermissionDeniedError(f"Role '{role}' cannot use chat.")

    def post(self, child_id: str, sender_id: str, sender_role: Role | str, message: str) -> ChatMessage:
        role = Role(sender_role)
        text = validation.chat_message(message)
        self._check_access(sender_id, role, child_id)
        stored = self.store.add_message(
            ChatMessage(child_id=child_id, sender_id=sender_id, sender_role=role, message=text, created_at=self._clock())
        )
        self.logger.log("chat_message_posted", child=child_id, sender=sender_id, role=role.value)
        return stored

    def messages(self, child_id: str, reader_id: str, reader_role: Role | str) -> Sequence[ChatMessage]:
        """Return unexpired messages for ``child_id``, oldest first."""

        self._check_access(reader_id, Role(reader_role), child_id)
        return self.store.messages(child_id, since=self._clock() - self.retention)

    def purge_expired(self) -> int:
        removed = self.store.delete_messages_before(self._clock() - self.retention)
        if removed:
            self.logger.log("chat_messages_purged", count=removed)
        return removed


__all__ = ["ChatService", "DEFAULT_RETENTION"]
