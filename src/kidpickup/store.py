"""Persistence collaborator interface and its in-memory implementation."""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Protocol, Sequence, Set, Tuple

from .events import ATTENDANCE_LOGS, AUTHORIZED_PICKUPS, CHAT_MESSAGES, PICKUP_REQUESTS, ChangeEvent, ChangeFeed
from .exceptions import InvalidTransitionError, NotLinkedError, RecordNotFoundError, TransportError
from .models import (
    AttendanceLog,
    AuthorizedPickupEntry,
    ChatMessage,
    Child,
    ParentProfile,
    PickupRequest,
    PickupStatus,
    Role,
    UserAccount,
)

ORDER_COLUMNS = ("requested_at", "approved_at", "completed_at")
TRANSITION_FIELDS = frozenset({"status", "approved_at", "approved_by", "completed_at"})


class Store(Protocol):
    """Operations the domain services need from the backing database.

    Writes publish a :class:`~kidpickup.events.ChangeEvent` once committed.
    ``transition`` is a conditional write: it applies ``changes`` only while
    the stored status still equals ``expected``.
    """

    feed: ChangeFeed

    # users and profiles
    def add_user(self, account: UserAccount, profile: ParentProfile) -> UserAccount: ...
    def get_user(self, user_id: str) -> UserAccount: ...
    def find_user_by_email(self, email: str) -> Optional[UserAccount]: ...
    def list_users(self) -> Sequence[UserAccount]: ...
    def set_roles(self, user_id: str, roles: FrozenSet[Role]) -> UserAccount: ...
    def delete_user(self, user_id: str) -> None: ...
    def get_profile(self, user_id: str) -> ParentProfile: ...
    def update_profile(self, user_id: str, **changes: Any) -> ParentProfile: ...

    # children and parent links
    def add_child(self, child: Child) -> Child: ...
    def get_child(self, child_id: str) -> Child: ...
    def list_children(self) -> Sequence[Child]: ...
    def link_parent(self, parent_id: str, child_id: str) -> None: ...
    def is_linked(self, parent_id: str, child_id: str) -> bool: ...
    def children_for_parent(self, parent_id: str) -> Sequence[Child]: ...

    # authorized pickup registry
    def add_authorized_pickup(self, entry: AuthorizedPickupEntry) -> AuthorizedPickupEntry: ...
    def get_authorized_pickup(self, entry_id: str) -> AuthorizedPickupEntry: ...
    def authorized_pickups(self, child_id: str, *, consented_only: bool = False) -> Sequence[AuthorizedPickupEntry]: ...
    def delete_authorized_pickup(self, entry_id: str) -> None: ...

    # pickup requests
    def insert_request(self, request: PickupRequest) -> PickupRequest: ...
    def get_request(self, request_id: str) -> PickupRequest: ...
    def transition(self, request_id: str, expected: PickupStatus, changes: Mapping[str, Any]) -> PickupRequest: ...
    def query_requests(
        self,
        *,
        status: Optional[PickupStatus] = None,
        child_id: Optional[str] = None,
        parent_id: Optional[str] = None,
        order_by: str = "requested_at",
        limit: Optional[int] = None,
    ) -> Sequence[PickupRequest]: ...

    # attendance
    def add_attendance(self, log: AttendanceLog) -> AttendanceLog: ...
    def update_attendance(self, log_id: str, **changes: Any) -> AttendanceLog: ...
    def attendance_since(self, since: datetime, *, child_id: Optional[str] = None) -> Sequence[AttendanceLog]: ...

    # chat
    def add_message(self, message: ChatMessage) -> ChatMessage: ...
    def messages(self, child_id: str, *, since: Optional[datetime] = None) -> Sequence[ChatMessage]: ...
    def delete_messages_before(self, cutoff: datetime) -> int: ...


def check_transition_changes(changes: Mapping[str, Any]) -> None:
    unknown = set(changes) - TRANSITION_FIELDS
    if unknown:
        raise ValueError(f"Transition may not change: {', '.join(sorted(unknown))}.")


def sort_requests(requests: List[PickupRequest], order_by: str) -> List[PickupRequest]:
    """Sort newest first on ``order_by``; records without a value sort last."""

    if order_by not in ORDER_COLUMNS:
        raise ValueError(f"Unsupported ordering column '{order_by}'.")
    return sorted(
        requests,
        key=lambda request: (getattr(request, order_by) is not None, getattr(request, order_by) or datetime.min),
        reverse=True,
    )


class MemoryStore:
    """Thread-safe in-process store.

    Records are copied on the way in and out so callers never share state with
    the store. Setting ``online`` to ``False`` makes every call fail with
    :class:`TransportError` without touching stored data.
    """

    def __init__(self, *, feed: Optional[ChangeFeed] = None) -> None:
        self.feed = feed or ChangeFeed()
        self.online = True
        self._lock = threading.RLock()
        self._users: Dict[str, UserAccount] = {}
        self._profiles: Dict[str, ParentProfile] = {}
        self._children: Dict[str, Child] = {}
        self._links: Set[Tuple[str, str]] = set()
        self._authorized: Dict[str, AuthorizedPickupEntry] = {}
        self._requests: Dict[str, PickupRequest] = {}
        self._attendance: Dict[str, AttendanceLog] = {}
        self._messages: Dict[str, ChatMessage] = {}

    def _check_online(self) -> None:
        if not self.online:
            raise TransportError("Backend is unreachable.")

    def _publish(self, table: str, kind: str, record_id: Optional[str], child_id: Optional[str]) -> None:
        self.feed.publish(ChangeEvent(table=table, kind=kind, record_id=record_id, child_id=child_id))

    # ------------------------------------------------------------------
    # Users and profiles
    # ------------------------------------------------------------------
    def add_user(self, account: UserAccount, profile: ParentProfile) -> UserAccount:
        with self._lock:
            self._check_online()
            self._users[account.user_id] = replace(account)
            self._profiles[account.user_id] = replace(profile, user_id=account.user_id)
            return replace(account)

    def get_user(self, user_id: str) -> UserAccount:
        with self._lock:
            self._check_online()
            try:
                return replace(self._users[user_id])
            except KeyError as exc:
                raise RecordNotFoundError(f"User '{user_id}' does not exist.") from exc

    def find_user_by_email(self, email: str) -> Optional[UserAccount]:
        with self._lock:
            self._check_online()
            for account in self._users.values():
                if account.email == email:
                    return replace(account)
            return None

    def list_users(self) -> Sequence[UserAccount]:
        with self._lock:
            self._check_online()
            return tuple(replace(account) for account in sorted(self._users.values(), key=lambda item: item.full_name))

    def set_roles(self, user_id: str, roles: FrozenSet[Role]) -> UserAccount:
        with self._lock:
            account = self.get_user(user_id)
            updated = replace(account, roles=frozenset(roles))
            self._users[user_id] = updated
            return replace(updated)

    def delete_user(self, user_id: str) -> None:
        with self._lock:
            self._check_online()
            if user_id not in self._users:
                raise RecordNotFoundError(f"User '{user_id}' does not exist.")
            del self._users[user_id]
            self._profiles.pop(user_id, None)
            self._links = {link for link in self._links if link[0] != user_id}

    def get_profile(self, user_id: str) -> ParentProfile:
        with self._lock:
            self._check_online()
            try:
                return replace(self._profiles[user_id])
            except KeyError as exc:
                raise RecordNotFoundError(f"Profile '{user_id}' does not exist.") from exc

    def update_profile(self, user_id: str, **changes: Any) -> ParentProfile:
        with self._lock:
            profile = self.get_profile(user_id)
            updated = replace(profile, **changes)
            self._profiles[user_id] = updated
            return replace(updated)

    # ------------------------------------------------------------------
    # Children and links
    # ------------------------------------------------------------------
    def add_child(self, child: Child) -> Child:
        with self._lock:
            self._check_online()
            self._children[child.child_id] = replace(child)
            return replace(child)

    def get_child(self, child_id: str) -> Child:
        with self._lock:
            self._check_online()
            try:
                return replace(self._children[child_id])
            except KeyError as exc:
                raise RecordNotFoundError(f"Child '{child_id}' does not exist.") from exc

    def list_children(self) -> Sequence[Child]:
        with self._lock:
            self._check_online()
            return tuple(replace(child) for child in sorted(self._children.values(), key=lambda item: item.name))

    def link_parent(self, parent_id: str, child_id: str) -> None:
        with self._lock:
            self.get_profile(parent_id)
            self.get_child(child_id)
            self._links.add((parent_id, child_id))

    def is_linked(self, parent_id: str, child_id: str) -> bool:
        with self._lock:
            self._check_online()
            return (parent_id, child_id) in self._links

    def children_for_parent(self, parent_id: str) -> Sequence[Child]:
        with self._lock:
            self._check_online()
            linked = [self._children[child_id] for owner, child_id in self._links if owner == parent_id and child_id in self._children]
            return tuple(replace(child) for child in sorted(linked, key=lambda item: item.name))

    # ------------------------------------------------------------------
    # Authorized pickup registry
    # ------------------------------------------------------------------
    def add_authorized_pickup(self, entry: AuthorizedPickupEntry) -> AuthorizedPickupEntry:
        with self._lock:
            self.get_child(entry.child_id)
            self._authorized[entry.entry_id] = replace(entry)
        self._publish(AUTHORIZED_PICKUPS, "INSERT", entry.entry_id, entry.child_id)
        return replace(entry)

    def get_authorized_pickup(self, entry_id: str) -> AuthorizedPickupEntry:
        with self._lock:
            self._check_online()
            try:
                return replace(self._authorized[entry_id])
            except KeyError as exc:
                raise RecordNotFoundError(f"Authorized pickup '{entry_id}' does not exist.") from exc

    def authorized_pickups(self, child_id: str, *, consented_only: bool = False) -> Sequence[AuthorizedPickupEntry]:
        with self._lock:
            self._check_online()
            entries = [
                entry
                for entry in self._authorized.values()
                if entry.child_id == child_id and (entry.consent_given or not consented_only)
            ]
            entries.sort(key=lambda entry: entry.created_at, reverse=True)
            return tuple(replace(entry) for entry in entries)

    def delete_authorized_pickup(self, entry_id: str) -> None:
        with self._lock:
            entry = self.get_authorized_pickup(entry_id)
            del self._authorized[entry_id]
        self._publish(AUTHORIZED_PICKUPS, "DELETE", entry_id, entry.child_id)

    # ------------------------------------------------------------------
    # Pickup requests
    # ------------------------------------------------------------------
    def insert_request(self, request: PickupRequest) -> PickupRequest:
        with self._lock:
            self._check_online()
            if (request.parent_id, request.child_id) not in self._links:
                raise NotLinkedError(f"Parent '{request.parent_id}' is not linked to child '{request.child_id}'.")
            self._requests[request.request_id] = replace(request)
        self._publish(PICKUP_REQUESTS, "INSERT", request.request_id, request.child_id)
        return replace(request)

    def get_request(self, request_id: str) -> PickupRequest:
        with self._lock:
            self._check_online()
            try:
                return replace(self._requests[request_id])
            except KeyError as exc:
                raise RecordNotFoundError(f"Pickup request '{request_id}' does not exist.") from exc

    def transition(self, request_id: str, expected: PickupStatus, changes: Mapping[str, Any]) -> PickupRequest:
        check_transition_changes(changes)
        with self._lock:
            current = self.get_request(request_id)
            if current.status is not expected:
                raise InvalidTransitionError(
                    f"Pickup request '{request_id}' is {current.status.value}, expected {expected.value}.",
                    current=current.status.value,
                    expected=expected.value,
                )
            updated = replace(current, **changes)
            self._requests[request_id] = updated
        self._publish(PICKUP_REQUESTS, "UPDATE", request_id, updated.child_id)
        return replace(updated)

    def query_requests(
        self,
        *,
        status: Optional[PickupStatus] = None,
        child_id: Optional[str] = None,
        parent_id: Optional[str] = None,
        order_by: str = "requested_at",
        limit: Optional[int] = None,
    ) -> Sequence[PickupRequest]:
        with self._lock:
            self._check_online()
            matches = [
                request
                for request in self._requests.values()
                if (status is None or request.status is status)
                and (child_id is None or request.child_id == child_id)
                and (parent_id is None or request.parent_id == parent_id)
            ]
            ordered = sort_requests(matches, order_by)
            if limit is not None:
                ordered = ordered[:limit]
            return tuple(replace(request) for request in ordered)

    # ------------------------------------------------------------------
    # Attendance
    # ------------------------------------------------------------------
    def add_attendance(self, log: AttendanceLog) -> AttendanceLog:
        with self._lock:
            self.get_child(log.child_id)
            self._attendance[log.log_id] = replace(log)
        self._publish(ATTENDANCE_LOGS, "INSERT", log.log_id, log.child_id)
        return replace(log)

    def update_attendance(self, log_id: str, **changes: Any) -> AttendanceLog:
        with self._lock:
            self._check_online()
            try:
                current = self._attendance[log_id]
            except KeyError as exc:
                raise RecordNotFoundError(f"Attendance log '{log_id}' does not exist.") from exc
            updated = replace(current, **changes)
            self._attendance[log_id] = updated
        self._publish(ATTENDANCE_LOGS, "UPDATE", log_id, updated.child_id)
        return replace(updated)

    def attendance_since(self, since: datetime, *, child_id: Optional[str] = None) -> Sequence[AttendanceLog]:
        with self._lock:
            self._check_online()
            logs = [
                log
                for log in self._attendance.values()
                if log.checked_in_at >= since and (child_id is None or log.child_id == child_id)
            ]
            logs.sort(key=lambda log: log.checked_in_at, reverse=True)
            return tuple(replace(log) for log in logs)

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------
    def add_message(self, message: ChatMessage) -> ChatMessage:
        with self._lock:
            self.get_child(message.child_id)
            self._messages[message.message_id] = replace(message)
        self._publish(CHAT_MESSAGES, "INSERT", message.message_id, message.child_id)
        return replace(message)

    def messages(self, child_id: str, *, since: Optional[datetime] = None) -> Sequence[ChatMessage]:
        with self._lock:
            self._check_online()
            found = [
                message
                for message in self._messages.values()
                if message.child_id == child_id and (since is None or message.created_at >= since)
            ]
            found.sort(key=lambda message: message.created_at)
            return tuple(replace(message) for message in found)

    def delete_messages_before(self, cutoff: datetime) -> int:
        with self._lock:
            self._check_online()
            expired = [message for message in self._messages.values() if message.created_at < cutoff]
            for message in expired:
                del self._messages[message.message_id]
        for message in expired:
            self._publish(CHAT_MESSAGES, "DELETE", message.message_id, message.child_id)
        return len(expired)


__all__ = ["MemoryStore", "ORDER_COLUMNS", "Store", "check_transition_changes", "sort_requests"]
