"""Administrative helpers for KidPickup."""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional, Sequence

from . import validation
from .exceptions import PermissionDeniedError, ValidationError
from .models import AuditEvent, Child, ParentProfile, Role, UserAccount, utcnow
from .security import hash_password
from .store import Store


class AuditLog:
    """Collect audit events for pickup and admin actions."""

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._entries: list[AuditEvent] = []

    def record(
        self,
        actor: str,
        action: str,
        target: str,
        *,
        details: Optional[dict] = None,
        timestamp: Optional[datetime] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            actor=actor,
            action=action,
            target=target,
            timestamp=timestamp or self._clock(),
            details=dict(details or {}),
        )
        self._entries.append(event)
        return event

    def entries(self, *, action: str | None = None, target: str | None = None) -> tuple[AuditEvent, ...]:
        records = self._entries
        if action is not None:
            records = [entry for entry in records if entry.action == action]
        if target is not None:
            records = [entry for entry in records if entry.target == target]
        return tuple(records)

    def latest(self) -> AuditEvent | None:
        return self._entries[-1] if self._entries else None


class AdminService:
    """Privileged user, role and child management.

    Every operation takes the calling user's id and refuses to run unless that
    user holds :attr:`Role.ADMIN`.
    """

    def __init__(self, store: Store, *, audit_log: Optional[AuditLog] = None, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self._clock = clock
        self.audit_log = audit_log or AuditLog(clock=clock)

    def _require_admin(self, caller_id: str) -> None:
        account = self.store.get_user(caller_id)
        if not account.has_role(Role.ADMIN):
            raise PermissionDeniedError("Only administrators may do this.")

    # ------------------------------------------------------------------
    # Users and roles
    # ------------------------------------------------------------------
    def create_user(
        self,
        caller_id: str,
        *,
        email: str,
        password: str,
        full_name: str,
        role: Role | str | None = None,
    ) -> UserAccount:
        """Create a user; ``parent`` is always granted, ``role`` adds one more."""

        self._require_admin(caller_id)
        return self.register_user(email=email, password=password, full_name=full_name, role=role, actor=caller_id)

    def register_user(
        self,
        *,
        email: str,
        password: str,
        full_name: str,
        role: Role | str | None = None,
        actor: str = "system",
    ) -> UserAccount:
        address = validation.email(email)
        name = validation.person_name(full_name, field="full_name")
        raw_password = validation.password(password)
        roles = {Role.PARENT}
        if role:
            roles.add(_parse_role(role))
        if self.store.find_user_by_email(address) is not None:
            raise ValidationError(f"User '{address}' already exists.", message_key="validation.user.exists", field="email")
        account = UserAccount(email=address, full_name=name, password_hash=hash_password(raw_password), roles=frozenset(roles))
        stored = self.store.add_user(account, ParentProfile(user_id=account.user_id, full_name=name, email=address))
        self.audit_log.record(actor, "create_user", stored.user_id, details={"roles": sorted(r.value for r in roles)})
        return stored

    def assign_role(self, caller_id: str, user_id: str, role: Role | str) -> UserAccount:
        self._require_admin(caller_id)
        granted = _parse_role(role)
        account = self.store.get_user(user_id)
        updated = self.store.set_roles(user_id, account.roles | {granted})
        self.audit_log.record(caller_id, "assign_role", user_id, details={"role": granted.value})
        return updated

    def remove_user(self, caller_id: str, user_id: str) -> UserAccount:
        """Drop the user's roles, then the user and profile."""

        self._require_admin(caller_id)
        if caller_id == user_id:
            raise PermissionDeniedError("Administrators cannot remove themselves.")
        account = self.store.get_user(user_id)
        self.store.set_roles(user_id, frozenset())
        self.store.delete_user(user_id)
        self.audit_log.record(caller_id, "remove_user", user_id)
        return account

    def users(self, caller_id: str, *, role: Role | str | None = None) -> Sequence[UserAccount]:
        self._require_admin(caller_id)
        accounts = self.store.list_users()
        if role is None:
            return accounts
        wanted = _parse_role(role)
        return tuple(account for account in accounts if wanted in account.roles)

    # ------------------------------------------------------------------
    # Children
    # ------------------------------------------------------------------
    def add_child(
        self,
        caller_id: str,
        *,
        name: str,
        birth_date: Optional[str] = None,
        notes: Optional[str] = None,
        parent_email: Optional[str] = None,
        photo_url: Optional[str] = None,
    ) -> Child:
        self._require_admin(caller_id)
        parent = None
        if parent_email:
            parent = self.store.find_user_by_email(validation.email(parent_email))
            if parent is None:
                raise ValidationError(f"No user with email '{parent_email}'.", message_key="validation.parent.missing", field="parent_email")
        child = Child(
            name=validation.person_name(name),
            birth_date=validation.birth_date(birth_date),
            notes=validation.notes(notes),
            photo_url=photo_url or None,
            created_at=self._clock(),
        )
        stored = self.store.add_child(child)
        if parent is not None:
            self.store.link_parent(parent.user_id, stored.child_id)
        self.audit_log.record(caller_id, "add_child", stored.child_id)
        return stored

    def link_parent(self, caller_id: str, parent_id: str, child_id: str) -> None:
        self._require_admin(caller_id)
        self.store.link_parent(parent_id, child_id)
        self.audit_log.record(caller_id, "link_parent", child_id, details={"parent": parent_id})


def _parse_role(role: Role | str) -> Role:
    try:
        return Role(role)
    except ValueError as exc:
        raise ValidationError(f"Unknown role '{role}'.", message_key="validation.role.invalid", field="role") from exc


__all__ = ["AdminService", "AuditLog"]
