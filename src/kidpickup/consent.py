"""Registry of consented people allowed to pick up a child."""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional, Sequence

from . import validation
from .admin import AuditLog
from .exceptions import NotLinkedError, ValidationError
from .models import AuthorizedPickupEntry, utcnow
from .ops import StructuredLogger
from .store import Store


class AuthorizedPickupRegistry:
    """Add, list and revoke authorized pickup people for a child.

    Only entries with ``consent_given`` are offered anywhere a pickup person
    is chosen. Revoking deletes the entry; requests that already named the
    person keep their stored ``pickup_person_name``.
    """

    def __init__(
        self,
        store: Store,
        *,
        clock: Callable[[], datetime] = utcnow,
        logger: Optional[StructuredLogger] = None,
        audit_log: Optional[AuditLog] = None,
    ) -> None:
        self.store = store
        self._clock = clock
        self.logger = logger or StructuredLogger(clock=clock)
        self.audit_log = audit_log or AuditLog(clock=clock)

    def _require_link(self, parent_id: str, child_id: str) -> None:
        if not self.store.is_linked(parent_id, child_id):
            raise NotLinkedError(f"Parent '{parent_id}' is not linked to child '{child_id}'.")

    def add_person(
        self,
        child_id: str,
        *,
        name: str,
        relationship: str,
        phone: Optional[str] = None,
        consent_given: bool,
        added_by: str,
    ) -> AuthorizedPickupEntry:
        """Register ``name`` for ``child_id``; the parent must confirm consent."""

        entry_name = validation.person_name(name)
        entry_relationship = validation.relationship(relationship)
        entry_phone = validation.phone(phone)
        if not consent_given:
            raise ValidationError("Consent must be given explicitly.", message_key="validation.consent.required", field="consent_given")
        self._require_link(added_by, child_id)
        now = self._clock()
        entry = AuthorizedPickupEntry(
            child_id=child_id,
            name=entry_name,
            relationship=entry_relationship,
            phone=entry_phone,
            consent_given=True,
            consent_date=now,
            added_by=added_by,
            created_at=now,
        )
        stored = self.store.add_authorized_pickup(entry)
        self.logger.log("pickup_person_added", child=child_id, entry=stored.entry_id, added_by=added_by)
        self.audit_log.record(added_by, "grant_pickup_consent", stored.entry_id, details={"child": child_id})
        return stored

    def revoke(self, entry_id: str, *, revoked_by: str) -> AuthorizedPickupEntry:
        entry = self.store.get_authorized_pickup(entry_id)
        self._require_link(revoked_by, entry.child_id)
        self.store.delete_authorized_pickup(entry_id)
        self.logger.log("pickup_person_revoked", child=entry.child_id, entry=entry_id, revoked_by=revoked_by)
        self.audit_log.record(revoked_by, "revoke_pickup_consent", entry_id, details={"child": entry.child_id})
        return entry

    def entries(self, child_id: str) -> Sequence[AuthorizedPickupEntry]:
        return self.store.authorized_pickups(child_id)

    def consented(self, child_id: str) -> Sequence[AuthorizedPickupEntry]:
        return self.store.authorized_pickups(child_id, consented_only=True)


__all__ = ["AuthorizedPickupRegistry"]
