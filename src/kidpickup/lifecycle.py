"""Pickup request lifecycle: creation, transitions and derived lists."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence

from . import validation
from .admin import AuditLog
from .exceptions import InvalidTransitionError, RecordNotFoundError, ValidationError
from .models import (
    PARENT_PICKUP,
    CompletionConfirmation,
    PickupListing,
    PickupPersonOption,
    PickupRequest,
    PickupStatus,
    utcnow,
)
from .notifications import (
    STAFF_RECIPIENT,
    Notification,
    NotificationCenter,
    NotificationChannel,
    NotificationType,
)
from .ops import StructuredLogger
from .store import Store

DEFAULT = object()


@dataclass(frozen=True, slots=True)
class ListPolicy:
    """Default ordering column and page size for one status list."""

    order_by: str
    limit: Optional[int]


LIST_POLICIES: Dict[PickupStatus, ListPolicy] = {
    PickupStatus.PENDING: ListPolicy("requested_at", None),
    PickupStatus.APPROVED: ListPolicy("approved_at", 10),
    PickupStatus.COMPLETED: ListPolicy("completed_at", 20),
    PickupStatus.REJECTED: ListPolicy("requested_at", 20),
}


class PickupLifecycleManager:
    """Own the state transitions of :class:`~kidpickup.models.PickupRequest`.

    Every transition is a conditional write on the store, so a request that
    was already moved by someone else fails with
    :class:`~kidpickup.exceptions.InvalidTransitionError` instead of being
    overwritten.
    """

    def __init__(
        self,
        store: Store,
        *,
        clock: Callable[[], datetime] = utcnow,
        notifications: Optional[NotificationCenter] = None,
        logger: Optional[StructuredLogger] = None,
        audit_log: Optional[AuditLog] = None,
    ) -> None:
        self.store = store
        self._clock = clock
        self.notifications = notifications or NotificationCenter()
        self.logger = logger or StructuredLogger(clock=clock)
        self.audit_log = audit_log or AuditLog(clock=clock)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    def create_request(
        self,
        child_id: str,
        parent_id: str,
        pickup_person_id: Optional[str],
        estimated_minutes: Optional[int],
    ) -> PickupRequest:
        if not child_id:
            raise ValidationError("A child is required.", message_key="validation.child.missing", field="child_id")
        if not parent_id:
            raise ValidationError("A parent is required.", message_key="validation.parent.missing", field="parent_id")
        minutes = validation.estimated_minutes(estimated_minutes)
        try:
            self.store.get_child(child_id)
        except RecordNotFoundError as exc:
            raise ValidationError(str(exc), message_key="validation.child.missing", field="child_id") from exc
        try:
            parent = self.store.get_profile(parent_id)
        except RecordNotFoundError as exc:
            raise ValidationError(str(exc), message_key="validation.parent.missing", field="parent_id") from exc

        person_id, person_name = self._resolve_pickup_person(child_id, parent.full_name, pickup_person_id)
        now = self._clock()
        request = PickupRequest(
            child_id=child_id,
            parent_id=parent_id,
            pickup_person_name=person_name,
            pickup_person_id=person_id,
            requested_at=now,
            estimated_arrival_time=now + timedelta(minutes=minutes) if minutes is not None else None,
        )
        if parent.requires_approval:
            request.status = PickupStatus.PENDING
        else:
            request.status = PickupStatus.APPROVED
            request.approved_at = now
            request.approved_by = parent_id

        stored = self.store.insert_request(request)
        self.logger.log(
            "pickup_requested",
            request=stored.request_id,
            child=child_id,
            parent=parent_id,
            status=stored.status.value,
        )
        self.audit_log.record(parent_id, "request_pickup", stored.request_id, details={"status": stored.status.value})
        if stored.status is PickupStatus.PENDING:
            self._notify(STAFF_RECIPIENT, NotificationType.PICKUP_REQUESTED, stored)
        else:
            self._notify(parent_id, NotificationType.PICKUP_APPROVED, stored)
        return stored

    def _resolve_pickup_person(self, child_id: str, parent_name: str, pickup_person_id: Optional[str]) -> tuple[Optional[str], str]:
        if pickup_person_id is None or pickup_person_id == PARENT_PICKUP:
            return None, parent_name
        try:
            entry = self.store.get_authorized_pickup(pickup_person_id)
        except RecordNotFoundError as exc:
            raise ValidationError(str(exc), message_key="validation.pickup_person.invalid", field="pickup_person_id") from exc
        if entry.child_id != child_id:
            raise ValidationError(
                "Pickup person is registered for another child.",
                message_key="validation.pickup_person.invalid",
                field="pickup_person_id",
            )
        if not entry.consent_given:
            raise ValidationError(
                f"No consent recorded for '{entry.name}'.",
                message_key="validation.pickup_person.no_consent",
                field="pickup_person_id",
            )
        return entry.entry_id, entry.name

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def approve(self, request_id: str, staff_id: str) -> PickupRequest:
        now = self._clock()
        updated = self.store.transition(
            request_id,
            PickupStatus.PENDING,
            {"status": PickupStatus.APPROVED, "approved_at": now, "approved_by": staff_id},
        )
        self.logger.log("pickup_approved", request=request_id, staff=staff_id)
        self.audit_log.record(staff_id, "approve_pickup", request_id)
        self._notify(updated.parent_id, NotificationType.PICKUP_APPROVED, updated)
        return updated

    def reject(self, request_id: str, staff_id: str) -> PickupRequest:
        updated = self.store.transition(request_id, PickupStatus.PENDING, {"status": PickupStatus.REJECTED})
        self.logger.log("pickup_rejected", request=request_id, staff=staff_id)
        self.audit_log.record(staff_id, "reject_pickup", request_id)
        self._notify(updated.parent_id, NotificationType.PICKUP_REJECTED, updated)
        return updated

    def prepare_completion(self, request_id: str) -> CompletionConfirmation:
        """Capture the completion time and the details staff confirm against."""

        request = self.store.get_request(request_id)
        if request.status is not PickupStatus.APPROVED:
            raise InvalidTransitionError(
                f"Pickup request '{request_id}' is {request.status.value}, expected approved.",
                current=request.status.value,
                expected=PickupStatus.APPROVED.value,
            )
        listing = self._join(request)
        return CompletionConfirmation(
            request_id=request_id,
            child_name=listing.child_name,
            child_photo_url=listing.child_photo_url,
            pickup_person_name=request.pickup_person_name,
            parent_name=listing.parent_name,
            captured_at=self._clock(),
        )

    def complete(self, request_id: str, *, at: Optional[datetime] = None, staff_id: Optional[str] = None) -> PickupRequest:
        moment = at or self._clock()
        updated = self.store.transition(
            request_id,
            PickupStatus.APPROVED,
            {"status": PickupStatus.COMPLETED, "completed_at": moment},
        )
        self.logger.log("pickup_completed", request=request_id, completed_at=moment.isoformat())
        self.audit_log.record(staff_id or "staff", "complete_pickup", request_id)
        self._notify(updated.parent_id, NotificationType.PICKUP_COMPLETED, updated)
        return updated

    # ------------------------------------------------------------------
    # Derived lists
    # ------------------------------------------------------------------
    def list_by_status(
        self,
        status: PickupStatus | str,
        limit: Optional[int] | object = DEFAULT,
        ordering: Optional[str] = None,
    ) -> List[PickupListing]:
        """Return requests in ``status`` joined with child and parent display data.

        ``limit`` and ``ordering`` default to the status policy in
        :data:`LIST_POLICIES`; pass ``limit=None`` for an unbounded list.
        """

        status = PickupStatus(status)
        policy = LIST_POLICIES[status]
        page_size = policy.limit if limit is DEFAULT else limit
        requests = self.store.query_requests(status=status, order_by=ordering or policy.order_by, limit=page_size)
        return [self._join(request) for request in requests]

    def requests_for_parent(self, parent_id: str, *, limit: Optional[int] = 20) -> List[PickupListing]:
        requests = self.store.query_requests(parent_id=parent_id, order_by="requested_at", limit=limit)
        return [self._join(request) for request in requests]

    def _join(self, request: PickupRequest) -> PickupListing:
        try:
            child = self.store.get_child(request.child_id)
            child_name, photo = child.name, child.photo_url
        except RecordNotFoundError:
            child_name, photo = "", None
        try:
            parent_name = self.store.get_profile(request.parent_id).full_name
        except RecordNotFoundError:
            parent_name = ""
        return PickupListing(request=request, child_name=child_name, parent_name=parent_name, child_photo_url=photo)

    # ------------------------------------------------------------------
    # Parent preferences and picker
    # ------------------------------------------------------------------
    def requires_approval(self, parent_id: str) -> bool:
        return self.store.get_profile(parent_id).requires_approval

    def set_requires_approval(self, parent_id: str, value: bool) -> bool:
        profile = self.store.update_profile(parent_id, requires_approval=bool(value))
        self.logger.log("approval_preference_changed", parent=parent_id, requires_approval=profile.requires_approval)
        return profile.requires_approval

    def pickup_person_options(
        self,
        child_id: str,
        parent_id: str,
        *,
        self_label: str = "",
        parent_relationship: str = "",
    ) -> Sequence[PickupPersonOption]:
        """Return the parent followed by every consented person for ``child_id``."""

        profile = self.store.get_profile(parent_id)
        options = [PickupPersonOption(PARENT_PICKUP, profile.full_name or self_label, parent_relationship)]
        for entry in self.store.authorized_pickups(child_id, consented_only=True):
            options.append(PickupPersonOption(entry.entry_id, entry.name, entry.relationship))
        return tuple(options)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------
    def _notify(self, recipient: str, notification_type: NotificationType, request: PickupRequest) -> None:
        self.notifications.queue(
            Notification(
                recipient=recipient,
                channel=NotificationChannel.PUSH,
                type=notification_type,
                subject=notification_type.value,
                body=f"{request.pickup_person_name} ({request.status.value})",
                metadata={"request_id": request.request_id, "child_id": request.child_id},
            )
        )


__all__ = ["DEFAULT", "LIST_POLICIES", "ListPolicy", "PickupLifecycleManager"]
