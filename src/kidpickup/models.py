"""Domain models used by the KidPickup package."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional
from uuid import uuid4

PARENT_PICKUP = "parent"


def utcnow() -> datetime:
    """Return the current time as a naive UTC datetime."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid4())


class PickupStatus(str, Enum):
    """Lifecycle of a pickup request."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"

    @property
    def is_terminal(self) -> bool:
        return self in (PickupStatus.REJECTED, PickupStatus.COMPLETED)


class ApprovalMode(str, Enum):
    """How an approved pickup request got its approval."""

    AUTO = "auto"
    STAFF = "staff"


class Role(str, Enum):
    """Application roles, highest privilege first."""

    ADMIN = "admin"
    EMPLOYEE = "employee"
    PARENT = "parent"

    @classmethod
    def by_priority(cls) -> tuple["Role", ...]:
        return (cls.ADMIN, cls.EMPLOYEE, cls.PARENT)


@dataclass(slots=True)
class Child:
    """A child registered at the kindergarten."""

    name: str
    child_id: str = field(default_factory=new_id)
    photo_url: Optional[str] = None
    birth_date: Optional[date] = None
    notes: str = ""
    created_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class ParentProfile:
    """Display and preference data for a user acting as a parent."""

    user_id: str
    full_name: str
    email: str = ""
    requires_approval: bool = True
    preferred_language: str = "nb"


@dataclass(slots=True)
class UserAccount:
    """Login identity with its granted roles."""

    email: str
    full_name: str
    password_hash: str
    user_id: str = field(default_factory=new_id)
    roles: FrozenSet[Role] = frozenset({Role.PARENT})
    created_at: datetime = field(default_factory=utcnow)

    def has_role(self, role: Role) -> bool:
        return role in self.roles


@dataclass(slots=True)
class AuthorizedPickupEntry:
    """A consented person allowed to pick up one child."""

    child_id: str
    name: str
    relationship: str
    entry_id: str = field(default_factory=new_id)
    phone: Optional[str] = None
    consent_given: bool = False
    consent_date: Optional[datetime] = None
    added_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class PickupRequest:
    """One pickup event for one child.

    ``pickup_person_name`` is captured when the request is created and is
    never refreshed from the authorized pickup registry.
    """

    child_id: str
    parent_id: str
    pickup_person_name: str
    request_id: str = field(default_factory=new_id)
    pickup_person_id: Optional[str] = None
    status: PickupStatus = PickupStatus.PENDING
    requested_at: datetime = field(default_factory=utcnow)
    estimated_arrival_time: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    completed_at: Optional[datetime] = None

    @property
    def approval_mode(self) -> Optional[ApprovalMode]:
        """``AUTO`` when the requesting parent approved their own request."""

        if self.approved_by is None:
            return None
        if self.approved_by == self.parent_id:
            return ApprovalMode.AUTO
        return ApprovalMode.STAFF

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass(slots=True)
class PickupListing:
    """A pickup request joined with child and parent display data."""

    request: PickupRequest
    child_name: str
    parent_name: str
    child_photo_url: Optional[str] = None

    @property
    def request_id(self) -> str:
        return self.request.request_id

    @property
    def status(self) -> PickupStatus:
        return self.request.status


@dataclass(slots=True)
class PickupPersonOption:
    """One choice in the pickup person picker."""

    option_id: str
    name: str
    relationship: str

    @property
    def is_parent(self) -> bool:
        return self.option_id == PARENT_PICKUP


@dataclass(slots=True)
class CompletionConfirmation:
    """Details shown to staff before a pickup is marked as completed."""

    request_id: str
    child_name: str
    pickup_person_name: str
    parent_name: str
    captured_at: datetime
    child_photo_url: Optional[str] = None


@dataclass(slots=True)
class AttendanceLog:
    """A check-in (and optional check-out) of a child on one day."""

    child_id: str
    log_id: str = field(default_factory=new_id)
    checked_in_at: datetime = field(default_factory=utcnow)
    checked_in_by: Optional[str] = None
    checked_out_at: Optional[datetime] = None
    checked_out_by: Optional[str] = None

    @property
    def is_present(self) -> bool:
        return self.checked_out_at is None


@dataclass(slots=True)
class ChatMessage:
    """A message in the conversation about one child."""

    child_id: str
    sender_id: str
    sender_role: Role
    message: str
    message_id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class AuditEvent:
    """Represents an auditable action."""

    actor: str
    action: str
    target: str
    timestamp: datetime = field(default_factory=utcnow)
    details: Dict[str, Any] = field(default_factory=dict)
