"""Persistence and SQLModel definitions for the KidPickup web frontend."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, FrozenSet, Iterator, List, Mapping, Optional, Sequence, Type, TypeVar

from sqlalchemy import delete, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Field, Session, SQLModel, create_engine, desc, select

from ..events import ATTENDANCE_LOGS, AUTHORIZED_PICKUPS, CHAT_MESSAGES, PICKUP_REQUESTS, ChangeEvent, ChangeFeed
from ..exceptions import InvalidTransitionError, NotLinkedError, RecordNotFoundError, TransportError
from ..models import (
    AttendanceLog,
    AuthorizedPickupEntry,
    ChatMessage,
    Child,
    ParentProfile,
    PickupRequest,
    PickupStatus,
    Role,
    UserAccount,
    utcnow,
)
from ..store import ORDER_COLUMNS, check_transition_changes
from .config import SQLITE_FILE_NAME

# ---------------------------------------------------------------------------
# Database models
# ---------------------------------------------------------------------------


def build_engine(path: str = SQLITE_FILE_NAME) -> Engine:
    return create_engine(
        f"sqlite:///{path}",
        echo=False,
        connect_args={"check_same_thread": False},
    )


engine = build_engine()


class UserRecord(SQLModel, table=True):
    __tablename__ = "app_user"

    id: str = Field(primary_key=True)
    email: str = Field(index=True, unique=True)
    full_name: str
    password_hash: str
    roles: str = "parent"  # comma separated
    created_at: datetime = Field(default_factory=utcnow)


class ParentProfileRecord(SQLModel, table=True):
    __tablename__ = "parent_profile"

    user_id: str = Field(primary_key=True)
    full_name: str
    email: str = ""
    requires_approval: bool = True
    preferred_language: str = "nb"


class ChildRecord(SQLModel, table=True):
    __tablename__ = "child"

    id: str = Field(primary_key=True)
    name: str
    photo_url: Optional[str] = None
    birth_date: Optional[date] = None
    notes: str = ""
    created_at: datetime = Field(default_factory=utcnow)


class ParentChildLink(SQLModel, table=True):
    __tablename__ = "parent_child"

    parent_id: str = Field(primary_key=True)
    child_id: str = Field(primary_key=True)


class AuthorizedPickupRecord(SQLModel, table=True):
    __tablename__ = "authorized_pickup"

    id: str = Field(primary_key=True)
    child_id: str = Field(index=True)
    name: str
    relationship: str
    phone: Optional[str] = None
    consent_given: bool = False
    consent_date: Optional[datetime] = None
    added_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class PickupRequestRecord(SQLModel, table=True):
    __tablename__ = "pickup_request"

    id: str = Field(primary_key=True)
    child_id: str = Field(index=True)
    parent_id: str = Field(index=True)
    pickup_person_id: Optional[str] = None
    pickup_person_name: str
    status: str = Field(default="pending", index=True)  # pending|approved|rejected|completed
    requested_at: datetime = Field(default_factory=utcnow)
    estimated_arrival_time: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    completed_at: Optional[datetime] = None


class AttendanceRecord(SQLModel, table=True):
    __tablename__ = "attendance_log"

    id: str = Field(primary_key=True)
    child_id: str = Field(index=True)
    checked_in_at: datetime = Field(default_factory=utcnow)
    checked_in_by: Optional[str] = None
    checked_out_at: Optional[datetime] = None
    checked_out_by: Optional[str] = None


class ChatMessageRecord(SQLModel, table=True):
    __tablename__ = "chat_message"

    id: str = Field(primary_key=True)
    child_id: str = Field(index=True)
    sender_id: str
    sender_role: str
    message: str
    created_at: datetime = Field(default_factory=utcnow, index=True)


def create_db_and_tables(bind: Optional[Engine] = None) -> None:
    SQLModel.metadata.create_all(bind or engine)


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------


def _roles_to_text(roles: FrozenSet[Role]) -> str:
    return ",".join(role.value for role in Role.by_priority() if role in roles)


def _roles_from_text(value: str) -> FrozenSet[Role]:
    return frozenset(Role(item) for item in (value or "").split(",") if item)


def _to_user(row: UserRecord) -> UserAccount:
    return UserAccount(
        email=row.email,
        full_name=row.full_name,
        password_hash=row.password_hash,
        user_id=row.id,
        roles=_roles_from_text(row.roles),
        created_at=row.created_at,
    )


def _to_profile(row: ParentProfileRecord) -> ParentProfile:
    return ParentProfile(
        user_id=row.user_id,
        full_name=row.full_name,
        email=row.email,
        requires_approval=row.requires_approval,
        preferred_language=row.preferred_language,
    )


def _to_child(row: ChildRecord) -> Child:
    return Child(
        name=row.name,
        child_id=row.id,
        photo_url=row.photo_url,
        birth_date=row.birth_date,
        notes=row.notes,
        created_at=row.created_at,
    )


def _to_entry(row: AuthorizedPickupRecord) -> AuthorizedPickupEntry:
    return AuthorizedPickupEntry(
        child_id=row.child_id,
        name=row.name,
        relationship=row.relationship,
        entry_id=row.id,
        phone=row.phone,
        consent_given=row.consent_given,
        consent_date=row.consent_date,
        added_by=row.added_by,
        created_at=row.created_at,
    )


def _to_request(row: PickupRequestRecord) -> PickupRequest:
    return PickupRequest(
        child_id=row.child_id,
        parent_id=row.parent_id,
        pickup_person_name=row.pickup_person_name,
        request_id=row.id,
        pickup_person_id=row.pickup_person_id,
        status=PickupStatus(row.status),
        requested_at=row.requested_at,
        estimated_arrival_time=row.estimated_arrival_time,
        approved_at=row.approved_at,
        approved_by=row.approved_by,
        completed_at=row.completed_at,
    )


def _to_attendance(row: AttendanceRecord) -> AttendanceLog:
    return AttendanceLog(
        child_id=row.child_id,
        log_id=row.id,
        checked_in_at=row.checked_in_at,
        checked_in_by=row.checked_in_by,
        checked_out_at=row.checked_out_at,
        checked_out_by=row.checked_out_by,
    )


def _to_message(row: ChatMessageRecord) -> ChatMessage:
    return ChatMessage(
        child_id=row.child_id,
        sender_id=row.sender_id,
        sender_role=Role(row.sender_role),
        message=row.message,
        message_id=row.id,
        created_at=row.created_at,
    )


RowT = TypeVar("RowT", bound=SQLModel)


# ---------------------------------------------------------------------------
# Store implementation
# ---------------------------------------------------------------------------


class SqlStore:
    """SQLModel backed store.

    Pickup transitions are a single ``UPDATE ... WHERE id = ? AND status = ?``
    so two staff members racing on one request cannot both succeed. Database
    failures surface as :class:`TransportError`.
    """

    def __init__(self, bind: Optional[Engine] = None, *, feed: Optional[ChangeFeed] = None) -> None:
        self.engine = bind or engine
        self.feed = feed or ChangeFeed()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine, expire_on_commit=False) as session:
                yield session
                session.commit()
        except SQLAlchemyError as exc:
            raise TransportError(f"Database request failed: {exc}") from exc

    def _publish(self, table: str, kind: str, record_id: Optional[str], child_id: Optional[str]) -> None:
        self.feed.publish(ChangeEvent(table=table, kind=kind, record_id=record_id, child_id=child_id))

    @staticmethod
    def _get(session: Session, model: Type[RowT], key: Any, label: str) -> RowT:
        row = session.get(model, key)
        if row is None:
            raise RecordNotFoundError(f"{label} '{key}' does not exist.")
        return row

    # ------------------------------------------------------------------
    # Users and profiles
    # ------------------------------------------------------------------
    def add_user(self, account: UserAccount, profile: ParentProfile) -> UserAccount:
        with self._session() as session:
            session.add(
                UserRecord(
                    id=account.user_id,
                    email=account.email,
                    full_name=account.full_name,
                    password_hash=account.password_hash,
                    roles=_roles_to_text(account.roles),
                    created_at=account.created_at,
                )
            )
            session.add(
                ParentProfileRecord(
                    user_id=account.user_id,
                    full_name=profile.full_name,
                    email=profile.email,
                    requires_approval=profile.requires_approval,
                    preferred_language=profile.preferred_language,
                )
            )
        return account

    def get_user(self, user_id: str) -> UserAccount:
        with self._session() as session:
            return _to_user(self._get(session, UserRecord, user_id, "User"))

    def find_user_by_email(self, email: str) -> Optional[UserAccount]:
        with self._session() as session:
            row = session.exec(select(UserRecord).where(UserRecord.email == email)).first()
            return _to_user(row) if row else None

    def list_users(self) -> Sequence[UserAccount]:
        with self._session() as session:
            rows = session.exec(select(UserRecord).order_by(UserRecord.full_name)).all()
            return tuple(_to_user(row) for row in rows)

    def set_roles(self, user_id: str, roles: FrozenSet[Role]) -> UserAccount:
        with self._session() as session:
            row = self._get(session, UserRecord, user_id, "User")
            row.roles = _roles_to_text(frozenset(roles))
            session.add(row)
            return _to_user(row)

    def delete_user(self, user_id: str) -> None:
        with self._session() as session:
            row = self._get(session, UserRecord, user_id, "User")
            session.exec(delete(ParentChildLink).where(ParentChildLink.parent_id == user_id))
            session.exec(delete(ParentProfileRecord).where(ParentProfileRecord.user_id == user_id))
            session.delete(row)

    def get_profile(self, user_id: str) -> ParentProfile:
        with self._session() as session:
            return _to_profile(self._get(session, ParentProfileRecord, user_id, "Profile"))

    def update_profile(self, user_id: str, **changes: Any) -> ParentProfile:
        with self._session() as session:
            row = self._get(session, ParentProfileRecord, user_id, "Profile")
            for key, value in changes.items():
                setattr(row, key, value)
            session.add(row)
            return _to_profile(row)

    # ------------------------------------------------------------------
    # Children and links
    # ------------------------------------------------------------------
    def add_child(self, child: Child) -> Child:
        with self._session() as session:
            session.add(
                ChildRecord(
                    id=child.child_id,
                    name=child.name,
                    photo_url=child.photo_url,
                    birth_date=child.birth_date,
                    notes=child.notes,
                    created_at=child.created_at,
                )
            )
        return child

    def get_child(self, child_id: str) -> Child:
        with self._session() as session:
            return _to_child(self._get(session, ChildRecord, child_id, "Child"))

    def list_children(self) -> Sequence[Child]:
        with self._session() as session:
            rows = session.exec(select(ChildRecord).order_by(ChildRecord.name)).all()
            return tuple(_to_child(row) for row in rows)

    def link_parent(self, parent_id: str, child_id: str) -> None:
        with self._session() as session:
            self._get(session, ParentProfileRecord, parent_id, "Profile")
            self._get(session, ChildRecord, child_id, "Child")
            if session.get(ParentChildLink, (parent_id, child_id)) is None:
                session.add(ParentChildLink(parent_id=parent_id, child_id=child_id))

    def is_linked(self, parent_id: str, child_id: str) -> bool:
        with self._session() as session:
            return session.get(ParentChildLink, (parent_id, child_id)) is not None

    def children_for_parent(self, parent_id: str) -> Sequence[Child]:
        with self._session() as session:
            rows = session.exec(
                select(ChildRecord)
                .join(ParentChildLink, ParentChildLink.child_id == ChildRecord.id)
                .where(ParentChildLink.parent_id == parent_id)
                .order_by(ChildRecord.name)
            ).all()
            return tuple(_to_child(row) for row in rows)

    # ------------------------------------------------------------------
    # Authorized pickup registry
    # ------------------------------------------------------------------
    def add_authorized_pickup(self, entry: AuthorizedPickupEntry) -> AuthorizedPickupEntry:
        with self._session() as session:
            self._get(session, ChildRecord, entry.child_id, "Child")
            session.add(
                AuthorizedPickupRecord(
                    id=entry.entry_id,
                    child_id=entry.child_id,
                    name=entry.name,
                    relationship=entry.relationship,
                    phone=entry.phone,
                    consent_given=entry.consent_given,
                    consent_date=entry.consent_date,
                    added_by=entry.added_by,
                    created_at=entry.created_at,
                )
            )
        self._publish(AUTHORIZED_PICKUPS, "INSERT", entry.entry_id, entry.child_id)
        return entry

    def get_authorized_pickup(self, entry_id: str) -> AuthorizedPickupEntry:
        with self._session() as session:
            return _to_entry(self._get(session, AuthorizedPickupRecord, entry_id, "Authorized pickup"))

    def authorized_pickups(self, child_id: str, *, consented_only: bool = False) -> Sequence[AuthorizedPickupEntry]:
        query = select(AuthorizedPickupRecord).where(AuthorizedPickupRecord.child_id == child_id)
        if consented_only:
            query = query.where(AuthorizedPickupRecord.consent_given == True)  # noqa: E712
        with self._session() as session:
            rows = session.exec(query.order_by(desc(AuthorizedPickupRecord.created_at))).all()
            return tuple(_to_entry(row) for row in rows)

    def delete_authorized_pickup(self, entry_id: str) -> None:
        with self._session() as session:
            row = self._get(session, AuthorizedPickupRecord, entry_id, "Authorized pickup")
            child_id = row.child_id
            session.delete(row)
        self._publish(AUTHORIZED_PICKUPS, "DELETE", entry_id, child_id)

    # ------------------------------------------------------------------
    # Pickup requests
    # ------------------------------------------------------------------
    def insert_request(self, request: PickupRequest) -> PickupRequest:
        with self._session() as session:
            if session.get(ParentChildLink, (request.parent_id, request.child_id)) is None:
                raise NotLinkedError(f"Parent '{request.parent_id}' is not linked to child '{request.child_id}'.")
            session.add(
                PickupRequestRecord(
                    id=request.request_id,
                    child_id=request.child_id,
                    parent_id=request.parent_id,
                    pickup_person_id=request.pickup_person_id,
                    pickup_person_name=request.pickup_person_name,
                    status=request.status.value,
                    requested_at=request.requested_at,
                    estimated_arrival_time=request.estimated_arrival_time,
                    approved_at=request.approved_at,
                    approved_by=request.approved_by,
                    completed_at=request.completed_at,
                )
            )
        self._publish(PICKUP_REQUESTS, "INSERT", request.request_id, request.child_id)
        return request

    def get_request(self, request_id: str) -> PickupRequest:
        with self._session() as session:
            return _to_request(self._get(session, PickupRequestRecord, request_id, "Pickup request"))

    def transition(self, request_id: str, expected: PickupStatus, changes: Mapping[str, Any]) -> PickupRequest:
        check_transition_changes(changes)
        values = {key: (value.value if isinstance(value, PickupStatus) else value) for key, value in changes.items()}
        with self._session() as session:
            result = session.exec(
                update(PickupRequestRecord)
                .where(PickupRequestRecord.id == request_id, PickupRequestRecord.status == expected.value)
                .values(**values)
            )
            row = self._get(session, PickupRequestRecord, request_id, "Pickup request")
            if result.rowcount == 0:
                raise InvalidTransitionError(
                    f"Pickup request '{request_id}' is {row.status}, expected {expected.value}.",
                    current=row.status,
                    expected=expected.value,
                )
            updated = _to_request(row)
        self._publish(PICKUP_REQUESTS, "UPDATE", request_id, updated.child_id)
        return updated

    def query_requests(
        self,
        *,
        status: Optional[PickupStatus] = None,
        child_id: Optional[str] = None,
        parent_id: Optional[str] = None,
        order_by: str = "requested_at",
        limit: Optional[int] = None,
    ) -> Sequence[PickupRequest]:
        if order_by not in ORDER_COLUMNS:
            raise ValueError(f"Unsupported ordering column '{order_by}'.")
        query = select(PickupRequestRecord)
        if status is not None:
            query = query.where(PickupRequestRecord.status == PickupStatus(status).value)
        if child_id is not None:
            query = query.where(PickupRequestRecord.child_id == child_id)
        if parent_id is not None:
            query = query.where(PickupRequestRecord.parent_id == parent_id)
        # SQLite sorts NULL lowest, so DESC puts unset timestamps last.
        query = query.order_by(desc(getattr(PickupRequestRecord, order_by)))
        if limit is not None:
            query = query.limit(limit)
        with self._session() as session:
            return tuple(_to_request(row) for row in session.exec(query).all())

    # ------------------------------------------------------------------
    # Attendance
    # ------------------------------------------------------------------
    def add_attendance(self, log: AttendanceLog) -> AttendanceLog:
        with self._session() as session:
            self._get(session, ChildRecord, log.child_id, "Child")
            session.add(
                AttendanceRecord(
                    id=log.log_id,
                    child_id=log.child_id,
                    checked_in_at=log.checked_in_at,
                    checked_in_by=log.checked_in_by,
                    checked_out_at=log.checked_out_at,
                    checked_out_by=log.checked_out_by,
                )
            )
        self._publish(ATTENDANCE_LOGS, "INSERT", log.log_id, log.child_id)
        return log

    def update_attendance(self, log_id: str, **changes: Any) -> AttendanceLog:
        with self._session() as session:
            row = self._get(session, AttendanceRecord, log_id, "Attendance log")
            for key, value in changes.items():
                setattr(row, key, value)
            session.add(row)
            updated = _to_attendance(row)
        self._publish(ATTENDANCE_LOGS, "UPDATE", log_id, updated.child_id)
        return updated

    def attendance_since(self, since: datetime, *, child_id: Optional[str] = None) -> Sequence[AttendanceLog]:
        query = select(AttendanceRecord).where(AttendanceRecord.checked_in_at >= since)
        if child_id is not None:
            query = query.where(AttendanceRecord.child_id == child_id)
        with self._session() as session:
            rows = session.exec(query.order_by(desc(AttendanceRecord.checked_in_at))).all()
            return tuple(_to_attendance(row) for row in rows)

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------
    def add_message(self, message: ChatMessage) -> ChatMessage:
        with self._session() as session:
            self._get(session, ChildRecord, message.child_id, "Child")
            session.add(
                ChatMessageRecord(
                    id=message.message_id,
                    child_id=message.child_id,
                    sender_id=message.sender_id,
                    sender_role=Role(message.sender_role).value,
                    message=message.message,
                    created_at=message.created_at,
                )
            )
        self._publish(CHAT_MESSAGES, "INSERT", message.message_id, message.child_id)
        return message

    def messages(self, child_id: str, *, since: Optional[datetime] = None) -> Sequence[ChatMessage]:
        query = select(ChatMessageRecord).where(ChatMessageRecord.child_id == child_id)
        if since is not None:
            query = query.where(ChatMessageRecord.created_at >= since)
        with self._session() as session:
            rows = session.exec(query.order_by(ChatMessageRecord.created_at)).all()
            return tuple(_to_message(row) for row in rows)

    def delete_messages_before(self, cutoff: datetime) -> int:
        with self._session() as session:
            expired: List[ChatMessageRecord] = list(
                session.exec(select(ChatMessageRecord).where(ChatMessageRecord.created_at < cutoff)).all()
            )
            removed = [(row.id, row.child_id) for row in expired]
            for row in expired:
                session.delete(row)
        for message_id, child_id in removed:
            self._publish(CHAT_MESSAGES, "DELETE", message_id, child_id)
        return len(removed)


__all__ = [
    "AttendanceRecord",
    "AuthorizedPickupRecord",
    "ChatMessageRecord",
    "ChildRecord",
    "ParentChildLink",
    "ParentProfileRecord",
    "PickupRequestRecord",
    "SqlStore",
    "UserRecord",
    "build_engine",
    "create_db_and_tables",
    "engine",
]
