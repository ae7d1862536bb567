"""High level service wiring the KidPickup components together."""

from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional, Sequence

from .admin import AdminService, AuditLog
from .api import ApiExporter
from .attendance import AttendanceBook
from .chat import DEFAULT_RETENTION, ChatService
from .consent import AuthorizedPickupRegistry
from .exceptions import TransportError, ValidationError
from .i18n import Translator
from .lifecycle import PickupLifecycleManager
from .models import PickupListing, PickupRequest, PickupStatus, Role, UserAccount, utcnow
from .notifications import STAFF_RECIPIENT, Notification, NotificationCenter
from .ops import HealthMonitor, StructuredLogger
from .security import AppContext, AuthManager
from .store import MemoryStore, Store
from .views import ParentDashboard, StaffDashboard


class KidPickup:
    """Own one store and the services, dashboards and sessions built on it."""

    __slots__ = (
        "_store",
        "_clock",
        "_logger",
        "_audit_log",
        "_notifications",
        "_translator",
        "_health",
        "_api",
        "lifecycle",
        "registry",
        "attendance",
        "chat",
        "admin",
        "auth",
    )

    def __init__(
        self,
        store: Optional[Store] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        locale: str = "nb",
        chat_retention: timedelta = DEFAULT_RETENTION,
        log_path: Optional[Path] = None,
        max_login_attempts: int = 5,
    ) -> None:
        self._store = store if store is not None else MemoryStore()
        self._clock = clock
        self._logger = StructuredLogger(path=log_path, clock=clock)
        self._audit_log = AuditLog(clock=clock)
        self._notifications = NotificationCenter()
        self._translator = Translator(locale)
        self._health = HealthMonitor()
        self._api = ApiExporter()
        self.lifecycle = PickupLifecycleManager(
            self._store,
            clock=clock,
            notifications=self._notifications,
            logger=self._logger,
            audit_log=self._audit_log,
        )
        self.registry = AuthorizedPickupRegistry(self._store, clock=clock, logger=self._logger, audit_log=self._audit_log)
        self.attendance = AttendanceBook(self._store, clock=clock, logger=self._logger)
        self.chat = ChatService(self._store, retention=chat_retention, clock=clock, logger=self._logger)
        self.admin = AdminService(self._store, audit_log=self._audit_log, clock=clock)
        self.auth = AuthManager(self._store, max_attempts=max_login_attempts, clock=clock)

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------
    @property
    def store(self) -> Store:
        return self._store

    @property
    def logger(self) -> StructuredLogger:
        return self._logger

    @property
    def audit_log(self) -> AuditLog:
        return self._audit_log

    @property
    def notifications(self) -> NotificationCenter:
        return self._notifications

    @property
    def translator(self) -> Translator:
        return self._translator

    @property
    def api(self) -> ApiExporter:
        return self._api

    # ------------------------------------------------------------------
    # Pickup lifecycle
    # ------------------------------------------------------------------
    def request_pickup(
        self,
        child_id: str,
        parent_id: str,
        pickup_person_id: Optional[str] = None,
        estimated_minutes: Optional[int] = None,
    ) -> PickupRequest:
        return self.lifecycle.create_request(child_id, parent_id, pickup_person_id, estimated_minutes)

    def approve(self, request_id: str, staff_id: str) -> PickupRequest:
        return self.lifecycle.approve(request_id, staff_id)

    def reject(self, request_id: str, staff_id: str) -> PickupRequest:
        return self.lifecycle.reject(request_id, staff_id)

    def complete(self, request_id: str, *, staff_id: Optional[str] = None, at: Optional[datetime] = None) -> PickupRequest:
        return self.lifecycle.complete(request_id, at=at, staff_id=staff_id)

    def pickups(self, status: PickupStatus | str) -> Sequence[PickupListing]:
        return self.lifecycle.list_by_status(status)

    # ------------------------------------------------------------------
    # Dashboards and sessions
    # ------------------------------------------------------------------
    def staff_dashboard(self, staff_id: str, *, locale: Optional[str] = None) -> StaffDashboard:
        return StaffDashboard(
            self.lifecycle,
            self._store.feed,
            staff_id=staff_id,
            translator=self._translator,
            logger=self._logger,
            locale=locale,
        )

    def parent_dashboard(self, parent_id: str, *, locale: Optional[str] = None) -> ParentDashboard:
        return ParentDashboard(
            self.lifecycle,
            self._store.feed,
            parent_id=parent_id,
            translator=self._translator,
            logger=self._logger,
            locale=locale,
        )

    def sign_in(self, email: str, password: str) -> AppContext:
        context = self.auth.sign_in(email, password)
        self._logger.log("signed_in", user=context.user_id, roles=sorted(role.value for role in context.roles))
        return context

    def sign_out(self, session_id: str) -> None:
        self.auth.sign_out(session_id)
        self._logger.log("signed_out", session=session_id)

    def set_language(self, user_id: str, locale: str) -> str:
        """Persist ``locale`` as the user's interface language."""

        if locale not in self._translator.available_locales():
            raise ValidationError(f"Unsupported language '{locale}'.", message_key="validation.language.invalid", field="language")
        profile = self._store.update_profile(user_id, preferred_language=locale)
        self._logger.log("language_changed", user=user_id, locale=profile.preferred_language)
        return profile.preferred_language

    def take_notifications(self, user_id: str, role: Optional[Role]) -> Sequence[Notification]:
        """Drain the alerts meant for a signed-in user acting as ``role``."""

        recipient = STAFF_RECIPIENT if role in (Role.EMPLOYEE, Role.ADMIN) else user_id
        return self._notifications.pop_all(recipient=recipient)

    def bootstrap_admin(self, *, email: str, password: str, full_name: str = "Administrator") -> UserAccount:
        """Ensure an administrator account exists for ``email``."""

        existing = self._store.find_user_by_email(email.strip().lower())
        if existing is not None:
            return existing
        account = self.admin.register_user(email=email, password=password, full_name=full_name, role=Role.ADMIN)
        self._store.set_roles(account.user_id, account.roles | {Role.EMPLOYEE})
        self._logger.log("admin_bootstrapped", user=account.user_id)
        return self._store.get_user(account.user_id)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def health_status(self) -> dict:
        try:
            self._store.list_children()
            self._health.backend_online = True
        except TransportError:
            self._health.backend_online = False
        self._health.live_updates = bool(getattr(self._store.feed, "online", True))
        return self._health.status()

    def purge_expired_messages(self) -> int:
        return self.chat.purge_expired()


__all__ = ["KidPickup"]
