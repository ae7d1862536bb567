"""Authentication, session context and role selection for KidPickup."""

from __future__ import annotations

import hashlib
import hmac
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from secrets import token_hex, token_urlsafe
from typing import Callable, Deque, Dict, FrozenSet, Iterable, Optional
from uuid import uuid4

from .exceptions import PermissionDeniedError, ValidationError
from .models import Role, UserAccount, utcnow
from .store import Store

_PBKDF2_ROUNDS = 120_000


def hash_password(password: str, *, salt: Optional[str] = None) -> str:
    """Return ``salt$hexdigest`` for ``password`` using PBKDF2-SHA256."""

    salt = salt or token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), _PBKDF2_ROUNDS)
    return f"{salt}${digest.hex()}"


def verify_password(password: str, stored: str) -> bool:
    salt, _, _digest = stored.partition("$")
    if not salt:
        return False
    return hmac.compare_digest(hash_password(password, salt=salt), stored)


@dataclass(slots=True)
class AppContext:
    """Explicit per-session state handed to dashboards and handlers.

    Populated at sign-in and cleared at sign-out; nothing about the signed-in
    user lives in module globals.
    """

    session_id: str
    user_id: str
    roles: FrozenSet[Role]
    expires_at: datetime
    csrf_token: str = ""
    selected_role: Optional[Role] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def active_role(self) -> Optional[Role]:
        """The selected role, else the highest held role."""

        if self.selected_role is not None:
            return self.selected_role
        for role in Role.by_priority():
            if role in self.roles:
                return role
        return None

    @property
    def needs_role_choice(self) -> bool:
        return self.selected_role is None and len(self.roles) > 1

    def select_role(self, role: Role | str) -> Role:
        try:
            chosen = Role(role)
        except ValueError as exc:
            raise ValidationError(f"Unknown role '{role}'.", message_key="validation.role.invalid", field="role") from exc
        if chosen not in self.roles:
            raise PermissionDeniedError(f"User does not hold role '{chosen.value}'.", message_key="validation.role.not_held")
        self.selected_role = chosen
        return chosen

    def clear_role(self) -> None:
        self.selected_role = None

    def require(self, *roles: Role) -> None:
        """Raise unless the active role is one of ``roles``."""

        if self.active_role not in roles:
            raise PermissionDeniedError(f"Requires one of: {', '.join(role.value for role in roles)}.")

    def is_expired(self, *, at: Optional[datetime] = None) -> bool:
        return (at or utcnow()) >= self.expires_at

    def refresh_csrf(self) -> str:
        self.csrf_token = token_urlsafe(16)
        return self.csrf_token


class AuthManager:
    """Sign users in against the store with a lockout after failed attempts."""

    def __init__(
        self,
        store: Store,
        *,
        max_attempts: int = 5,
        lockout_minutes: int = 15,
        session_minutes: int = 12 * 60,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self._clock = clock
        self._max_attempts = max_attempts
        self._lockout_window = timedelta(minutes=lockout_minutes)
        self._session_duration = timedelta(minutes=session_minutes)
        self._login_attempts: Dict[str, Deque[datetime]] = {}
        self._sessions: Dict[str, AppContext] = {}

    # ------------------------------------------------------------------
    # Rate limiting helpers
    # ------------------------------------------------------------------
    def record_login_attempt(self, email: str, *, success: bool) -> bool:
        """Record a login attempt and return whether authentication may proceed."""

        now = self._clock()
        bucket = self._login_attempts.setdefault(email, deque())
        self._prune(bucket, now)
        if success:
            bucket.clear()
            return True
        bucket.append(now)
        return len(bucket) < self._max_attempts

    def is_locked(self, email: str) -> bool:
        bucket = self._login_attempts.get(email)
        if not bucket:
            return False
        self._prune(bucket, self._clock())
        return len(bucket) >= self._max_attempts

    def _prune(self, bucket: Deque[datetime], now: datetime) -> None:
        while bucket and now - bucket[0] > self._lockout_window:
            bucket.popleft()

    # ------------------------------------------------------------------
    # Session handling
    # ------------------------------------------------------------------
    def sign_in(self, email: str, password: str) -> AppContext:
        address = (email or "").strip().lower()
        if self.is_locked(address):
            raise PermissionDeniedError("User is locked out due to repeated failed attempts.", message_key="error.locked")
        account = self.store.find_user_by_email(address)
        if account is None or not verify_password(password or "", account.password_hash):
            self.record_login_attempt(address, success=False)
            raise PermissionDeniedError("Wrong email or password.", message_key="error.credentials")
        self.record_login_attempt(address, success=True)
        return self.open_session(account)

    def open_session(self, account: UserAccount) -> AppContext:
        now = self._clock()
        context = AppContext(
            session_id=str(uuid4()),
            user_id=account.user_id,
            roles=frozenset(account.roles),
            expires_at=now + self._session_duration,
            created_at=now,
        )
        context.refresh_csrf()
        self._sessions[context.session_id] = context
        return context

    def get_session(self, session_id: str) -> Optional[AppContext]:
        context = self._sessions.get(session_id)
        if context is None:
            return None
        if context.is_expired(at=self._clock()):
            self._sessions.pop(session_id, None)
            return None
        return context

    def validate_csrf(self, session_id: str, token: Optional[str]) -> bool:
        context = self.get_session(session_id)
        if context is None or not token or not context.csrf_token:
            return False
        return hmac.compare_digest(context.csrf_token, token)

    def sign_out(self, session_id: str) -> None:
        context = self._sessions.pop(session_id, None)
        if context is not None:
            context.clear_role()

    def active_sessions(self, user_id: str) -> Iterable[AppContext]:
        return tuple(context for context in self._sessions.values() if context.user_id == user_id)


__all__ = ["AppContext", "AuthManager", "hash_password", "verify_password"]
