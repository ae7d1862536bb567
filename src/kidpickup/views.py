"""Staff and parent dashboards built on the pickup lifecycle manager."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from .events import PICKUP_REQUESTS, ChangeEvent, ChangeFeed, Subscription
from .exceptions import KidPickupError, TransportError
from .i18n import Translator
from .lifecycle import PickupLifecycleManager
from .models import ApprovalMode, Child, CompletionConfirmation, PickupListing, PickupPersonOption, PickupStatus
from .ops import StructuredLogger

SUCCESS = "success"
ERROR = "error"
BUSY = "busy"

STAFF_LISTS = (PickupStatus.PENDING, PickupStatus.APPROVED, PickupStatus.COMPLETED)


@dataclass(slots=True)
class Notice:
    """User-facing outcome of a dashboard action."""

    kind: str
    title: str
    detail: str = ""
    payload: object = None

    @property
    def ok(self) -> bool:
        return self.kind == SUCCESS

    def as_dict(self) -> Dict[str, str]:
        return {"kind": self.kind, "title": self.title, "detail": self.detail}


class _Dashboard:
    """Shared subscription, busy tracking and notice helpers."""

    table = PICKUP_REQUESTS

    def __init__(
        self,
        manager: PickupLifecycleManager,
        feed: ChangeFeed,
        *,
        translator: Optional[Translator] = None,
        logger: Optional[StructuredLogger] = None,
        locale: Optional[str] = None,
        child_id: Optional[str] = None,
    ) -> None:
        self.manager = manager
        self.feed = feed
        self.translator = translator or Translator()
        self.logger = logger or manager.logger
        self.locale = locale
        self.live = False
        self._child_filter = child_id
        self._subscription: Optional[Subscription] = None
        self._dirty = True
        self._in_flight: set[Tuple[str, str]] = set()
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------
    def open(self) -> "_Dashboard":
        if self._subscription is not None:
            return self
        try:
            self._subscription = self.feed.subscribe(self.table, self._on_change, child_id=self._child_filter)
            self.live = True
        except TransportError as exc:
            self.live = False
            self.logger.log("live_updates_unavailable", dashboard=type(self).__name__, reason=str(exc))
        self._dirty = True
        return self

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        self.live = False

    def __enter__(self) -> "_Dashboard":
        return self.open()

    def __exit__(self, *_exc: object) -> None:
        self.close()

    def _on_change(self, _event: ChangeEvent) -> None:
        with self._lock:
            self._dirty = True

    def _needs_refresh(self) -> bool:
        return self._dirty or not self.live

    @contextmanager
    def _fetching(self) -> Iterator[None]:
        """Clear the dirty flag before a fetch so a signal arriving mid-fetch is kept."""

        with self._lock:
            self._dirty = False
        try:
            yield
        except Exception:
            self._dirty = True
            raise

    # ------------------------------------------------------------------
    # Notices
    # ------------------------------------------------------------------
    def _t(self, key: str, **params: object) -> str:
        return self.translator.translate(key, locale=self.locale, **params)

    def _success(self, key: str, payload: object = None, **params: object) -> Notice:
        return Notice(SUCCESS, self._t(key, **params), payload=payload)

    def _failure(self, key: str, error: KidPickupError) -> Notice:
        return Notice(ERROR, self._t(key), self.translator.error_message(error, locale=self.locale), payload=error)

    @contextmanager
    def _guard(self, operation: str, target: str) -> Iterator[bool]:
        """Yield ``False`` when the same operation on ``target`` is already running."""

        key = (operation, target)
        with self._lock:
            if key in self._in_flight:
                acquired = False
            else:
                self._in_flight.add(key)
                acquired = True
        try:
            yield acquired
        finally:
            if acquired:
                with self._lock:
                    self._in_flight.discard(key)

    def _run(
        self,
        operation: str,
        target: str,
        action: Callable[[], object],
        success_key: Callable[[object], str] | str,
        failure_key: str,
        **params: object,
    ) -> Notice:
        with self._guard(operation, target) as acquired:
            if not acquired:
                return Notice(BUSY, self._t("notice.busy"))
            try:
                result = action()
            except KidPickupError as exc:
                self.logger.log("operation_failed", operation=operation, target=target, error=type(exc).__name__)
                return self._failure(failure_key, exc)
        self._dirty = True
        key = success_key(result) if callable(success_key) else success_key
        return self._success(key, payload=result, **params)

    def is_busy(self, operation: str, target: str) -> bool:
        with self._lock:
            return (operation, target) in self._in_flight


class StaffDashboard(_Dashboard):
    """Live pending, approved and completed queues for kindergarten staff."""

    def __init__(self, manager: PickupLifecycleManager, feed: ChangeFeed, *, staff_id: str, **kwargs: object) -> None:
        super().__init__(manager, feed, **kwargs)  # type: ignore[arg-type]
        self.staff_id = staff_id
        self._lists: Dict[PickupStatus, List[PickupListing]] = {}

    def refresh(self) -> None:
        with self._fetching():
            self._lists = {status: self.manager.list_by_status(status) for status in STAFF_LISTS}

    def listing(self, status: PickupStatus | str) -> List[PickupListing]:
        status = PickupStatus(status)
        if status not in STAFF_LISTS:
            return self.manager.list_by_status(status)
        if self._needs_refresh() or status not in self._lists:
            self.refresh()
        return list(self._lists.get(status, []))

    @property
    def pending(self) -> List[PickupListing]:
        return self.listing(PickupStatus.PENDING)

    @property
    def approved(self) -> List[PickupListing]:
        return self.listing(PickupStatus.APPROVED)

    @property
    def completed(self) -> List[PickupListing]:
        return self.listing(PickupStatus.COMPLETED)

    def approval_label(self, listing: PickupListing) -> str:
        mode = listing.request.approval_mode
        if mode is ApprovalMode.AUTO:
            return self._t("label.auto_approved")
        if mode is ApprovalMode.STAFF:
            return self._t("label.approved_by_staff")
        return ""

    def approve(self, request_id: str) -> Notice:
        return self._run(
            "approve",
            request_id,
            lambda: self.manager.approve(request_id, self.staff_id),
            "notice.pickup.approved",
            "failure.pickup.approve",
        )

    def reject(self, request_id: str) -> Notice:
        return self._run(
            "reject",
            request_id,
            lambda: self.manager.reject(request_id, self.staff_id),
            "notice.pickup.rejected",
            "failure.pickup.reject",
        )

    def prepare_completion(self, request_id: str) -> Notice:
        """Return the confirmation details in the notice payload."""

        try:
            confirmation: CompletionConfirmation = self.manager.prepare_completion(request_id)
        except KidPickupError as exc:
            return self._failure("failure.pickup.complete", exc)
        return Notice(SUCCESS, confirmation.child_name, confirmation.pickup_person_name, payload=confirmation)

    def complete(
        self,
        request_id: str,
        confirmation: Optional[CompletionConfirmation] = None,
        *,
        at: Optional[datetime] = None,
    ) -> Notice:
        """Complete at ``at``, else at the confirmation capture time, else now."""

        if at is None and confirmation is not None:
            at = confirmation.captured_at
        return self._run(
            "complete",
            request_id,
            lambda: self.manager.complete(request_id, at=at, staff_id=self.staff_id),
            "notice.pickup.completed",
            "failure.pickup.complete",
        )


class ParentDashboard(_Dashboard):
    """A parent's children, pickup history and approval preference."""

    def __init__(self, manager: PickupLifecycleManager, feed: ChangeFeed, *, parent_id: str, **kwargs: object) -> None:
        super().__init__(manager, feed, **kwargs)  # type: ignore[arg-type]
        self.parent_id = parent_id
        self._history: List[PickupListing] = []

    def children(self) -> Sequence[Child]:
        return self.manager.store.children_for_parent(self.parent_id)

    def options(self, child_id: str) -> Sequence[PickupPersonOption]:
        return self.manager.pickup_person_options(
            child_id,
            self.parent_id,
            self_label=self._t("label.parent_self"),
            parent_relationship=self._t("label.parent_relationship"),
        )

    def history(self) -> List[PickupListing]:
        if self._needs_refresh():
            with self._fetching():
                self._history = self.manager.requests_for_parent(self.parent_id)
        return list(self._history)

    def request_pickup(self, child_id: str, pickup_person_id: Optional[str] = None, estimated_minutes: Optional[int] = None) -> Notice:
        def success_key(request: object) -> str:
            status = getattr(request, "status", None)
            if status is PickupStatus.APPROVED:
                return "notice.pickup.auto_approved"
            return "notice.pickup.requested"

        return self._run(
            "request",
            child_id,
            lambda: self.manager.create_request(child_id, self.parent_id, pickup_person_id, estimated_minutes),
            success_key,
            "failure.pickup.request",
        )

    def requires_approval(self) -> bool:
        return self.manager.requires_approval(self.parent_id)

    def set_requires_approval(self, value: bool) -> Notice:
        return self._run(
            "preference",
            self.parent_id,
            lambda: self.manager.set_requires_approval(self.parent_id, value),
            "notice.preference.saved",
            "failure.preference.save",
        )


__all__ = ["BUSY", "ERROR", "Notice", "ParentDashboard", "StaffDashboard", "SUCCESS"]
