"""FastAPI routes for the KidPickup web frontend.

Routes take form posts and answer with JSON. The Starlette session cookie only
holds the id of the signed-in :class:`~kidpickup.security.AppContext`; the
context itself lives in the service's :class:`~kidpickup.security.AuthManager`.
"""
from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional, Tuple

from fastapi import FastAPI, Form, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from starlette.middleware.sessions import SessionMiddleware

from ..exceptions import (
    InvalidTransitionError,
    KidPickupError,
    NotLinkedError,
    PermissionDeniedError,
    RecordNotFoundError,
    TransportError,
    ValidationError,
)
from ..models import Role
from ..security import AppContext
from ..service import KidPickup
from ..views import BUSY, Notice, ParentDashboard, StaffDashboard
from .config import (
    ADMIN_EMAIL,
    ADMIN_PASSWORD,
    CHAT_RETENTION,
    DEFAULT_LOCALE,
    LOCALE_KEY,
    SESSION_KEY,
    SESSION_SECRET,
    SUPPORTED_LOCALES,
)
from .persistence import SqlStore, create_db_and_tables, engine

# ---------------------------------------------------------------------------
# FastAPI application setup
# ---------------------------------------------------------------------------
app = FastAPI(title="KidPickup")
app.add_middleware(
    SessionMiddleware,
    secret_key=SESSION_SECRET,
    same_site="lax",
    max_age=None,
)

STAFF_ROLES = (Role.EMPLOYEE, Role.ADMIN)

_ERROR_STATUS: Tuple[Tuple[type, int], ...] = (
    (ValidationError, 400),
    (NotLinkedError, 403),
    (PermissionDeniedError, 403),
    (RecordNotFoundError, 404),
    (InvalidTransitionError, 409),
    (TransportError, 503),
)

service: KidPickup
_staff_dashboards: Dict[str, StaffDashboard] = {}
_parent_dashboards: Dict[str, ParentDashboard] = {}


def configure_backend(bind: Engine) -> KidPickup:
    """Point the app at ``bind``, creating tables and the bootstrap admin."""

    global service
    _close_dashboards()
    create_db_and_tables(bind)
    service = KidPickup(SqlStore(bind), locale=DEFAULT_LOCALE, chat_retention=CHAT_RETENTION)
    service.bootstrap_admin(email=ADMIN_EMAIL, password=ADMIN_PASSWORD)
    return service


def _close_dashboards(session_id: Optional[str] = None) -> None:
    for registry in (_staff_dashboards, _parent_dashboards):
        keys = [session_id] if session_id is not None else list(registry)
        for key in keys:
            dashboard = registry.pop(key, None)
            if dashboard is not None:
                dashboard.close()


# ---------------------------------------------------------------------------
# Session helpers
# ---------------------------------------------------------------------------
def current_locale(request: Request) -> str:
    locale = request.session.get(LOCALE_KEY, DEFAULT_LOCALE)
    return locale if locale in SUPPORTED_LOCALES else DEFAULT_LOCALE


def current_context(request: Request) -> Optional[AppContext]:
    session_id = request.session.get(SESSION_KEY)
    if not session_id:
        return None
    context = service.auth.get_session(session_id)
    if context is None:
        request.session.pop(SESSION_KEY, None)
        _close_dashboards(session_id)
    return context


def require_role(
    request: Request,
    *roles: Role,
    csrf_token: Optional[str] = None,
) -> Tuple[Optional[AppContext], Optional[JSONResponse]]:
    """Return the signed-in context, or the error response to send instead.

    Form posts pass their ``csrf_token`` field; it must match the token issued
    with the session.
    """

    context = current_context(request)
    if context is None:
        return None, _error_response(request, PermissionDeniedError("Not signed in."), "failure.load", status_code=401)
    if csrf_token is not None and not service.auth.validate_csrf(context.session_id, csrf_token):
        error = PermissionDeniedError("Invalid or missing form token.", message_key="error.csrf")
        return None, _error_response(request, error, "failure.load")
    try:
        context.require(*roles)
    except PermissionDeniedError as exc:
        return None, _error_response(request, exc, "failure.load")
    return context, None


def _session_payload(context: AppContext) -> Dict[str, object]:
    active = context.active_role
    return {
        "user_id": context.user_id,
        "roles": sorted(role.value for role in context.roles),
        "active_role": active.value if active else None,
        "needs_role_choice": context.needs_role_choice,
        "csrf_token": context.csrf_token,
    }


def _staff_dashboard(request: Request, context: AppContext) -> StaffDashboard:
    dashboard = _staff_dashboards.get(context.session_id)
    if dashboard is None:
        dashboard = service.staff_dashboard(context.user_id)
        dashboard.open()
        _staff_dashboards[context.session_id] = dashboard
    dashboard.locale = current_locale(request)
    return dashboard


def _parent_dashboard(request: Request, context: AppContext) -> ParentDashboard:
    dashboard = _parent_dashboards.get(context.session_id)
    if dashboard is None:
        dashboard = service.parent_dashboard(context.user_id)
        dashboard.open()
        _parent_dashboards[context.session_id] = dashboard
    dashboard.locale = current_locale(request)
    return dashboard


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------
def _status_for(error: KidPickupError) -> int:
    for kind, status in _ERROR_STATUS:
        if isinstance(error, kind):
            return status
    return 400


def _error_response(
    request: Request,
    error: KidPickupError,
    failure_key: str,
    *,
    status_code: Optional[int] = None,
) -> JSONResponse:
    locale = current_locale(request)
    service.logger.log("request_failed", failure=failure_key, error=type(error).__name__)
    return JSONResponse(
        {
            "ok": False,
            "kind": "error",
            "title": service.translator.translate(failure_key, locale=locale),
            "detail": service.translator.error_message(error, locale=locale),
            "field": error.field,
        },
        status_code=status_code or _status_for(error),
    )


def _success_response(request: Request, key: str, data: object = None, **params: object) -> JSONResponse:
    title = service.translator.translate(key, locale=current_locale(request), **params)
    return JSONResponse({"ok": True, "kind": "success", "title": title, "detail": "", "data": data})


def _notice_response(notice: Notice, data: object = None) -> JSONResponse:
    if notice.ok:
        return JSONResponse({"ok": True, **notice.as_dict(), "data": data})
    if notice.kind == BUSY:
        status = 409
    elif isinstance(notice.payload, KidPickupError):
        status = _status_for(notice.payload)
    else:
        status = 400
    return JSONResponse({"ok": False, **notice.as_dict()}, status_code=status)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------
@app.post("/login")
def login(request: Request, email: str = Form(...), password: str = Form(...)):
    try:
        context = service.sign_in(email, password)
    except KidPickupError as exc:
        return _error_response(request, exc, "failure.auth.login")
    request.session.clear()
    request.session[SESSION_KEY] = context.session_id
    try:
        request.session[LOCALE_KEY] = service.store.get_profile(context.user_id).preferred_language
    except RecordNotFoundError:
        request.session[LOCALE_KEY] = DEFAULT_LOCALE
    return _success_response(request, "notice.auth.signed_in", _session_payload(context))


@app.post("/logout")
def logout(request: Request):
    session_id = request.session.get(SESSION_KEY)
    if session_id:
        _close_dashboards(session_id)
        service.sign_out(session_id)
    locale = current_locale(request)
    request.session.clear()
    request.session[LOCALE_KEY] = locale
    return _success_response(request, "notice.auth.signed_out")


@app.post("/role")
def select_role(request: Request, role: str = Form(...), csrf_token: str = Form("")):
    context, denied = require_role(request, *Role.by_priority(), csrf_token=csrf_token)
    if denied is not None:
        return denied
    try:
        context.select_role(role)
    except KidPickupError as exc:
        return _error_response(request, exc, "failure.auth.role")
    _close_dashboards(context.session_id)
    return _success_response(request, "notice.auth.role_selected", _session_payload(context))


@app.get("/me")
def me(request: Request):
    context = current_context(request)
    if context is None:
        return JSONResponse({"ok": False, "signed_in": False}, status_code=401)
    return JSONResponse({"ok": True, "signed_in": True, **_session_payload(context)})


@app.post("/me/language")
def set_language(request: Request, language: str = Form(...), csrf_token: str = Form("")):
    context, denied = require_role(request, *Role.by_priority(), csrf_token=csrf_token)
    if denied is not None:
        return denied
    try:
        locale = service.set_language(context.user_id, language)
    except KidPickupError as exc:
        return _error_response(request, exc, "failure.language")
    request.session[LOCALE_KEY] = locale
    return _success_response(request, "notice.language.saved", {"language": locale})


@app.get("/notifications")
def notifications(request: Request):
    context, denied = require_role(request, *Role.by_priority())
    if denied is not None:
        return denied
    alerts = service.take_notifications(context.user_id, context.active_role)
    return JSONResponse({"ok": True, "notifications": [alert.as_dict() for alert in alerts]})


@app.get("/health")
def health():
    return JSONResponse(service.health_status())


# ---------------------------------------------------------------------------
# Parent routes
# ---------------------------------------------------------------------------
@app.get("/parent/children")
def parent_children(request: Request):
    context, denied = require_role(request, Role.PARENT)
    if denied is not None:
        return denied
    dashboard = _parent_dashboard(request, context)
    try:
        children = [
            {**service.api.child(child), "options": [service.api.option(option) for option in dashboard.options(child.child_id)]}
            for child in dashboard.children()
        ]
    except KidPickupError as exc:
        return _error_response(request, exc, "failure.load")
    return JSONResponse({"ok": True, "children": children})


@app.post("/parent/pickups")
def parent_request_pickup(
    request: Request,
    child_id: str = Form(...),
    pickup_person_id: Optional[str] = Form(None),
    estimated_minutes: Optional[int] = Form(None),
    csrf_token: str = Form(""),
):
    context, denied = require_role(request, Role.PARENT, csrf_token=csrf_token)
    if denied is not None:
        return denied
    notice = _parent_dashboard(request, context).request_pickup(child_id, pickup_person_id or None, estimated_minutes)
    data = service.api.pickup_request(notice.payload) if notice.ok else None
    return _notice_response(notice, data)


@app.get("/parent/pickups")
def parent_pickups(request: Request):
    context, denied = require_role(request, Role.PARENT)
    if denied is not None:
        return denied
    try:
        history = _parent_dashboard(request, context).history()
    except KidPickupError as exc:
        return _error_response(request, exc, "failure.load")
    return JSONResponse({"ok": True, "pickups": service.api.listings(history)})


@app.get("/parent/preferences")
def parent_preferences(request: Request):
    context, denied = require_role(request, Role.PARENT)
    if denied is not None:
        return denied
    try:
        requires_approval = _parent_dashboard(request, context).requires_approval()
    except KidPickupError as exc:
        return _error_response(request, exc, "failure.load")
    return JSONResponse({"ok": True, "requires_approval": requires_approval})


@app.post("/parent/preferences")
def parent_preferences_update(request: Request, requires_approval: bool = Form(...), csrf_token: str = Form("")):
    context, denied = require_role(request, Role.PARENT, csrf_token=csrf_token)
    if denied is not None:
        return denied
    notice = _parent_dashboard(request, context).set_requires_approval(requires_approval)
    return _notice_response(notice, {"requires_approval": notice.payload} if notice.ok else None)


@app.get("/parent/children/{child_id}/authorized")
def parent_authorized_pickups(request: Request, child_id: str):
    context, denied = require_role(request, Role.PARENT)
    if denied is not None:
        return denied
    try:
        if not service.store.is_linked(context.user_id, child_id):
            raise NotLinkedError(f"Parent '{context.user_id}' is not linked to child '{child_id}'.")
        entries = service.registry.entries(child_id)
    except KidPickupError as exc:
        return _error_response(request, exc, "failure.load")
    return JSONResponse({"ok": True, "entries": [service.api.authorized_pickup(entry) for entry in entries]})


@app.post("/parent/children/{child_id}/authorized")
def parent_authorized_pickup_add(
    request: Request,
    child_id: str,
    name: str = Form(...),
    relationship: str = Form(...),
    phone: Optional[str] = Form(None),
    consent_given: bool = Form(False),
    csrf_token: str = Form(""),
):
    context, denied = require_role(request, Role.PARENT, csrf_token=csrf_token)
    if denied is not None:
        return denied
    try:
        entry = service.registry.add_person(
            child_id,
            name=name,
            relationship=relationship,
            phone=phone,
            consent_given=consent_given,
            added_by=context.user_id,
        )
        child_name = service.store.get_child(child_id).name
    except KidPickupError as exc:
        return _error_response(request, exc, "failure.consent.add")
    return _success_response(
        request, "notice.consent.added", service.api.authorized_pickup(entry), name=entry.name, child=child_name
    )


@app.post("/parent/authorized/{entry_id}/revoke")
def parent_authorized_pickup_revoke(request: Request, entry_id: str, csrf_token: str = Form("")):
    context, denied = require_role(request, Role.PARENT, csrf_token=csrf_token)
    if denied is not None:
        return denied
    try:
        entry = service.registry.revoke(entry_id, revoked_by=context.user_id)
        child_name = service.store.get_child(entry.child_id).name
    except KidPickupError as exc:
        return _error_response(request, exc, "failure.consent.revoke")
    return _success_response(request, "notice.consent.revoked", {"id": entry_id}, name=entry.name, child=child_name)


# ---------------------------------------------------------------------------
# Staff routes
# ---------------------------------------------------------------------------
@app.get("/staff/pickups")
def staff_pickups(request: Request):
    context, denied = require_role(request, *STAFF_ROLES)
    if denied is not None:
        return denied
    dashboard = _staff_dashboard(request, context)
    try:
        lists = {
            name: [
                {**service.api.listing(listing), "label": dashboard.approval_label(listing)}
                for listing in listings
            ]
            for name, listings in (
                ("pending", dashboard.pending),
                ("approved", dashboard.approved),
                ("completed", dashboard.completed),
            )
        }
    except KidPickupError as exc:
        return _error_response(request, exc, "failure.load")
    return JSONResponse({"ok": True, "live": dashboard.live, **lists})


@app.post("/staff/pickups/{request_id}/approve")
def staff_approve(request: Request, request_id: str, csrf_token: str = Form("")):
    context, denied = require_role(request, *STAFF_ROLES, csrf_token=csrf_token)
    if denied is not None:
        return denied
    notice = _staff_dashboard(request, context).approve(request_id)
    return _notice_response(notice, service.api.pickup_request(notice.payload) if notice.ok else None)


@app.post("/staff/pickups/{request_id}/reject")
def staff_reject(request: Request, request_id: str, csrf_token: str = Form("")):
    context, denied = require_role(request, *STAFF_ROLES, csrf_token=csrf_token)
    if denied is not None:
        return denied
    notice = _staff_dashboard(request, context).reject(request_id)
    return _notice_response(notice, service.api.pickup_request(notice.payload) if notice.ok else None)


def _confirmation_key(request_id: str) -> str:
    return f"confirm:{request_id}"


@app.get("/staff/pickups/{request_id}/confirmation")
def staff_prepare_completion(request: Request, request_id: str):
    context, denied = require_role(request, *STAFF_ROLES)
    if denied is not None:
        return denied
    notice = _staff_dashboard(request, context).prepare_completion(request_id)
    if not notice.ok:
        return _notice_response(notice)
    confirmation = notice.payload
    request.session[_confirmation_key(request_id)] = confirmation.captured_at.isoformat()
    return _notice_response(notice, service.api.confirmation(confirmation))


@app.post("/staff/pickups/{request_id}/complete")
def staff_complete(request: Request, request_id: str, csrf_token: str = Form("")):
    context, denied = require_role(request, *STAFF_ROLES, csrf_token=csrf_token)
    if denied is not None:
        return denied
    captured = request.session.get(_confirmation_key(request_id))
    at = datetime.fromisoformat(captured) if captured else None
    notice = _staff_dashboard(request, context).complete(request_id, at=at)
    if notice.ok:
        request.session.pop(_confirmation_key(request_id), None)
    return _notice_response(notice, service.api.pickup_request(notice.payload) if notice.ok else None)


@app.get("/staff/attendance")
def staff_attendance(request: Request):
    context, denied = require_role(request, *STAFF_ROLES)
    if denied is not None:
        return denied
    try:
        roster = service.attendance.roster()
    except KidPickupError as exc:
        return _error_response(request, exc, "failure.load")
    return JSONResponse(
        {
            "ok": True,
            "present": sum(1 for entry in roster if entry.is_present),
            "roster": [
                {
                    **service.api.child(entry.child),
                    "present": entry.is_present,
                    "log": service.api.attendance(entry.log) if entry.log else None,
                }
                for entry in roster
            ],
        }
    )


@app.post("/staff/attendance/{child_id}/check-in")
def staff_check_in(request: Request, child_id: str, csrf_token: str = Form("")):
    context, denied = require_role(request, *STAFF_ROLES, csrf_token=csrf_token)
    if denied is not None:
        return denied
    try:
        log = service.attendance.check_in(child_id, context.user_id)
        child_name = service.store.get_child(child_id).name
    except KidPickupError as exc:
        return _error_response(request, exc, "failure.attendance.check_in")
    return _success_response(request, "notice.attendance.checked_in", service.api.attendance(log), child=child_name)


@app.post("/staff/attendance/{child_id}/check-out")
def staff_check_out(request: Request, child_id: str, csrf_token: str = Form("")):
    context, denied = require_role(request, *STAFF_ROLES, csrf_token=csrf_token)
    if denied is not None:
        return denied
    try:
        log = service.attendance.check_out(child_id, context.user_id)
        child_name = service.store.get_child(child_id).name
    except KidPickupError as exc:
        return _error_response(request, exc, "failure.attendance.check_out")
    return _success_response(request, "notice.attendance.checked_out", service.api.attendance(log), child=child_name)


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------
@app.get("/chat/{child_id}")
def chat_messages(request: Request, child_id: str):
    context, denied = require_role(request, *Role.by_priority())
    if denied is not None:
        return denied
    try:
        messages = service.chat.messages(child_id, context.user_id, context.active_role)
    except KidPickupError as exc:
        return _error_response(request, exc, "failure.load")
    return JSONResponse({"ok": True, "messages": [service.api.message(message) for message in messages]})


@app.post("/chat/{child_id}")
def chat_post(request: Request, child_id: str, message: str = Form(...), csrf_token: str = Form("")):
    context, denied = require_role(request, *Role.by_priority(), csrf_token=csrf_token)
    if denied is not None:
        return denied
    try:
        stored = service.chat.post(child_id, context.user_id, context.active_role, message)
    except KidPickupError as exc:
        return _error_response(request, exc, "failure.chat.send")
    return _success_response(request, "notice.chat.sent", service.api.message(stored))


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------
@app.get("/admin/users")
def admin_users(request: Request, role: Optional[str] = Query(None)):
    context, denied = require_role(request, Role.ADMIN)
    if denied is not None:
        return denied
    try:
        accounts = service.admin.users(context.user_id, role=role or None)
    except KidPickupError as exc:
        return _error_response(request, exc, "failure.load")
    return JSONResponse({"ok": True, "users": [service.api.user(account) for account in accounts]})


@app.post("/admin/users")
def admin_create_user(
    request: Request,
    email: str = Form(...),
    password: str = Form(...),
    full_name: str = Form(...),
    role: Optional[str] = Form(None),
    csrf_token: str = Form(""),
):
    context, denied = require_role(request, Role.ADMIN, csrf_token=csrf_token)
    if denied is not None:
        return denied
    try:
        account = service.admin.create_user(
            context.user_id, email=email, password=password, full_name=full_name, role=role or None
        )
    except KidPickupError as exc:
        return _error_response(request, exc, "failure.admin.create_user")
    return _success_response(request, "notice.admin.user_created", service.api.user(account))


@app.post("/admin/users/{user_id}/roles")
def admin_assign_role(request: Request, user_id: str, role: str = Form(...), csrf_token: str = Form("")):
    context, denied = require_role(request, Role.ADMIN, csrf_token=csrf_token)
    if denied is not None:
        return denied
    try:
        account = service.admin.assign_role(context.user_id, user_id, role)
    except KidPickupError as exc:
        return _error_response(request, exc, "failure.admin.assign_role")
    return _success_response(request, "notice.admin.role_assigned", service.api.user(account))


@app.post("/admin/users/{user_id}/remove")
def admin_remove_user(request: Request, user_id: str, csrf_token: str = Form("")):
    context, denied = require_role(request, Role.ADMIN, csrf_token=csrf_token)
    if denied is not None:
        return denied
    try:
        account = service.admin.remove_user(context.user_id, user_id)
    except KidPickupError as exc:
        return _error_response(request, exc, "failure.admin.remove_user")
    for session in service.auth.active_sessions(user_id):
        _close_dashboards(session.session_id)
        service.auth.sign_out(session.session_id)
    return _success_response(request, "notice.admin.user_removed", {"id": user_id}, name=account.full_name)


@app.post("/admin/children")
def admin_add_child(
    request: Request,
    name: str = Form(...),
    birth_date: Optional[str] = Form(None),
    notes: Optional[str] = Form(None),
    parent_email: Optional[str] = Form(None),
    photo_url: Optional[str] = Form(None),
    csrf_token: str = Form(""),
):
    context, denied = require_role(request, Role.ADMIN, csrf_token=csrf_token)
    if denied is not None:
        return denied
    try:
        child = service.admin.add_child(
            context.user_id,
            name=name,
            birth_date=birth_date or None,
            notes=notes,
            parent_email=parent_email or None,
            photo_url=photo_url or None,
        )
    except KidPickupError as exc:
        return _error_response(request, exc, "failure.admin.add_child")
    return _success_response(request, "notice.admin.child_added", service.api.child(child))


@app.post("/admin/children/{child_id}/parents")
def admin_link_parent(request: Request, child_id: str, parent_id: str = Form(...), csrf_token: str = Form("")):
    context, denied = require_role(request, Role.ADMIN, csrf_token=csrf_token)
    if denied is not None:
        return denied
    try:
        service.admin.link_parent(context.user_id, parent_id, child_id)
    except KidPickupError as exc:
        return _error_response(request, exc, "failure.admin.add_child")
    return JSONResponse({"ok": True, "child_id": child_id, "parent_id": parent_id})


@app.post("/admin/chat/purge")
def admin_purge_chat(request: Request, csrf_token: str = Form("")):
    context, denied = require_role(request, Role.ADMIN, csrf_token=csrf_token)
    if denied is not None:
        return denied
    try:
        removed = service.purge_expired_messages()
    except KidPickupError as exc:
        return _error_response(request, exc, "failure.chat.purge")
    return _success_response(request, "notice.chat.purged", {"removed": removed}, count=removed)


@app.get("/admin/audit")
def admin_audit(request: Request, limit: int = Query(50, ge=1, le=500)):
    context, denied = require_role(request, Role.ADMIN)
    if denied is not None:
        return denied
    entries = service.audit_log.entries()[-max(1, limit):]
    return JSONResponse(
        {
            "ok": True,
            "entries": [
                {
                    "actor": entry.actor,
                    "action": entry.action,
                    "target": entry.target,
                    "timestamp": entry.timestamp.isoformat(),
                    "details": entry.details,
                }
                for entry in entries
            ],
        }
    )


configure_backend(engine)

__all__ = [
    "app",
    "configure_backend",
    "current_context",
    "current_locale",
    "require_role",
]
