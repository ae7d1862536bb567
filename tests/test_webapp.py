import importlib
import json

import pytest

pytest.importorskip("sqlmodel")
pytest.importorskip("fastapi")

from kidpickup.exceptions import InvalidTransitionError
from kidpickup.models import PickupRequest, PickupStatus


class DummyRequest:
    def __init__(self, session=None):
        self.session = session if session is not None else {}
        self.csrf = ""


def body(response):
    return json.loads(response.body)


@pytest.fixture()
def webapp_env(tmp_path, monkeypatch):
    monkeypatch.setenv("KIDPICKUP_SQLITE", str(tmp_path / "default.db"))
    application = importlib.import_module("kidpickup.webapp.application")
    persistence = importlib.import_module("kidpickup.webapp.persistence")
    application.configure_backend(persistence.build_engine(str(tmp_path / "web.db")))
    yield application


def _sign_in(application, email, password):
    request = DummyRequest()
    response = application.login(request, email=email, password=password)
    assert response.status_code == 200
    request.csrf = body(response)["data"]["csrf_token"]
    return request


def _family(application):
    admin = _sign_in(application, application.ADMIN_EMAIL, application.ADMIN_PASSWORD)
    created = body(
        application.admin_create_user(
            admin,
            email="kari@example.com",
            password="Secret123",
            full_name="Kari Nordmann",
            role=None,
            csrf_token=admin.csrf,
        )
    )
    assert created["ok"]
    assert created["data"]["roles"] == ["parent"]
    child = body(
        application.admin_add_child(
            admin,
            name="Emma Nordmann",
            birth_date="2020-03-14",
            notes=None,
            parent_email="kari@example.com",
            photo_url=None,
            csrf_token=admin.csrf,
        )
    )
    assert child["ok"]
    parent = _sign_in(application, "kari@example.com", "Secret123")
    assert body(application.me(parent))["active_role"] == "parent"
    return admin, parent, child["data"]["id"]


def _request_pickup(application, parent, child_id, **fields):
    fields.setdefault("pickup_person_id", None)
    fields.setdefault("estimated_minutes", 15)
    return application.parent_request_pickup(parent, child_id=child_id, csrf_token=parent.csrf, **fields)


def test_unauthenticated_requests_are_refused(webapp_env) -> None:
    application = webapp_env

    assert application.staff_pickups(DummyRequest()).status_code == 401
    assert application.me(DummyRequest()).status_code == 401
    failed = application.login(DummyRequest(), email="nobody@example.com", password="Wrong12345")
    assert failed.status_code == 403
    assert body(failed)["ok"] is False


def test_health_reports_backend(webapp_env) -> None:
    status = body(webapp_env.health())

    assert status == {"backend": "ok", "live_updates": "ok"}


def test_form_posts_require_session_token(webapp_env) -> None:
    application = webapp_env
    admin, parent, child_id = _family(application)
    request_id = body(_request_pickup(application, parent, child_id))["data"]["id"]

    missing = application.staff_approve(admin, request_id=request_id, csrf_token="")
    forged = application.staff_approve(admin, request_id=request_id, csrf_token="not-the-token")
    foreign = application.staff_approve(admin, request_id=request_id, csrf_token=parent.csrf)

    for response in (missing, forged, foreign):
        assert response.status_code == 403
        assert body(response)["detail"] == "Skjemaet er utløpt. Last siden på nytt."
    assert application.service.store.get_request(request_id).status is PickupStatus.PENDING
    refused = application.admin_remove_user(admin, user_id=application.current_context(parent).user_id, csrf_token="")
    assert refused.status_code == 403

    assert application.staff_approve(admin, request_id=request_id, csrf_token=admin.csrf).status_code == 200


def test_pickup_flow_through_routes(webapp_env) -> None:
    application = webapp_env
    admin, parent, child_id = _family(application)

    children = body(application.parent_children(parent))
    assert [child["name"] for child in children["children"]] == ["Emma Nordmann"]
    assert children["children"][0]["options"][0]["is_parent"] is True

    created = _request_pickup(application, parent, child_id)
    assert created.status_code == 200
    request_id = body(created)["data"]["id"]
    assert body(created)["data"]["status"] == "pending"

    listed = body(application.staff_pickups(admin))
    assert [item["id"] for item in listed["pending"]] == [request_id]
    assert listed["pending"][0]["child_name"] == "Emma Nordmann"

    approved = application.staff_approve(admin, request_id=request_id, csrf_token=admin.csrf)
    assert body(approved)["data"]["approval_mode"] == "staff"
    again = application.staff_approve(admin, request_id=request_id, csrf_token=admin.csrf)
    assert again.status_code == 409
    assert body(again)["ok"] is False

    confirmation = body(application.staff_prepare_completion(admin, request_id=request_id))
    assert confirmation["data"]["pickup_person_name"] == "Kari Nordmann"
    completed = body(application.staff_complete(admin, request_id=request_id, csrf_token=admin.csrf))
    assert completed["data"]["status"] == "completed"
    assert completed["data"]["completed_at"] == confirmation["data"]["captured_at"]

    history = body(application.parent_pickups(parent))
    assert [item["status"] for item in history["pickups"]] == ["completed"]
    assert application.staff_pickups(parent).status_code == 403


def test_notifications_are_drained_per_recipient(webapp_env) -> None:
    application = webapp_env
    admin, parent, child_id = _family(application)
    request_id = body(_request_pickup(application, parent, child_id))["data"]["id"]

    staff_alerts = body(application.notifications(admin))["notifications"]
    assert [alert["type"] for alert in staff_alerts] == ["pickup_requested"]
    assert staff_alerts[0]["request_id"] == request_id
    assert body(application.notifications(admin))["notifications"] == []
    assert body(application.notifications(parent))["notifications"] == []

    application.staff_approve(admin, request_id=request_id, csrf_token=admin.csrf)

    parent_alerts = body(application.notifications(parent))["notifications"]
    assert [alert["type"] for alert in parent_alerts] == ["pickup_approved"]
    assert application.service.notifications.pending() == ()


def test_language_preference_is_saved(webapp_env) -> None:
    application = webapp_env
    _admin, parent, _child_id = _family(application)
    parent_id = application.current_context(parent).user_id

    saved = application.set_language(parent, language="en", csrf_token=parent.csrf)

    assert body(saved)["title"] == "Language saved."
    assert parent.session[application.LOCALE_KEY] == "en"
    assert application.service.store.get_profile(parent_id).preferred_language == "en"

    rejected = application.set_language(parent, language="de", csrf_token=parent.csrf)
    assert rejected.status_code == 400
    assert body(rejected)["detail"] == "Unknown language"

    again = _sign_in(application, "kari@example.com", "Secret123")
    assert again.session[application.LOCALE_KEY] == "en"


def test_preferences_and_consent_routes(webapp_env) -> None:
    application = webapp_env
    _admin, parent, child_id = _family(application)

    refused = application.parent_authorized_pickup_add(
        parent,
        child_id=child_id,
        name="Bestemor Anne",
        relationship="Bestemor",
        phone=None,
        consent_given=False,
        csrf_token=parent.csrf,
    )
    assert refused.status_code == 400
    assert body(refused)["field"] == "consent_given"

    added = body(
        application.parent_authorized_pickup_add(
            parent,
            child_id=child_id,
            name="Bestemor Anne",
            relationship="Bestemor",
            phone=None,
            consent_given=True,
            csrf_token=parent.csrf,
        )
    )
    entries = body(application.parent_authorized_pickups(parent, child_id=child_id))["entries"]
    assert [entry["id"] for entry in entries] == [added["data"]["id"]]

    saved = body(application.parent_preferences_update(parent, requires_approval=False, csrf_token=parent.csrf))
    assert saved["data"] == {"requires_approval": False}
    auto = body(_request_pickup(application, parent, child_id, pickup_person_id=added["data"]["id"], estimated_minutes=None))
    assert auto["data"]["status"] == "approved"
    assert auto["data"]["approval_mode"] == "auto"

    revoked = application.parent_authorized_pickup_revoke(parent, entry_id=added["data"]["id"], csrf_token=parent.csrf)
    assert revoked.status_code == 200
    assert body(application.parent_authorized_pickups(parent, child_id=child_id))["entries"] == []


def test_role_selection_and_chat(webapp_env) -> None:
    application = webapp_env
    admin, parent, child_id = _family(application)

    assert application.select_role(admin, role="employee", csrf_token=admin.csrf).status_code == 200
    assert body(application.me(admin))["active_role"] == "employee"
    assert application.select_role(parent, role="admin", csrf_token=parent.csrf).status_code == 403

    posted = application.chat_post(parent, child_id=child_id, message="Bestemor henter i dag", csrf_token=parent.csrf)
    assert posted.status_code == 200
    application.chat_post(admin, child_id=child_id, message="Takk!", csrf_token=admin.csrf)
    messages = body(application.chat_messages(admin, child_id=child_id))["messages"]
    assert [message["sender_role"] for message in messages] == ["parent", "employee"]

    checked_in = application.staff_check_in(admin, child_id=child_id, csrf_token=admin.csrf)
    assert body(checked_in)["data"]["present"] is True
    assert body(application.staff_attendance(admin))["present"] == 1


def test_audit_limit_is_at_least_one(webapp_env) -> None:
    application = webapp_env
    admin, _parent, _child_id = _family(application)

    assert len(body(application.admin_audit(admin, limit=0))["entries"]) == 1
    latest = body(application.admin_audit(admin, limit=1))["entries"]
    assert len(latest) == 1
    assert len(body(application.admin_audit(admin, limit=50))["entries"]) >= 2


def test_sql_store_transition_is_conditional(webapp_env) -> None:
    application = webapp_env
    _admin, parent, child_id = _family(application)
    store = application.service.store
    parent_id = application.current_context(parent).user_id

    request = store.insert_request(PickupRequest(child_id=child_id, parent_id=parent_id, pickup_person_name="Kari"))
    store.transition(request.request_id, PickupStatus.PENDING, {"status": PickupStatus.REJECTED})

    with pytest.raises(InvalidTransitionError):
        store.transition(request.request_id, PickupStatus.PENDING, {"status": PickupStatus.APPROVED})
    assert store.get_request(request.request_id).status is PickupStatus.REJECTED


def test_logout_clears_session(webapp_env) -> None:
    application = webapp_env
    _admin, parent, _child_id = _family(application)

    application.logout(parent)

    assert application.current_context(parent) is None
    assert application.parent_pickups(parent).status_code == 401
