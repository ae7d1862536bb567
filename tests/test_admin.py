from datetime import datetime

import pytest

from kidpickup.exceptions import PermissionDeniedError, RecordNotFoundError, ValidationError
from kidpickup.models import Role
from kidpickup.security import AppContext, hash_password, verify_password

PASSWORD = "Secret123"


def test_admin_creates_users_with_parent_role(kidpickup, family) -> None:
    account = kidpickup.admin.create_user(
        family.admin.user_id,
        email="Lise@Example.com",
        password=PASSWORD,
        full_name="Lise Berg",
        role="employee",
    )

    assert account.email == "lise@example.com"
    assert account.roles == frozenset({Role.PARENT, Role.EMPLOYEE})
    assert kidpickup.store.get_profile(account.user_id).requires_approval is True
    assert verify_password(PASSWORD, account.password_hash)
    assert kidpickup.audit_log.latest().action == "create_user"

    with pytest.raises(ValidationError) as excinfo:
        kidpickup.admin.create_user(family.admin.user_id, email="lise@example.com", password=PASSWORD, full_name="Lise Berg")
    assert excinfo.value.message_key == "validation.user.exists"


def test_non_admins_are_refused(kidpickup, family) -> None:
    with pytest.raises(PermissionDeniedError):
        kidpickup.admin.create_user(family.staff.user_id, email="x@example.com", password=PASSWORD, full_name="Xena Berg")
    with pytest.raises(PermissionDeniedError):
        kidpickup.admin.users(family.parent.user_id)


@pytest.mark.parametrize(
    "password, key",
    [("short1A", "validation.password.short"), ("alllowercase1", "validation.password.weak")],
)
def test_password_rules(kidpickup, family, password, key) -> None:
    with pytest.raises(ValidationError) as excinfo:
        kidpickup.admin.create_user(family.admin.user_id, email="new@example.com", password=password, full_name="Ny Bruker")
    assert excinfo.value.message_key == key


def test_assign_role_and_filter_users(kidpickup, family) -> None:
    updated = kidpickup.admin.assign_role(family.admin.user_id, family.parent.user_id, Role.EMPLOYEE)

    assert Role.EMPLOYEE in updated.roles
    employees = kidpickup.admin.users(family.admin.user_id, role="employee")
    assert {account.user_id for account in employees} == {family.parent.user_id, family.staff.user_id}
    with pytest.raises(ValidationError):
        kidpickup.admin.assign_role(family.admin.user_id, family.parent.user_id, "janitor")


def test_remove_user(kidpickup, family) -> None:
    with pytest.raises(PermissionDeniedError):
        kidpickup.admin.remove_user(family.admin.user_id, family.admin.user_id)

    kidpickup.admin.remove_user(family.admin.user_id, family.parent.user_id)

    with pytest.raises(RecordNotFoundError):
        kidpickup.store.get_user(family.parent.user_id)
    assert kidpickup.store.children_for_parent(family.parent.user_id) == ()


def test_add_child_links_parent(kidpickup, family) -> None:
    child = kidpickup.admin.add_child(
        family.admin.user_id,
        name="Jonas Nordmann",
        birth_date="2020-03-14",
        parent_email="kari@example.com",
    )

    assert child.birth_date.isoformat() == "2020-03-14"
    assert kidpickup.store.is_linked(family.parent.user_id, child.child_id)
    names = [item.name for item in kidpickup.store.children_for_parent(family.parent.user_id)]
    assert names == ["Emma Nordmann", "Jonas Nordmann"]


def test_add_child_with_unknown_parent_writes_nothing(kidpickup, family) -> None:
    with pytest.raises(ValidationError):
        kidpickup.admin.add_child(family.admin.user_id, name="Jonas Nordmann", parent_email="nobody@example.com")
    with pytest.raises(ValidationError):
        kidpickup.admin.add_child(family.admin.user_id, name="Jonas Nordmann", birth_date="14.03.2020")

    assert [child.name for child in kidpickup.store.list_children()] == ["Emma Nordmann"]


def test_sign_in_and_role_selection(kidpickup, family) -> None:
    context = kidpickup.sign_in("OLA@example.com ", PASSWORD)

    assert context.user_id == family.staff.user_id
    assert context.active_role is Role.EMPLOYEE
    assert context.needs_role_choice
    context.require(Role.EMPLOYEE)

    context.select_role("parent")
    assert context.active_role is Role.PARENT
    with pytest.raises(PermissionDeniedError):
        context.require(Role.EMPLOYEE, Role.ADMIN)
    with pytest.raises(PermissionDeniedError) as excinfo:
        context.select_role(Role.ADMIN)
    assert excinfo.value.message_key == "validation.role.not_held"
    with pytest.raises(ValidationError):
        context.select_role("janitor")

    assert kidpickup.auth.get_session(context.session_id) is context
    kidpickup.sign_out(context.session_id)
    assert kidpickup.auth.get_session(context.session_id) is None
    assert context.selected_role is None


def test_lockout_after_failed_attempts(kidpickup, family, clock) -> None:
    for _ in range(5):
        with pytest.raises(PermissionDeniedError) as excinfo:
            kidpickup.sign_in("kari@example.com", "Wrong12345")
        assert excinfo.value.message_key == "error.credentials"

    with pytest.raises(PermissionDeniedError) as excinfo:
        kidpickup.sign_in("kari@example.com", PASSWORD)
    assert excinfo.value.message_key == "error.locked"

    clock.advance(minutes=16)
    assert kidpickup.sign_in("kari@example.com", PASSWORD).user_id == family.parent.user_id


def test_sessions_expire(kidpickup, family, clock) -> None:
    context = kidpickup.sign_in("kari@example.com", PASSWORD)
    clock.advance(hours=13)

    assert kidpickup.auth.get_session(context.session_id) is None


def test_password_hashes_are_salted() -> None:
    first = hash_password("Secret123")
    second = hash_password("Secret123")

    assert first != second
    assert verify_password("Secret123", first)
    assert not verify_password("secret123", first)
    assert not verify_password("Secret123", "")


def test_app_context_priority_fallback() -> None:
    context = AppContext(
        session_id="s",
        user_id="u",
        roles=frozenset({Role.PARENT, Role.ADMIN}),
        expires_at=datetime(2030, 1, 1),
    )

    assert context.active_role is Role.ADMIN
    context.clear_role()
    assert context.needs_role_choice


def test_csrf_token_is_bound_to_its_session(kidpickup, family, clock) -> None:
    staff = kidpickup.sign_in("ola@example.com", PASSWORD)
    parent = kidpickup.sign_in("kari@example.com", PASSWORD)

    assert kidpickup.auth.validate_csrf(staff.session_id, staff.csrf_token)
    assert not kidpickup.auth.validate_csrf(staff.session_id, parent.csrf_token)
    assert not kidpickup.auth.validate_csrf(staff.session_id, "")
    assert not kidpickup.auth.validate_csrf("unknown", staff.csrf_token)

    clock.advance(hours=13)
    assert not kidpickup.auth.validate_csrf(staff.session_id, staff.csrf_token)


def test_language_preference(kidpickup, family) -> None:
    assert kidpickup.store.get_profile(family.parent.user_id).preferred_language == "nb"

    assert kidpickup.set_language(family.parent.user_id, "en") == "en"

    assert kidpickup.store.get_profile(family.parent.user_id).preferred_language == "en"
    assert kidpickup.logger.events("language_changed")[0]["locale"] == "en"
    with pytest.raises(ValidationError) as excinfo:
        kidpickup.set_language(family.parent.user_id, "de")
    assert excinfo.value.message_key == "validation.language.invalid"
