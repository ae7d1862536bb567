import threading
from datetime import timedelta

import pytest

from kidpickup.exceptions import InvalidTransitionError, NotLinkedError, ValidationError
from kidpickup.lifecycle import PickupLifecycleManager
from kidpickup.models import PARENT_PICKUP, ApprovalMode, AuthorizedPickupEntry, Child, PickupStatus, Role
from kidpickup.notifications import STAFF_RECIPIENT, NotificationType


def _add_grandma(kidpickup, family, *, name: str = "Bestemor Anne"):
    return kidpickup.registry.add_person(
        family.child.child_id,
        name=name,
        relationship="Bestemor",
        consent_given=True,
        added_by=family.parent.user_id,
    )


def _assert_consistent(request) -> None:
    assert (request.approved_at is None) == (request.approved_by is None)
    if request.status is not PickupStatus.COMPLETED:
        assert request.completed_at is None


def test_pending_request_for_authorized_person(kidpickup, family, clock) -> None:
    grandma = _add_grandma(kidpickup, family)

    request = kidpickup.request_pickup(family.child.child_id, family.parent.user_id, grandma.entry_id, 15)

    assert request.status is PickupStatus.PENDING
    assert request.pickup_person_name == "Bestemor Anne"
    assert request.pickup_person_id == grandma.entry_id
    assert request.estimated_arrival_time == clock.now + timedelta(minutes=15)
    assert request.approved_at is None and request.approved_by is None
    assert request.approval_mode is None
    _assert_consistent(request)
    staff_alerts = kidpickup.notifications.pending(recipient=STAFF_RECIPIENT)
    assert [alert.type for alert in staff_alerts] == [NotificationType.PICKUP_REQUESTED]


def test_parent_is_default_pickup_person(kidpickup, family) -> None:
    implicit = kidpickup.request_pickup(family.child.child_id, family.parent.user_id, None, None)
    explicit = kidpickup.request_pickup(family.child.child_id, family.parent.user_id, PARENT_PICKUP, 0)

    assert implicit.pickup_person_name == "Kari Nordmann"
    assert implicit.pickup_person_id is None
    assert implicit.estimated_arrival_time is None
    assert explicit.pickup_person_name == "Kari Nordmann"
    assert explicit.estimated_arrival_time == explicit.requested_at


def test_auto_approval_when_parent_opts_out(kidpickup, family, clock) -> None:
    kidpickup.lifecycle.set_requires_approval(family.parent.user_id, False)

    request = kidpickup.request_pickup(family.child.child_id, family.parent.user_id, None, 10)

    assert request.status is PickupStatus.APPROVED
    assert request.approved_by == family.parent.user_id
    assert request.approved_at == clock.now
    assert request.approval_mode is ApprovalMode.AUTO
    _assert_consistent(request)
    assert kidpickup.notifications.pending(recipient=STAFF_RECIPIENT) == ()
    assert kidpickup.notifications.pending(recipient=family.parent.user_id)[0].type is NotificationType.PICKUP_APPROVED


def test_approve_then_reject_fails(kidpickup, family, clock) -> None:
    request = kidpickup.request_pickup(family.child.child_id, family.parent.user_id, None, 15)
    clock.advance(minutes=3)

    approved = kidpickup.approve(request.request_id, family.staff.user_id)

    assert approved.status is PickupStatus.APPROVED
    assert approved.approved_by == family.staff.user_id
    assert approved.approved_at == clock.now
    assert approved.approval_mode is ApprovalMode.STAFF

    with pytest.raises(InvalidTransitionError) as excinfo:
        kidpickup.reject(request.request_id, family.staff.user_id)
    assert excinfo.value.current == "approved"
    assert excinfo.value.expected == "pending"
    assert kidpickup.store.get_request(request.request_id) == approved


def test_reject_is_terminal_and_sets_no_approval(kidpickup, family) -> None:
    request = kidpickup.request_pickup(family.child.child_id, family.parent.user_id, None, 15)

    rejected = kidpickup.reject(request.request_id, family.staff.user_id)

    assert rejected.status is PickupStatus.REJECTED
    assert rejected.approved_at is None and rejected.approved_by is None
    assert rejected.is_terminal
    for action in (kidpickup.approve, kidpickup.reject):
        with pytest.raises(InvalidTransitionError):
            action(request.request_id, family.staff.user_id)
    with pytest.raises(InvalidTransitionError):
        kidpickup.complete(request.request_id)
    assert kidpickup.store.get_request(request.request_id) == rejected


def test_complete_requires_approved(kidpickup, family, clock) -> None:
    request = kidpickup.request_pickup(family.child.child_id, family.parent.user_id, None, 15)
    with pytest.raises(InvalidTransitionError):
        kidpickup.complete(request.request_id)
    with pytest.raises(InvalidTransitionError):
        kidpickup.lifecycle.prepare_completion(request.request_id)

    kidpickup.approve(request.request_id, family.staff.user_id)
    clock.advance(minutes=20)
    confirmation = kidpickup.lifecycle.prepare_completion(request.request_id)
    assert confirmation.child_name == "Emma Nordmann"
    assert confirmation.parent_name == "Kari Nordmann"
    assert confirmation.child_photo_url == "https://example.com/emma.jpg"
    clock.advance(seconds=30)

    completed = kidpickup.complete(request.request_id, at=confirmation.captured_at, staff_id=family.staff.user_id)

    assert completed.status is PickupStatus.COMPLETED
    assert completed.completed_at == confirmation.captured_at
    _assert_consistent(completed)
    with pytest.raises(InvalidTransitionError):
        kidpickup.complete(request.request_id)
    listed = kidpickup.pickups(PickupStatus.COMPLETED)
    assert [item.request_id for item in listed] == [request.request_id]


def test_concurrent_approvals_have_one_winner(kidpickup, family) -> None:
    request = kidpickup.request_pickup(family.child.child_id, family.parent.user_id, None, 15)
    barrier = threading.Barrier(2)
    outcomes = {}

    def approve(staff_id: str) -> None:
        barrier.wait()
        try:
            kidpickup.approve(request.request_id, staff_id)
            outcomes[staff_id] = "ok"
        except InvalidTransitionError:
            outcomes[staff_id] = "conflict"

    threads = [threading.Thread(target=approve, args=(staff_id,)) for staff_id in ("staff-a", "staff-b")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes.values()) == ["conflict", "ok"]
    winner = next(staff_id for staff_id, outcome in outcomes.items() if outcome == "ok")
    assert kidpickup.store.get_request(request.request_id).approved_by == winner


def test_create_request_validation(kidpickup, family) -> None:
    child_id, parent_id = family.child.child_id, family.parent.user_id

    with pytest.raises(ValidationError):
        kidpickup.request_pickup("", parent_id)
    with pytest.raises(ValidationError):
        kidpickup.request_pickup(child_id, "")
    with pytest.raises(ValidationError):
        kidpickup.request_pickup("missing-child", parent_id)
    with pytest.raises(ValidationError):
        kidpickup.request_pickup(child_id, "missing-parent")
    with pytest.raises(ValidationError):
        kidpickup.request_pickup(child_id, parent_id, "unknown-person")
    with pytest.raises(ValidationError):
        kidpickup.request_pickup(child_id, parent_id, None, -5)
    with pytest.raises(ValidationError):
        kidpickup.request_pickup(child_id, parent_id, None, 241)
    assert kidpickup.store.query_requests() == ()


def test_pickup_person_must_belong_to_child(kidpickup, family) -> None:
    sibling = kidpickup.store.add_child(Child(name="Jonas Nordmann"))
    kidpickup.store.link_parent(family.parent.user_id, sibling.child_id)
    grandma = _add_grandma(kidpickup, family)

    with pytest.raises(ValidationError) as excinfo:
        kidpickup.request_pickup(sibling.child_id, family.parent.user_id, grandma.entry_id, 10)
    assert excinfo.value.message_key == "validation.pickup_person.invalid"


def test_unlinked_parent_is_refused(kidpickup, family) -> None:
    with pytest.raises(NotLinkedError):
        kidpickup.request_pickup(family.child.child_id, family.other_parent.user_id, None, 10)


def test_pickup_person_name_survives_revocation(kidpickup, family) -> None:
    grandma = _add_grandma(kidpickup, family)
    request = kidpickup.request_pickup(family.child.child_id, family.parent.user_id, grandma.entry_id, 10)

    kidpickup.registry.revoke(grandma.entry_id, revoked_by=family.parent.user_id)

    assert kidpickup.store.get_request(request.request_id).pickup_person_name == "Bestemor Anne"
    assert kidpickup.pickups(PickupStatus.PENDING)[0].request.pickup_person_name == "Bestemor Anne"


def test_list_policies_order_and_limit(kidpickup, family, clock) -> None:
    ids = []
    for _ in range(12):
        clock.advance(minutes=1)
        ids.append(kidpickup.request_pickup(family.child.child_id, family.parent.user_id, None, 5).request_id)

    pending = kidpickup.lifecycle.list_by_status(PickupStatus.PENDING)
    assert [item.request_id for item in pending] == list(reversed(ids))
    assert pending[0].child_name == "Emma Nordmann"
    assert pending[0].parent_name == "Kari Nordmann"

    # newest request approved first, so the oldest request holds the newest approval
    for request_id in reversed(ids):
        clock.advance(minutes=1)
        kidpickup.approve(request_id, family.staff.user_id)

    approved = kidpickup.lifecycle.list_by_status("approved")
    assert len(approved) == 10
    assert [item.request_id for item in approved] == ids[:10]
    assert len(kidpickup.lifecycle.list_by_status("approved", limit=None)) == 12
    assert len(kidpickup.lifecycle.list_by_status("approved", limit=3)) == 3

    by_request_time = kidpickup.lifecycle.list_by_status("approved", limit=None, ordering="requested_at")
    assert [item.request_id for item in by_request_time] == list(reversed(ids))


def test_completed_list_newest_completion_first(kidpickup, family, clock) -> None:
    kidpickup.lifecycle.set_requires_approval(family.parent.user_id, False)
    first = kidpickup.request_pickup(family.child.child_id, family.parent.user_id, None, 5)
    second = kidpickup.request_pickup(family.child.child_id, family.parent.user_id, None, 5)
    clock.advance(minutes=5)
    kidpickup.complete(second.request_id)
    clock.advance(minutes=5)
    kidpickup.complete(first.request_id)

    completed = kidpickup.lifecycle.list_by_status(PickupStatus.COMPLETED)

    assert [item.request_id for item in completed] == [first.request_id, second.request_id]


def test_pickup_person_options_only_offer_consented(kidpickup, family, store) -> None:
    grandma = _add_grandma(kidpickup, family)
    manager = PickupLifecycleManager(store)

    options = manager.pickup_person_options(family.child.child_id, family.parent.user_id)

    assert [option.option_id for option in options] == [PARENT_PICKUP, grandma.entry_id]
    assert options[0].is_parent
    assert options[0].name == "Kari Nordmann"


def test_requests_for_parent_only_lists_own(kidpickup, family) -> None:
    kidpickup.store.link_parent(family.other_parent.user_id, family.child.child_id)
    mine = kidpickup.request_pickup(family.child.child_id, family.parent.user_id, None, 5)
    kidpickup.request_pickup(family.child.child_id, family.other_parent.user_id, None, 5)

    history = kidpickup.lifecycle.requests_for_parent(family.parent.user_id)

    assert [item.request_id for item in history] == [mine.request_id]


def test_lifecycle_logs_and_audits(kidpickup, family) -> None:
    request = kidpickup.request_pickup(family.child.child_id, family.parent.user_id, None, 5)
    kidpickup.approve(request.request_id, family.staff.user_id)

    assert kidpickup.logger.events("pickup_requested")[0]["request"] == request.request_id
    assert kidpickup.logger.events("pickup_approved")[0]["staff"] == family.staff.user_id
    actions = [entry.action for entry in kidpickup.audit_log.entries(target=request.request_id)]
    assert actions == ["request_pickup", "approve_pickup"]


def _add_unconsented(store, family) -> AuthorizedPickupEntry:
    return store.add_authorized_pickup(
        AuthorizedPickupEntry(
            child_id=family.child.child_id,
            name="Naboen Nils",
            relationship="Nabo",
            consent_given=False,
            added_by=family.parent.user_id,
        )
    )


def test_unconsented_person_cannot_be_requested(kidpickup, family, store) -> None:
    neighbour = _add_unconsented(store, family)

    with pytest.raises(ValidationError) as excinfo:
        kidpickup.request_pickup(family.child.child_id, family.parent.user_id, neighbour.entry_id, 10)

    assert excinfo.value.message_key == "validation.pickup_person.no_consent"
    assert excinfo.value.field == "pickup_person_id"
    assert kidpickup.store.query_requests() == ()


def test_picker_leaves_out_unconsented_people(kidpickup, family, store) -> None:
    neighbour = _add_unconsented(store, family)
    grandma = _add_grandma(kidpickup, family)

    options = kidpickup.lifecycle.pickup_person_options(family.child.child_id, family.parent.user_id)

    assert [option.option_id for option in options] == [PARENT_PICKUP, grandma.entry_id]
    assert neighbour.entry_id not in {option.option_id for option in options}
    assert neighbour.entry_id in {entry.entry_id for entry in kidpickup.registry.entries(family.child.child_id)}


def test_notifications_are_drained_once(kidpickup, family) -> None:
    request = kidpickup.request_pickup(family.child.child_id, family.parent.user_id, None, 10)
    kidpickup.approve(request.request_id, family.staff.user_id)

    staff_alerts = kidpickup.take_notifications(family.staff.user_id, Role.EMPLOYEE)
    parent_alerts = kidpickup.take_notifications(family.parent.user_id, Role.PARENT)

    assert [alert.type for alert in staff_alerts] == [NotificationType.PICKUP_REQUESTED]
    assert [alert.type for alert in parent_alerts] == [NotificationType.PICKUP_APPROVED]
    assert parent_alerts[0].as_dict()["request_id"] == request.request_id
    assert kidpickup.take_notifications(family.parent.user_id, Role.PARENT) == ()
    assert kidpickup.notifications.pending() == ()
