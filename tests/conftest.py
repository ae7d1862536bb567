from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from kidpickup.models import Child
from kidpickup.service import KidPickup
from kidpickup.store import MemoryStore

PASSWORD = "Secret123"


class FrozenClock:
    def __init__(self, start: datetime = datetime(2024, 5, 6, 14, 0)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture()
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture()
def kidpickup(store: MemoryStore, clock: FrozenClock) -> KidPickup:
    return KidPickup(store, clock=clock, locale="en")


@pytest.fixture()
def family(kidpickup: KidPickup) -> SimpleNamespace:
    parent = kidpickup.admin.register_user(email="kari@example.com", password=PASSWORD, full_name="Kari Nordmann")
    other_parent = kidpickup.admin.register_user(email="per@example.com", password=PASSWORD, full_name="Per Olsen")
    staff = kidpickup.admin.register_user(
        email="ola@example.com", password=PASSWORD, full_name="Ola Hansen", role="employee"
    )
    admin = kidpickup.admin.register_user(email="admin@example.com", password=PASSWORD, full_name="Anne Admin", role="admin")
    child = kidpickup.store.add_child(Child(name="Emma Nordmann", photo_url="https://example.com/emma.jpg"))
    kidpickup.store.link_parent(parent.user_id, child.child_id)
    return SimpleNamespace(parent=parent, other_parent=other_parent, staff=staff, admin=admin, child=child)
