from datetime import datetime, timedelta, timezone

import pytest

from circulation.config import LibraryPolicy
from circulation.repositories import InMemoryStore
from circulation.schemas import ItemStatus
from circulation.system import LibrarySystem

START = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Settable clock; tests move time forward explicitly."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, days: float = 0, hours: float = 0) -> datetime:
        self.now = self.now + timedelta(days=days, hours=hours)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def policy():
    return LibraryPolicy(lock_timeout_seconds=0.2)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def system(store, policy, clock):
    return LibrarySystem(store=store, policy=policy, clock=clock)


@pytest.fixture
def item(system):
    return system.add_item("Dune", "Frank Herbert", isbn="9780441013593", category="Science Fiction")


@pytest.fixture
def checked_out(system, item):
    """An item on loan to borrower A."""
    loan = system.checkout(item.id, "A")
    assert system.get_item(item.id).status == ItemStatus.CHECKED_OUT
    return item, loan
