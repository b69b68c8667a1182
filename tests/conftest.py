"""
Pytest configuration.

Each test gets its own SQLite database file (aiosqlite driver), the schema,
one consultant, a handful of customers, and a SlotService whose clock is
frozen so that "now" and "the past" are deterministic.
"""

from datetime import datetime, timezone

import pytest

from timeslots.config import Settings
from timeslots.db.repository import ConsultantRepository, CustomerRepository
from timeslots.db.session import SlotStore, build_engine
from timeslots.services.slots import SlotService

FIXED_NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Clock returning a settable instant."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'timeslots.db'}",
        db_lock_timeout_ms=15000,
        min_slot_minutes=15,
        max_slot_minutes=480,
        default_page_size=10,
        max_page_size=100,
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(FIXED_NOW)


@pytest.fixture
async def store(settings):
    store = SlotStore(build_engine(settings), lock_timeout_ms=settings.db_lock_timeout_ms)
    await store.create_schema()
    yield store
    await store.dispose()


@pytest.fixture
def service(store, settings, clock) -> SlotService:
    return SlotService(store, settings, clock=clock)


@pytest.fixture
async def consultant(store):
    async with store.transaction() as session:
        return await ConsultantRepository(session).create_consultant(
            "Dr. Sarah Smith", "sarah.smith@example.com"
        )


@pytest.fixture
async def other_consultant(store):
    async with store.transaction() as session:
        return await ConsultantRepository(session).create_consultant(
            "Dr. John Davis", "john.davis@example.com"
        )


@pytest.fixture
async def customers(store):
    people = [
        ("Alice Johnson", "alice.j@example.com"),
        ("Bob Williams", "bob.w@example.com"),
        ("Carol Brown", "carol.b@example.com"),
        ("David Miller", "david.m@example.com"),
        ("Eva Martinez", "eva.m@example.com"),
    ]
    async with store.transaction() as session:
        repo = CustomerRepository(session)
        return [await repo.create_customer(name, email) for name, email in people]


@pytest.fixture
def customer(customers):
    return customers[0]
