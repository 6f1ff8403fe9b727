from __future__ import annotations

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from enrollsync.core.config import Settings
from enrollsync.main import app
from enrollsync.models.course import Course
from enrollsync.models.events import DomainEvent
from enrollsync.models.principal import Principal
from enrollsync.models.user import User
from enrollsync.repos.unit_of_work import InMemoryStore
from enrollsync.services.events import EventBus
from enrollsync.services.idempotency import InMemoryIdempotencyStore
from enrollsync.services.lock_manager import InMemoryLockManager
from enrollsync.services.orchestrator import EnrollmentOrchestrator
from enrollsync.services.synchronizer import EnrollmentSynchronizer

# Ensure repo root is on sys.path so `import enrollsync` works under pytest.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

T0 = 1_760_000_000

ADMIN = Principal(user_id=99, role="admin")


class FakeClock:
    """Callable clock returning Unix seconds; tests move it by hand."""

    def __init__(self, start: int = T0) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


def make_settings(**overrides) -> Settings:
    values = {
        "app_env": "test",
        "log_level": "info",
        "log_json": False,
        "port": 8000,
        "database_url": None,
        "redis_url": None,
    }
    values.update(overrides)
    return Settings(**values)  # type: ignore[arg-type]


def seed_catalog(store: InMemoryStore) -> None:
    """Users and courses shared by the orchestrator scenarios."""
    store.users.add(User(id=42, role="student", name="Ada"))
    store.users.add(User(id=5, role="student", name="Grace"))
    store.users.add(User(id=13, role="student", is_active=False, name="Dormant"))
    store.users.add(User(id=77, role="instructor", name="Ines"))
    store.users.add(User(id=99, role="admin", name="Root"))
    store.courses.add(Course(id=7, title="Pharmacology", status="published"))
    store.courses.add(Course(id=3, title="Anatomy", status="active"))
    store.courses.add(Course(id=8, title="Draft course", status="draft"))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryStore:
    s = InMemoryStore()
    seed_catalog(s)
    return s


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def events(bus: EventBus) -> list[DomainEvent]:
    """Every event emitted on the bus, in order."""
    received: list[DomainEvent] = []
    bus.subscribe("*", received.append)
    return received


@pytest.fixture
def locks() -> InMemoryLockManager:
    return InMemoryLockManager()


@pytest.fixture
def idempotency(clock: FakeClock) -> InMemoryIdempotencyStore:
    return InMemoryIdempotencyStore(clock=clock)


@pytest.fixture
def settings() -> Settings:
    return make_settings(enrollment_lock_timeout_ms=2_000, request_lock_timeout_ms=2_000)


@pytest.fixture
def orchestrator(
    store: InMemoryStore,
    locks: InMemoryLockManager,
    idempotency: InMemoryIdempotencyStore,
    bus: EventBus,
    settings: Settings,
    clock: FakeClock,
) -> EnrollmentOrchestrator:
    return EnrollmentOrchestrator(
        store=store,
        locks=locks,
        idempotency=idempotency,
        bus=bus,
        synchronizer=EnrollmentSynchronizer(clock=clock),
        settings=settings,
        clock=clock,
    )


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)
