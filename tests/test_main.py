from __future__ import annotations

import asyncio

from fastapi.testclient import TestClient

from enrollsync.main import app
from enrollsync.models.events import EventType
from enrollsync.repos.unit_of_work import InMemoryStore
from enrollsync.services.orchestrator import EnrollmentOrchestrator
from tests.conftest import seed_catalog


def test_lifespan_wires_in_memory_engine() -> None:
    with TestClient(app):
        services = app.state.services
        assert isinstance(app.state.orchestrator, EnrollmentOrchestrator)
        assert isinstance(services.store, InMemoryStore)
        assert services.relay is None
        assert services.orchestrator.bus is services.bus


def test_orchestrator_from_lifespan_runs_operations() -> None:
    with TestClient(app) as client:
        services = app.state.services
        seed_catalog(services.store)
        seen: list[EventType] = []
        services.bus.subscribe("*", lambda e: seen.append(e.type))

        # TestClient owns a portal with its own event loop; run the call there.
        result = client.portal.call(services.orchestrator.enroll_student, 42, 7)

        assert result.success is True
        assert seen == [EventType.ENROLLMENT_CREATED]
        assert asyncio.run(services.store.enrollments.get(42, 7)).is_active


def test_unknown_route_is_404() -> None:
    with TestClient(app) as client:
        assert client.get("/enrollments").status_code == 404
