from __future__ import annotations

import asyncio

import pytest

from enrollsync import worker
from enrollsync.core.errors import InfrastructureError
from enrollsync.services.orchestrator import EnrollmentOrchestrator


class _BrokenOrchestrator:
    def __init__(self, exc: Exception) -> None:
        self._exc = exc

    async def purge_expired_idempotency_records(self) -> int:
        raise self._exc


def test_purge_once_returns_count(orchestrator: EnrollmentOrchestrator) -> None:
    assert asyncio.run(worker.purge_once(orchestrator)) == 0


@pytest.mark.parametrize(
    "exc",
    [InfrastructureError("idempotency table unreachable"), RuntimeError("unexpected")],
)
def test_purge_once_swallows_failures(exc: Exception) -> None:
    assert asyncio.run(worker.purge_once(_BrokenOrchestrator(exc))) == 0  # type: ignore[arg-type]


def test_run_worker_stops_after_max_runs() -> None:
    asyncio.run(worker.run_worker(interval_seconds=0, max_runs=2))
