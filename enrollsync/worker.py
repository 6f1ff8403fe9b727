"""Maintenance worker process.

RUN:  python -m enrollsync.worker

Idempotency records stop counting once their TTL passes, but the rows
stay in idempotency_keys until something deletes them.  That deletion
is kept off the request path: this worker calls the purge primitive on
a fixed interval instead.

In Docker/Kubernetes, same image, different command:
  api:    uvicorn enrollsync.main:app --host 0.0.0.0 --port 8000
  worker: python -m enrollsync.worker

Running more than one worker is harmless: the purge is a single
DELETE ... WHERE expires_at <= now.
"""

from __future__ import annotations

import asyncio
import logging

from enrollsync.core.config import SETTINGS
from enrollsync.core.errors import EnrollmentError
from enrollsync.core.logging import setup_logging
from enrollsync.db.engine import async_session_factory, engine
from enrollsync.services.orchestrator import EnrollmentOrchestrator
from enrollsync.wiring import build_services

logger = logging.getLogger("worker")


async def purge_once(orchestrator: EnrollmentOrchestrator) -> int:
    """One purge pass.  Failures are logged; the loop keeps going."""
    try:
        return await orchestrator.purge_expired_idempotency_records()
    except EnrollmentError as exc:
        logger.warning("Purge failed: %s", exc.message)
    except Exception:
        logger.exception("Purge failed unexpectedly")
    return 0


async def run_worker(*, interval_seconds: int | None = None, max_runs: int | None = None) -> None:
    """Purge expired idempotency records every interval_seconds.

    max_runs bounds the loop (tests); None runs forever.
    """
    interval = interval_seconds if interval_seconds is not None else SETTINGS.purge_interval_seconds
    services = build_services(SETTINGS, engine=engine, session_factory=async_session_factory)
    logger.info("Worker started, purging idempotency records every %ds", interval)

    runs = 0
    try:
        while max_runs is None or runs < max_runs:
            purged = await purge_once(services.orchestrator)
            runs += 1
            logger.debug("Purge pass %d removed %d record(s)", runs, purged)
            if max_runs is not None and runs >= max_runs:
                break
            await asyncio.sleep(interval)
    finally:
        if engine is not None:
            await engine.dispose()


if __name__ == "__main__":
    setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)
    asyncio.run(run_worker())
