"""Assemble the orchestrator from whatever backing services are configured.

Same rule as db/engine.py and db/redis.py: a configured DATABASE_URL
selects the PostgreSQL store, advisory locks and idempotency table;
without it everything runs in memory.  A configured Redis client
attaches the event relay to the bus.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from enrollsync.core.config import SETTINGS, Settings
from enrollsync.repos.unit_of_work import InMemoryStore, PgStore, Store
from enrollsync.services.event_relay import RedisEventRelay
from enrollsync.services.events import EventBus
from enrollsync.services.idempotency import (
    IdempotencyStore,
    InMemoryIdempotencyStore,
    PgIdempotencyStore,
)
from enrollsync.services.lock_manager import (
    InMemoryLockManager,
    LockManager,
    PgAdvisoryLockManager,
)
from enrollsync.services.orchestrator import EnrollmentOrchestrator
from enrollsync.services.synchronizer import (
    EnrollmentSynchronizer,
    LegacyProgressMirror,
    NullLegacyMirror,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class EngineServices:
    orchestrator: EnrollmentOrchestrator
    bus: EventBus
    store: Store
    locks: LockManager
    idempotency: IdempotencyStore
    relay: RedisEventRelay | None = None


def build_services(
    settings: Settings = SETTINGS,
    *,
    engine: AsyncEngine | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    redis: aioredis.Redis | None = None,  # type: ignore[type-arg]
    bus: EventBus | None = None,
) -> EngineServices:
    bus = bus or EventBus()

    store: Store
    locks: LockManager
    idempotency: IdempotencyStore
    if engine is not None and session_factory is not None:
        store = PgStore(session_factory)
        locks = PgAdvisoryLockManager(engine, failure_policy=settings.lock_failure_policy)
        idempotency = PgIdempotencyStore(
            session_factory, failure_policy=settings.idempotency_failure_policy
        )
        backend = "postgres"
    else:
        store = InMemoryStore()
        locks = InMemoryLockManager()
        idempotency = InMemoryIdempotencyStore()
        backend = "memory"

    mirror = LegacyProgressMirror() if settings.legacy_mirror_enabled else NullLegacyMirror()
    orchestrator = EnrollmentOrchestrator(
        store=store,
        locks=locks,
        idempotency=idempotency,
        bus=bus,
        synchronizer=EnrollmentSynchronizer(mirror),
        settings=settings,
    )

    relay = None
    if redis is not None:
        relay = RedisEventRelay(redis, settings.event_channel)
        relay.attach(bus)

    logger.info(
        "Enrollment engine wired backend=%s legacy_mirror=%s relay=%s lock_policy=%s idempotency_policy=%s",
        backend,
        "on" if mirror.enabled else "off",
        "on" if relay else "off",
        settings.lock_failure_policy,
        settings.idempotency_failure_policy,
    )
    return EngineServices(
        orchestrator=orchestrator,
        bus=bus,
        store=store,
        locks=locks,
        idempotency=idempotency,
        relay=relay,
    )
