"""Redis connection management.

Mirrors engine.py: when REDIS_URL is configured we create a real
connection pool; when it's None (local dev, tests) no Redis server is
needed and the event relay is simply not attached.

Redis is only used as a fan-out transport here.  Domain events are
published to a pub/sub channel so external real-time-sync consumers
(websocket gateways, cache invalidators) can react to committed
enrollment changes.  Nothing in the engine reads state back from Redis;
PostgreSQL stays the only source of truth.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from sqlalchemy.engine import make_url

from enrollsync.core.config import SETTINGS

logger = logging.getLogger(__name__)


def redacted_url(url: str) -> str:
    """URL safe to log: the password is replaced by ***, as engine.py does."""
    return make_url(url).render_as_string(hide_password=True)


# Checked at import time like engine.py.  Every consumer of redis_pool
# checks for None.

if SETTINGS.redis_url:
    redis_pool: aioredis.Redis | None = aioredis.from_url(  # type: ignore[type-arg]
        SETTINGS.redis_url,
        decode_responses=True,
        max_connections=20,
    )
else:
    redis_pool = None


@asynccontextmanager
async def lifespan_redis():
    """Startup/shutdown hook for Redis, mirrors lifespan_db().

    A failed ping on startup is logged and the app keeps running: the
    relay swallows its own publish failures, so events are just not
    fanned out until Redis comes back.
    """
    if redis_pool is None:
        logger.info("No REDIS_URL configured, event relay disabled")
        yield
        return

    try:
        await redis_pool.ping()  # type: ignore[misc]  # redis stubs mistype async ping as bool
        logger.info("Redis connected: %s", redacted_url(SETTINGS.redis_url))
    except Exception:
        logger.exception("Redis connection failed on startup")
        yield
        return

    yield

    await redis_pool.aclose()
    logger.info("Redis connection pool closed")
