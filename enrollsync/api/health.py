"""Health and readiness endpoints.

LIVENESS vs READINESS
---------------------
  /health (liveness):
    "Is this process alive?"  Always 200; the body says how well.

  /ready (readiness):
    "Can this instance run enrollment operations right now?"
    503 when PostgreSQL is configured but unreachable: without it there
    are no transactions, and locks/idempotency would be running on
    their failure policy.  Redis is not critical; only the event relay
    depends on it.

HEALTH RESPONSE STRUCTURE
-------------------------
  status:       "ok" or "degraded"
  checks:       per-dependency status (database, redis)
  degradations: lock/idempotency failures absorbed by the fail-open
                policy since process start, from the Prometheus counter
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Response
from prometheus_client import REGISTRY
from sqlalchemy import text

from enrollsync.db.engine import engine
from enrollsync.db.redis import redis_pool

router = APIRouter(tags=["health"])

logger = logging.getLogger(__name__)


def _sum_counter(metric_name: str, label_filter: dict | None = None) -> float:
    """Sum all sample values for a counter across matching label combinations."""
    total = 0.0
    for metric in REGISTRY.collect():
        for sample in metric.samples:
            if sample.name != metric_name:
                continue
            if label_filter and not all(
                sample.labels.get(k) == v for k, v in label_filter.items()
            ):
                continue
            total += sample.value
    return total


async def _check_database() -> str:
    if engine is None:
        return "not_configured"
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception:
        logger.warning("Database health check failed", exc_info=True)
        return "degraded"
    return "ok"


async def _check_redis() -> str:
    if redis_pool is None:
        return "not_configured"
    try:
        await redis_pool.ping()  # type: ignore[misc]
    except Exception:
        logger.warning("Redis health check failed", exc_info=True)
        return "degraded"
    return "ok"


@router.get("/health")
async def health() -> dict:
    """Liveness check + dependency status.

    Returns 200 even when degraded; a 503 here would get the container
    restarted, which is too aggressive for a partial outage.
    """
    checks = {
        "database": await _check_database(),
        "redis": await _check_redis(),
    }
    overall = "degraded" if "degraded" in checks.values() else "ok"
    return {
        "status": overall,
        "checks": checks,
        "degradations": {
            subsystem: _sum_counter(
                "enrollsync_degradations_total", {"subsystem": subsystem}
            )
            for subsystem in ("lock", "idempotency")
        },
    }


@router.get("/ready")
async def ready() -> Response:
    """Readiness check: 503 while a configured database is unreachable."""
    if await _check_database() == "degraded":
        return Response(status_code=503)
    return Response(status_code=200)
