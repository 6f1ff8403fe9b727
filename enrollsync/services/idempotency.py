"""Idempotency store: remembers the result of operations that committed.

A client retrying a request (timeout, double-click, queue redelivery)
must not enroll the student twice or emit a second event.  Each
operation is fingerprinted from its name and parameters; once it has
committed, its result is stored under that fingerprint, and a replay
within the TTL gets the stored result back instead of re-executing.

FINGERPRINTS
------------
    operation|course_id:7|user_id:42   →  sha256 hex

Parameter names are sorted and values JSON-encoded, so {"user_id": 42,
"course_id": 7} and {"course_id": 7, "user_id": 42} produce the same key,
while 42 and "42" do not.

ORDERING
--------
Records are written only after the protected mutation committed.  A
crash between commit and store() means a replay re-runs validation,
which sees the committed state; it never means a double mutation.

Expired records are treated as absent.  They are deleted by
purge_expired(), which the maintenance worker calls; nothing purges
inline on the request path.
"""

from __future__ import annotations

import datetime
import hashlib
import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from enrollsync.core.config import FailurePolicy
from enrollsync.core.errors import InfrastructureError
from enrollsync.core.metrics import DEGRADATIONS, IDEMPOTENCY_CHECKS
from enrollsync.db.tables import IdempotencyKeyRow

logger = logging.getLogger(__name__)

DEFAULT_TTL_HOURS = 24

Clock = Callable[[], int]


def _utc_now() -> int:
    return int(datetime.datetime.now(datetime.UTC).timestamp())


def generate_key(operation: str, params: Mapping[str, Any]) -> str:
    """Order-independent fingerprint of an operation and its parameters."""
    parts = [
        f"{name}:{json.dumps(params[name], sort_keys=True, separators=(',', ':'))}"
        for name in sorted(params)
    ]
    raw = f"{operation}|" + "|".join(parts)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass(frozen=True, slots=True)
class IdempotencyCheck:
    is_duplicate: bool
    existing_result: dict[str, Any] | None = None


@runtime_checkable
class IdempotencyStore(Protocol):
    async def check(self, key: str, operation: str) -> IdempotencyCheck: ...
    async def store(
        self,
        key: str,
        operation: str,
        result: dict[str, Any],
        ttl_hours: int = DEFAULT_TTL_HOURS,
    ) -> None: ...
    async def invalidate(self, key: str) -> None: ...
    async def purge_expired(self) -> int: ...


async def execute_with_idempotency(
    store: IdempotencyStore,
    operation: str,
    params: Mapping[str, Any],
    executor: Callable[[], Awaitable[dict[str, Any]]],
    ttl_hours: int = DEFAULT_TTL_HOURS,
) -> tuple[dict[str, Any], bool]:
    """Run executor once per fingerprint.

    Returns (result, was_duplicate).  On a hit the executor is not
    called.  The executor's exceptions propagate and nothing is stored.
    """
    key = generate_key(operation, params)
    existing = await store.check(key, operation)
    if existing.is_duplicate and existing.existing_result is not None:
        return existing.existing_result, True

    result = await executor()
    await store.store(key, operation, result, ttl_hours)
    return result, False


class InMemoryIdempotencyStore:
    """Dict-backed store for single-process dev/test.

    The clock is injectable so tests can move time past the TTL without
    sleeping.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or _utc_now
        # key -> (operation, result JSON, expires_at, created_at)
        self._records: dict[str, tuple[str, str, int, int]] = {}

    async def check(self, key: str, operation: str) -> IdempotencyCheck:
        record = self._records.get(key)
        if record is None or record[0] != operation or record[2] <= self._clock():
            IDEMPOTENCY_CHECKS.labels(result="miss").inc()
            return IdempotencyCheck(is_duplicate=False)
        IDEMPOTENCY_CHECKS.labels(result="hit").inc()
        return IdempotencyCheck(is_duplicate=True, existing_result=json.loads(record[1]))

    async def store(
        self,
        key: str,
        operation: str,
        result: dict[str, Any],
        ttl_hours: int = DEFAULT_TTL_HOURS,
    ) -> None:
        now = self._clock()
        self._records[key] = (operation, json.dumps(result), now + ttl_hours * 3600, now)

    async def invalidate(self, key: str) -> None:
        self._records.pop(key, None)

    async def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, record in self._records.items() if record[2] <= now]
        for key in expired:
            del self._records[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._records)


class PgIdempotencyStore:
    """Satisfies the IdempotencyStore Protocol using the idempotency_keys table.

    Runs in its own short session, outside the business transaction:
    records are written after that transaction committed.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        failure_policy: FailurePolicy = "open",
        clock: Clock | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._failure_policy = failure_policy
        self._clock = clock or _utc_now

    async def check(self, key: str, operation: str) -> IdempotencyCheck:
        stmt = (
            select(IdempotencyKeyRow.result)
            .where(IdempotencyKeyRow.key == key)
            .where(IdempotencyKeyRow.operation == operation)
            .where(IdempotencyKeyRow.expires_at > self._clock())
        )
        try:
            async with self._session_factory() as session:
                raw = (await session.execute(stmt)).scalar_one_or_none()
        except (SQLAlchemyError, OSError) as exc:
            self._on_failure("check", operation, exc)
            IDEMPOTENCY_CHECKS.labels(result="miss").inc()
            return IdempotencyCheck(is_duplicate=False)

        if raw is None:
            IDEMPOTENCY_CHECKS.labels(result="miss").inc()
            return IdempotencyCheck(is_duplicate=False)
        IDEMPOTENCY_CHECKS.labels(result="hit").inc()
        return IdempotencyCheck(is_duplicate=True, existing_result=json.loads(raw))

    async def store(
        self,
        key: str,
        operation: str,
        result: dict[str, Any],
        ttl_hours: int = DEFAULT_TTL_HOURS,
    ) -> None:
        now = self._clock()
        stmt = insert(IdempotencyKeyRow).values(
            key=key,
            operation=operation,
            result=json.dumps(result),
            expires_at=now + ttl_hours * 3600,
            created_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[IdempotencyKeyRow.key],
            set_={
                "operation": stmt.excluded.operation,
                "result": stmt.excluded.result,
                "expires_at": stmt.excluded.expires_at,
                "created_at": stmt.excluded.created_at,
            },
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(stmt)
        except (SQLAlchemyError, OSError) as exc:
            self._on_failure("store", operation, exc)

    async def invalidate(self, key: str) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(
                        delete(IdempotencyKeyRow).where(IdempotencyKeyRow.key == key)
                    )
        except (SQLAlchemyError, OSError) as exc:
            self._on_failure("invalidate", "-", exc)

    async def purge_expired(self) -> int:
        stmt = delete(IdempotencyKeyRow).where(IdempotencyKeyRow.expires_at <= self._clock())
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt)
        except (SQLAlchemyError, OSError) as exc:
            raise InfrastructureError(f"Idempotency purge failed: {exc}") from exc
        return result.rowcount

    def _on_failure(self, action: str, operation: str, exc: BaseException) -> None:
        if self._failure_policy == "closed":
            logger.error("Idempotency %s failed operation=%s: %s", action, operation, exc)
            raise InfrastructureError(f"Idempotency store unavailable: {exc}") from exc
        logger.warning(
            "Idempotency %s failed, continuing without it operation=%s: %s",
            action,
            operation,
            exc,
            extra={"operation": operation},
        )
        DEGRADATIONS.labels(subsystem="idempotency").inc()
