"""Keyed mutual exclusion for orchestrated operations.

Two admins approving the same request, or a student double-clicking
"enroll", must not both run the validate → mutate → emit sequence at the
same time.  Every orchestrated call therefore takes a lock scoped to what
it mutates, e.g. ("enrollment", user_id, course_id).

LOCK KEYS
---------
PostgreSQL advisory locks are identified by a signed 64-bit integer.  We
derive it from the operation name and its ordered parameters:

    blake2b("enrollment|42|7", digest_size=8) → signed int64

The hash is stable across processes and interpreter runs (unlike
hash()), so every API instance maps the same scope to the same lock.

HANDLES
-------
acquire() returns a lock_id naming one acquisition, not the advisory key.
Releasing the same lock_id twice is a no-op even after another caller
has acquired the same key: by then the stale handle is unknown.

SESSION-LEVEL LOCKS NEED THEIR OWN CONNECTION
---------------------------------------------
pg_try_advisory_lock() takes a session-level lock: it belongs to the
database connection that ran it, and only that connection can release
it.  A pooled connection that goes back to the pool still holds its
locks.  So each held lock pins one dedicated AUTOCOMMIT connection until
release(), which unlocks and then returns the connection.  If the unlock
itself fails or is cancelled, the connection is invalidated (really
closed), which drops every lock it held.

TIMEOUTS
--------
The timeout bounds only the wait for acquisition.  Once acquired, the
lock is held until release(); nothing force-unlocks it behind the
holder's back.  Waiting is done by polling pg_try_advisory_lock with a
capped exponential backoff, so ordering among waiters is best-effort,
not FIFO.

FAILURE POLICY
--------------
If the lock subsystem itself is unreachable, LOCK_FAILURE_POLICY decides:
  open   → proceed as if acquired (lock_id=0), log a warning and count a
           degradation.  Availability over strict exclusion.
  closed → raise InfrastructureError (retryable).
"""

from __future__ import annotations

import asyncio
import hashlib
import itertools
import logging
import time
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from enrollsync.core.config import FailurePolicy
from enrollsync.core.errors import InfrastructureError, LockContentionError
from enrollsync.core.metrics import DEGRADATIONS, LOCK_ACQUISITIONS, LOCK_WAIT

logger = logging.getLogger(__name__)

# lock_id of a degraded (fail-open) or contended acquisition; release(0) is a no-op.
DEGRADED_LOCK_ID = 0


@dataclass(frozen=True, slots=True)
class LockAcquisition:
    """Outcome of acquire().

    acquired:  True if the caller may proceed.
    lock_id:   Handle of this acquisition, to pass back to release().
    key:       The advisory-lock key the scope maps to.
    degraded:  True when the lock subsystem failed and the fail-open
               policy let the caller proceed without a real lock.
    """

    acquired: bool
    lock_id: int
    key: int = 0
    degraded: bool = False


def lock_key(operation: str, *params: object) -> int:
    """Deterministic signed 64-bit key for an operation scope."""
    raw = "|".join([operation, *(str(p) for p in params)])
    digest = hashlib.blake2b(raw.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


@runtime_checkable
class LockManager(Protocol):
    """Protocol for lock backends: InMemory for tests, PostgreSQL for production."""

    async def acquire(
        self, operation: str, params: Sequence[object], timeout_ms: int = 0
    ) -> LockAcquisition: ...

    async def release(self, lock_id: int) -> None: ...


@asynccontextmanager
async def hold(
    manager: LockManager,
    operation: str,
    params: Sequence[object],
    timeout_ms: int,
) -> AsyncIterator[LockAcquisition]:
    """Acquire, raise LockContentionError if not acquired, always release."""
    acquisition = await manager.acquire(operation, params, timeout_ms)
    if not acquisition.acquired:
        raise LockContentionError(
            f"{operation} is busy for {tuple(params)}; not acquired within {timeout_ms}ms"
        )
    try:
        yield acquisition
    finally:
        await manager.release(acquisition.lock_id)


class InMemoryLockManager:
    """Per-key asyncio.Lock, for single-process dev/test.

    Gives the same exclusion semantics as the advisory locks, but only
    within one event loop.  A key's lock is dropped once nobody holds or
    waits for it.
    """

    def __init__(self) -> None:
        self._locks: dict[int, asyncio.Lock] = {}
        # holders plus waiters, per key
        self._users: dict[int, int] = {}
        # lock_id -> key
        self._held: dict[int, int] = {}
        self._handles = itertools.count(1)

    async def acquire(
        self, operation: str, params: Sequence[object], timeout_ms: int = 0
    ) -> LockAcquisition:
        key = lock_key(operation, *params)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        mode = "try" if timeout_ms <= 0 else "wait"
        start = time.monotonic()
        acquired = False

        try:
            if timeout_ms <= 0:
                if not lock.locked():
                    await lock.acquire()
                    acquired = True
            else:
                try:
                    await asyncio.wait_for(lock.acquire(), timeout=timeout_ms / 1000)
                    acquired = True
                except asyncio.TimeoutError:
                    pass
        finally:
            if not acquired:
                self._forget(key)

        LOCK_WAIT.observe(time.monotonic() - start)
        if not acquired:
            LOCK_ACQUISITIONS.labels(mode=mode, result="contended").inc()
            return LockAcquisition(acquired=False, lock_id=DEGRADED_LOCK_ID, key=key)

        LOCK_ACQUISITIONS.labels(mode=mode, result="acquired").inc()
        handle = next(self._handles)
        self._held[handle] = key
        return LockAcquisition(acquired=True, lock_id=handle, key=key)

    async def release(self, lock_id: int) -> None:
        key = self._held.pop(lock_id, None)
        if key is None:
            return
        self._locks[key].release()
        self._forget(key)

    def _forget(self, key: int) -> None:
        remaining = self._users[key] - 1
        if remaining:
            self._users[key] = remaining
        else:
            del self._users[key]
            del self._locks[key]

    def is_held(self, operation: str, *params: object) -> bool:
        lock = self._locks.get(lock_key(operation, *params))
        return lock is not None and lock.locked()

    def tracked_keys(self) -> int:
        return len(self._locks)


class PgAdvisoryLockManager:
    """Session-level PostgreSQL advisory locks, shared across processes."""

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        failure_policy: FailurePolicy = "open",
        poll_min_ms: int = 10,
        poll_max_ms: int = 250,
    ) -> None:
        self._engine = engine
        self._failure_policy = failure_policy
        self._poll_min = poll_min_ms / 1000
        self._poll_max = poll_max_ms / 1000
        # lock_id -> (advisory key, the connection that holds it)
        self._held: dict[int, tuple[int, AsyncConnection]] = {}
        self._handles = itertools.count(1)

    async def acquire(
        self, operation: str, params: Sequence[object], timeout_ms: int = 0
    ) -> LockAcquisition:
        key = lock_key(operation, *params)
        mode = "try" if timeout_ms <= 0 else "wait"
        start = time.monotonic()

        try:
            conn = await self._engine.connect()
        except (SQLAlchemyError, OSError) as exc:
            return self._on_failure(operation, key, mode, exc)

        try:
            await conn.execution_options(isolation_level="AUTOCOMMIT")
            acquired = await self._poll(conn, key, timeout_ms)
        except (SQLAlchemyError, OSError) as exc:
            await _discard(conn)
            return self._on_failure(operation, key, mode, exc)
        except BaseException:
            # Cancelled mid-poll: the lock may already be ours, so drop
            # the session rather than returning it to the pool.
            await _discard(conn)
            raise

        LOCK_WAIT.observe(time.monotonic() - start)
        if not acquired:
            await conn.close()
            LOCK_ACQUISITIONS.labels(mode=mode, result="contended").inc()
            logger.info(
                "Lock contended operation=%s key=%d timeout_ms=%d",
                operation,
                key,
                timeout_ms,
                extra={"operation": operation},
            )
            return LockAcquisition(acquired=False, lock_id=DEGRADED_LOCK_ID, key=key)

        handle = next(self._handles)
        self._held[handle] = (key, conn)
        LOCK_ACQUISITIONS.labels(mode=mode, result="acquired").inc()
        logger.debug("Lock acquired operation=%s key=%d lock_id=%d", operation, key, handle)
        return LockAcquisition(acquired=True, lock_id=handle, key=key)

    async def _poll(self, conn: AsyncConnection, key: int, timeout_ms: int) -> bool:
        deadline = time.monotonic() + max(timeout_ms, 0) / 1000
        delay = self._poll_min
        while True:
            result = await conn.execute(
                text("SELECT pg_try_advisory_lock(:key)"), {"key": key}
            )
            if result.scalar():
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(delay, remaining))
            delay = min(delay * 2, self._poll_max)

    async def release(self, lock_id: int) -> None:
        """Unlock and return the connection.  Idempotent; never raises."""
        entry = self._held.pop(lock_id, None)
        if entry is None:
            return
        key, conn = entry
        try:
            await conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": key})
            await conn.close()
        except (SQLAlchemyError, OSError):
            logger.warning(
                "Advisory unlock failed key=%d, discarding connection",
                key,
                exc_info=True,
            )
            await _discard(conn)
        except BaseException:
            # Cancelled mid-unlock: the session may still hold the key.
            await _discard(conn)
            raise

    def _on_failure(
        self, operation: str, key: int, mode: str, exc: BaseException
    ) -> LockAcquisition:
        if self._failure_policy == "closed":
            logger.error("Lock subsystem unavailable operation=%s: %s", operation, exc)
            raise InfrastructureError(f"Lock subsystem unavailable: {exc}") from exc
        logger.warning(
            "Lock subsystem unavailable, proceeding unlocked operation=%s key=%d: %s",
            operation,
            key,
            exc,
            extra={"operation": operation},
        )
        DEGRADATIONS.labels(subsystem="lock").inc()
        LOCK_ACQUISITIONS.labels(mode=mode, result="degraded").inc()
        return LockAcquisition(acquired=True, lock_id=DEGRADED_LOCK_ID, key=key, degraded=True)


async def _discard(conn: AsyncConnection) -> None:
    """Close the underlying DBAPI connection so its session locks are dropped."""
    try:
        await conn.invalidate()
        await conn.close()
    except (SQLAlchemyError, OSError):
        logger.debug("Error while discarding lock connection", exc_info=True)
