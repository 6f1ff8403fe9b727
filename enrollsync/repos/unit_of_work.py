"""Transaction boundary for the dual-table writes.

A UnitOfWork bundles the repos that one transaction touches.  A Store
hands out units of work through ``transaction()``, an async context
manager that commits when the block exits normally and rolls back on any
exception.

PgStore also translates driver errors at this boundary: the
orchestrator only ever sees TransactionError for aborts that are safe to
retry, never a raw DBAPIError.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from enrollsync.core.errors import TransactionError
from enrollsync.repos.access_request_repo import (
    AccessRequestRepo,
    InMemoryAccessRequestRepo,
)
from enrollsync.repos.catalog_repo import (
    CourseRepo,
    InMemoryCourseRepo,
    InMemoryUserRepo,
    UserRepo,
)
from enrollsync.repos.enrollment_repo import EnrollmentRepo, InMemoryEnrollmentRepo
from enrollsync.repos.legacy_progress_repo import (
    InMemoryLegacyProgressRepo,
    LegacyProgressRepo,
)
from enrollsync.repos.pg_access_request_repo import PgAccessRequestRepo
from enrollsync.repos.pg_catalog_repo import PgCourseRepo, PgUserRepo
from enrollsync.repos.pg_enrollment_repo import PgEnrollmentRepo
from enrollsync.repos.pg_legacy_progress_repo import PgLegacyProgressRepo

logger = logging.getLogger(__name__)

# SQLSTATEs after which the whole operation can be retried from the top.
RETRYABLE_SQLSTATES = {
    "40001": "serialization failure",
    "40P01": "deadlock detected",
    "23505": "unique violation",
}


@dataclass(frozen=True, slots=True)
class UnitOfWork:
    users: UserRepo
    courses: CourseRepo
    enrollments: EnrollmentRepo
    legacy_progress: LegacyProgressRepo
    access_requests: AccessRequestRepo


class Store(Protocol):
    def transaction(self) -> AbstractAsyncContextManager[UnitOfWork]: ...


class InMemoryStore:
    """Single-process store for dev and tests.

    Transactions are serialized with one asyncio.Lock, and a failed block
    restores the snapshot taken on entry, so callers observe the same
    all-or-nothing behaviour as PostgreSQL.
    """

    def __init__(self) -> None:
        self.users = InMemoryUserRepo()
        self.courses = InMemoryCourseRepo()
        self.enrollments = InMemoryEnrollmentRepo()
        self.legacy_progress = InMemoryLegacyProgressRepo()
        self.access_requests = InMemoryAccessRequestRepo()
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[UnitOfWork]:
        async with self._lock:
            saved = (
                self.enrollments.snapshot(),
                self.legacy_progress.snapshot(),
                self.access_requests.snapshot(),
            )
            try:
                yield UnitOfWork(
                    users=self.users,
                    courses=self.courses,
                    enrollments=self.enrollments,
                    legacy_progress=self.legacy_progress,
                    access_requests=self.access_requests,
                )
            except BaseException:
                self.enrollments.restore(saved[0])
                self.legacy_progress.restore(saved[1])
                self.access_requests.restore(saved[2])
                raise


class PgStore:
    """Satisfies the Store Protocol: one AsyncSession per transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[UnitOfWork]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield UnitOfWork(
                        users=PgUserRepo(session),
                        courses=PgCourseRepo(session),
                        enrollments=PgEnrollmentRepo(session),
                        legacy_progress=PgLegacyProgressRepo(session),
                        access_requests=PgAccessRequestRepo(session),
                    )
        except DBAPIError as exc:
            reason = retryable_reason(exc)
            if reason is None:
                raise
            logger.warning("Transaction aborted: %s", reason)
            raise TransactionError(f"Transaction aborted ({reason})") from exc
        except (ConnectionError, asyncio.TimeoutError) as exc:
            logger.warning("Transaction aborted: connection lost (%s)", exc)
            raise TransactionError("Transaction aborted (connection lost)") from exc


def retryable_reason(exc: DBAPIError) -> str | None:
    """Describe a retryable driver error, or None if it is not retryable."""
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in RETRYABLE_SQLSTATES:
        return RETRYABLE_SQLSTATES[sqlstate]
    # Class 08: connection exceptions.
    if (sqlstate and sqlstate.startswith("08")) or exc.connection_invalidated:
        return "connection lost"
    if isinstance(exc, (OperationalError, InterfaceError)) and sqlstate is None:
        return "connection lost"
    return None
