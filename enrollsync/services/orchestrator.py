"""Orchestrated, idempotent enrollment operations.

Every public method runs the same pipeline:

    REQUESTED
      → LOCK_ACQUIRED        lock manager, scoped to what is mutated
      → VALIDATED            validators, read-only, under the lock
      → IDEMPOTENT_HIT → RETURN_CACHED
        | EXECUTING          synchronizer, one transaction
          → COMMITTED        result stored in the idempotency store
          → EVENT_EMITTED    events handed to the bus
      | FAILED
    → LOCK_RELEASED          exactly once, on every path

Each step is logged with the operation id, so one grep reconstructs a
single call even when many interleave on the event loop.

Public methods never raise for domain failures.  They return an
OperationResult whose error carries a code and a retryable flag:

    ValidationError       non-retryable (missing entity, bad transition)
    LockContentionError   retryable
    TransactionError      retryable (serialization, deadlock, racing insert)
    InfrastructureError   retryable (fail-closed policy only)
    anything else         INTERNAL_ERROR, non-retryable, logged with traceback

REPLAYS
-------
A client that retries enroll_student after it already committed hits
ALREADY_ENROLLED in validation.  For that one code the orchestrator looks
up the idempotency store: a hit returns the original result, and without
one the call still succeeds as a no-op describing the current
enrollment.  create_request (REQUEST_PENDING) and unenroll_student
(NOT_ENROLLED) return a cached result on a hit and the validation error
otherwise.

Cached results describe the pair as it was.  Every commit that can
change whether a pair is enrolled, or whether it has a pending request,
invalidates the cached enroll_student, unenroll_student and
create_request results of that pair (enroll, unenroll, approve, reject,
reconcile, cleanup).  So enroll → unenroll → enroll runs the second
enroll for real, and unenroll after a re-approval unenrolls again.

Chapter and video activity, reconcile and the cleanups are not cached:
they are idempotent by construction or re-inspect on every call.

LOCK SCOPES
-----------
Everything that writes a pair's enrollment or pending request holds
("enrollment", user_id, course_id).  Operations with an outer scope take
it first: create_request takes ("access_request", s, c) and approve
takes ("access_request_review", request_id) before the pair lock.
Multi-pair operations take pair locks in ascending course order.
"""

from __future__ import annotations

import datetime
import logging
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from enrollsync.core.config import SETTINGS, Settings
from enrollsync.core.context import operation_id_var
from enrollsync.core.errors import (
    EnrollmentError,
    InfrastructureError,
    LockContentionError,
    TransactionError,
    ValidationError,
)
from enrollsync.core.metrics import OPERATION_DURATION, OPERATIONS
from enrollsync.models.operation import (
    ALREADY_ENROLLED,
    NOT_ENROLLED,
    REQUEST_PENDING,
    OperationError,
    OperationResult,
    ValidationResult,
)
from enrollsync.models.principal import Principal
from enrollsync.repos.unit_of_work import Store, UnitOfWork
from enrollsync.services import validators
from enrollsync.services.events import EventBus
from enrollsync.services.idempotency import IdempotencyStore, generate_key
from enrollsync.services.lock_manager import LockManager, hold
from enrollsync.services.synchronizer import EnrollmentSynchronizer, SyncOutcome

logger = logging.getLogger(__name__)

ENROLLMENT_SCOPE = "enrollment"
REQUEST_SCOPE = "access_request"
REVIEW_SCOPE = "access_request_review"
MAINTENANCE_SCOPE = "legacy_maintenance"

_OUTCOMES: dict[type[EnrollmentError], str] = {
    ValidationError: "validation_failed",
    LockContentionError: "lock_contention",
    TransactionError: "transaction_aborted",
    InfrastructureError: "infrastructure_unavailable",
}


def _utc_now() -> int:
    return int(datetime.datetime.now(datetime.UTC).timestamp())


def pair_results(user_id: int, course_id: int) -> list[tuple[str, Mapping[str, Any]]]:
    """Cached results made stale by a change to the pair's enrollment."""
    pair = {"user_id": user_id, "course_id": course_id}
    return [
        ("enroll_student", pair),
        ("unenroll_student", pair),
        ("create_request", {"student_id": user_id, "course_id": course_id}),
    ]


@dataclass(frozen=True, slots=True)
class LockScope:
    name: str
    params: tuple[object, ...]
    timeout_ms: int


@dataclass(slots=True)
class _Plan:
    """Everything the pipeline needs to run one public call."""

    operation: str
    params: Mapping[str, Any]
    locks: Sequence[LockScope]
    validate: Callable[[UnitOfWork], Awaitable[ValidationResult]]
    execute: Callable[[UnitOfWork], Awaitable[SyncOutcome]]
    replay_code: str | None = None
    # Called for a replay without a cached result; None means "report the error".
    replay_fallback: Callable[[], Awaitable[dict[str, Any]]] | None = None
    supersedes: list[tuple[str, Mapping[str, Any]]] = field(default_factory=list)


class EnrollmentOrchestrator:
    def __init__(
        self,
        *,
        store: Store,
        locks: LockManager,
        idempotency: IdempotencyStore,
        bus: EventBus,
        synchronizer: EnrollmentSynchronizer | None = None,
        settings: Settings = SETTINGS,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self._store = store
        self._locks = locks
        self._idempotency = idempotency
        self._bus = bus
        self._clock = clock or _utc_now
        self._sync = synchronizer or EnrollmentSynchronizer(clock=self._clock)
        self._settings = settings

    @property
    def bus(self) -> EventBus:
        return self._bus

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def enroll_student(
        self, user_id: int, course_id: int, *, actor: Principal | None = None
    ) -> OperationResult:
        actor_id = actor.user_id if actor else None
        pair = {"user_id": user_id, "course_id": course_id}

        async def current_enrollment() -> dict[str, Any]:
            async with self._store.transaction() as uow:
                enrollment = await uow.enrollments.get(user_id, course_id)
            return {
                "enrollment": enrollment.to_dict() if enrollment else None,
                "reactivated": False,
                "pending_requests_removed": 0,
            }

        return await self._run(
            _Plan(
                operation="enroll_student",
                params=pair,
                locks=[self._enrollment_lock(user_id, course_id)],
                validate=lambda uow: validators.validate_enrollment(uow, user_id, course_id),
                execute=lambda uow: self._sync.enroll(uow, user_id, course_id, actor=actor_id),
                replay_code=ALREADY_ENROLLED,
                replay_fallback=current_enrollment,
                supersedes=pair_results(user_id, course_id),
            )
        )

    async def unenroll_student(
        self, user_id: int, course_id: int, *, actor: Principal | None = None
    ) -> OperationResult:
        actor_id = actor.user_id if actor else None
        pair = {"user_id": user_id, "course_id": course_id}
        return await self._run(
            _Plan(
                operation="unenroll_student",
                params=pair,
                locks=[self._enrollment_lock(user_id, course_id)],
                validate=lambda uow: validators.validate_unenrollment(uow, user_id, course_id),
                execute=lambda uow: self._sync.unenroll(uow, user_id, course_id, actor=actor_id),
                replay_code=NOT_ENROLLED,
                supersedes=pair_results(user_id, course_id),
            )
        )

    async def update_progress(
        self,
        user_id: int,
        course_id: int,
        progress: float,
        *,
        timestamp: int | None = None,
        actor: Principal | None = None,
    ) -> OperationResult:
        """Record progress for an active enrollment.

        timestamp is when the client observed the progress; it defaults
        to now and is part of the fingerprint, so only a true replay of
        the same report is deduplicated.
        """
        actor_id = actor.user_id if actor else None
        observed_at = timestamp if timestamp is not None else self._clock()
        return await self._run(
            _Plan(
                operation="update_progress",
                params={
                    "user_id": user_id,
                    "course_id": course_id,
                    "progress": progress,
                    "timestamp": observed_at,
                },
                locks=[self._enrollment_lock(user_id, course_id)],
                validate=lambda uow: validators.validate_progress_update(
                    uow, user_id, course_id, progress
                ),
                execute=lambda uow: self._sync.update_progress(
                    uow, user_id, course_id, progress, observed_at, actor=actor_id
                ),
            )
        )

    async def approve_request(self, request_id: int, *, reviewer: Principal) -> OperationResult:
        return await self._review(request_id, reviewer, "approve")

    async def reject_request(self, request_id: int, *, reviewer: Principal) -> OperationResult:
        return await self._review(request_id, reviewer, "reject")

    async def create_request(
        self,
        student_id: int,
        course_id: int,
        *,
        reason: str = "",
        actor: Principal | None = None,
    ) -> OperationResult:
        actor_id = actor.user_id if actor else None
        return await self._run(
            _Plan(
                operation="create_request",
                params={"student_id": student_id, "course_id": course_id},
                # The pair lock serializes with enroll and approve, which
                # delete pending requests of the same pair.
                locks=[
                    LockScope(
                        REQUEST_SCOPE,
                        (student_id, course_id),
                        self._settings.request_lock_timeout_ms,
                    ),
                    self._enrollment_lock(student_id, course_id),
                ],
                validate=lambda uow: validators.validate_request_creation(
                    uow, student_id, course_id
                ),
                execute=lambda uow: self._sync.create_request(
                    uow, student_id, course_id, reason, actor=actor_id
                ),
                replay_code=REQUEST_PENDING,
            )
        )

    async def reconcile_enrollment(
        self, user_id: int, course_id: int, *, actor: Principal | None = None
    ) -> OperationResult:
        """Repair a half-synced pair.  Not cached: each call re-inspects."""
        actor_id = (actor or Principal.system()).user_id

        async def no_validation(uow: UnitOfWork) -> ValidationResult:
            return ValidationResult()

        return await self._run(
            _Plan(
                operation="reconcile_enrollment",
                params={"user_id": user_id, "course_id": course_id},
                locks=[self._enrollment_lock(user_id, course_id)],
                validate=no_validation,
                execute=lambda uow: self._sync.reconcile(uow, user_id, course_id, actor=actor_id),
                supersedes=pair_results(user_id, course_id),
            ),
            cache=False,
        )

    async def verify_enrollment(self, user_id: int, course_id: int) -> OperationResult:
        """Read-only: is the pair present in both representations?"""
        operation_id = f"op_{uuid4().hex}"
        token = operation_id_var.set(operation_id)
        try:
            async with self._store.transaction() as uow:
                state = await self._sync.verify(uow, user_id, course_id)
        except EnrollmentError as exc:
            return self._failure(operation_id, exc)
        finally:
            operation_id_var.reset(token)
        return OperationResult(
            success=True,
            operation_id=operation_id,
            timestamp=self._clock(),
            data={"user_id": user_id, "course_id": course_id, **state},
        )

    async def mark_chapter_complete(
        self,
        user_id: int,
        course_id: int,
        chapter_id: int,
        *,
        actor: Principal | None = None,
    ) -> OperationResult:
        actor_id = actor.user_id if actor else None
        return await self._run(
            _Plan(
                operation="mark_chapter_complete",
                params={"user_id": user_id, "course_id": course_id, "chapter_id": chapter_id},
                locks=[self._enrollment_lock(user_id, course_id)],
                validate=lambda uow: validators.validate_chapter_activity(
                    uow, user_id, course_id, chapter_id
                ),
                execute=lambda uow: self._sync.complete_chapter(
                    uow, user_id, course_id, chapter_id, actor=actor_id
                ),
            ),
            cache=False,
        )

    async def update_video_progress(
        self,
        user_id: int,
        course_id: int,
        chapter_id: int,
        video_progress: float,
        *,
        actor: Principal | None = None,
    ) -> OperationResult:
        actor_id = actor.user_id if actor else None
        return await self._run(
            _Plan(
                operation="update_video_progress",
                params={
                    "user_id": user_id,
                    "course_id": course_id,
                    "chapter_id": chapter_id,
                    "video_progress": video_progress,
                },
                locks=[self._enrollment_lock(user_id, course_id)],
                validate=lambda uow: validators.validate_chapter_activity(
                    uow, user_id, course_id, chapter_id, video_progress
                ),
                execute=lambda uow: self._sync.update_video_progress(
                    uow, user_id, course_id, chapter_id, video_progress, actor=actor_id
                ),
            ),
            cache=False,
        )

    async def get_student_enrollment_state(self, student_id: int) -> OperationResult:
        """Read-only: every course the student appears in, across both tables."""
        operation_id = f"op_{uuid4().hex}"
        token = operation_id_var.set(operation_id)
        try:
            async with self._store.transaction() as uow:
                state = await self._sync.student_state(uow, student_id)
        except EnrollmentError as exc:
            return self._failure(operation_id, exc)
        finally:
            operation_id_var.reset(token)
        return self._success(operation_id, state)

    async def cleanup_inconsistent_states(
        self, student_id: int, *, actor: Principal | None = None
    ) -> OperationResult:
        """Drop pending requests of courses the student is already enrolled in."""
        actor_id = (actor or Principal.system()).user_id
        try:
            async with self._store.transaction() as uow:
                requests = await uow.access_requests.list_for_student(student_id)
        except EnrollmentError as exc:
            logger.warning("Could not list requests of student %s: %s", student_id, exc.message)
            return self._failure(f"op_{uuid4().hex}", exc)
        course_ids = sorted({r.course_id for r in requests if r.is_pending})

        supersedes: list[tuple[str, Mapping[str, Any]]] = []
        for course_id in course_ids:
            supersedes.extend(pair_results(student_id, course_id))

        return await self._run(
            _Plan(
                operation="cleanup_inconsistent_states",
                params={"student_id": student_id},
                locks=[self._enrollment_lock(student_id, c) for c in course_ids],
                validate=lambda uow: validators.validate_student_exists(uow, student_id),
                execute=lambda uow: self._sync.cleanup_pending_requests(
                    uow, student_id, course_ids, actor=actor_id
                ),
                supersedes=supersedes,
            ),
            cache=False,
        )

    async def cleanup_orphaned_enrollments(self, *, actor: Principal) -> OperationResult:
        """Admin bulk repair: delete legacy rows whose student or course is gone."""
        return await self._run(
            _Plan(
                operation="cleanup_orphaned_enrollments",
                params={},
                locks=[
                    LockScope(
                        MAINTENANCE_SCOPE, ("orphans",), self._settings.request_lock_timeout_ms
                    )
                ],
                validate=lambda uow: validators.validate_admin(uow, actor.user_id),
                execute=lambda uow: self._sync.remove_orphaned_legacy(uow, actor=actor.user_id),
            ),
            cache=False,
        )

    async def purge_expired_idempotency_records(self) -> int:
        purged = await self._idempotency.purge_expired()
        logger.info("Purged %d expired idempotency record(s)", purged)
        return purged

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _enrollment_lock(self, user_id: int, course_id: int) -> LockScope:
        return LockScope(
            ENROLLMENT_SCOPE, (user_id, course_id), self._settings.enrollment_lock_timeout_ms
        )

    async def _review(self, request_id: int, reviewer: Principal, action: str) -> OperationResult:
        operation = f"{action}_request"
        timeout = self._settings.request_lock_timeout_ms
        locks = [LockScope(REVIEW_SCOPE, (request_id,), timeout)]
        supersedes: list[tuple[str, Mapping[str, Any]]] = []

        # The pair is only known from the request row.  Review lock first,
        # then the pair's enrollment lock, always in that order.
        try:
            async with self._store.transaction() as uow:
                request = await uow.access_requests.get(request_id)
        except EnrollmentError as exc:
            logger.warning("Could not load access request %s: %s", request_id, exc.message)
            return self._failure(f"op_{uuid4().hex}", exc)
        if request is not None:
            supersedes.extend(pair_results(request.student_id, request.course_id))
            if action == "approve":
                locks.append(self._enrollment_lock(request.student_id, request.course_id))

        async def execute(uow: UnitOfWork) -> SyncOutcome:
            if action == "approve":
                return await self._sync.approve_request(uow, request_id, reviewer.user_id)
            return await self._sync.reject_request(uow, request_id, reviewer.user_id)

        return await self._run(
            _Plan(
                operation=operation,
                params={"request_id": request_id},
                locks=locks,
                validate=lambda uow: validators.validate_request_action(
                    uow, request_id, reviewer.user_id, action
                ),
                execute=execute,
                supersedes=supersedes,
            )
        )

    def _state(self, plan: _Plan, state: str, **fields: Any) -> None:
        detail = " ".join(f"{k}={v}" for k, v in fields.items())
        logger.info(
            "%s operation=%s %s",
            state,
            plan.operation,
            detail,
            extra={"operation": plan.operation},
        )

    async def _run(self, plan: _Plan, *, cache: bool = True) -> OperationResult:
        operation_id = f"op_{uuid4().hex}"
        token = operation_id_var.set(operation_id)
        start = time.monotonic()
        outcome = "internal_error"
        self._state(plan, "REQUESTED", params=dict(plan.params))
        try:
            async with AsyncExitStack() as stack:
                try:
                    for scope in plan.locks:
                        acquisition = await stack.enter_async_context(
                            hold(self._locks, scope.name, scope.params, scope.timeout_ms)
                        )
                        self._state(
                            plan,
                            "LOCK_ACQUIRED",
                            scope=scope.name,
                            lock_id=acquisition.lock_id,
                            key=acquisition.key,
                            degraded=acquisition.degraded,
                        )
                    result, outcome = await self._pipeline(plan, operation_id, cache)
                    return result
                except EnrollmentError as exc:
                    outcome = next(
                        (label for cls, label in _OUTCOMES.items() if isinstance(exc, cls)),
                        "internal_error",
                    )
                    self._state(plan, "FAILED", code=exc.code, retryable=exc.retryable)
                    if isinstance(exc, ValidationError):
                        logger.info("Validation failed: %s", exc.message)
                    else:
                        logger.warning("%s: %s", exc.code, exc.message)
                    return self._failure(operation_id, exc)
                except Exception as exc:
                    outcome = "internal_error"
                    self._state(plan, "FAILED", code="INTERNAL_ERROR", retryable=False)
                    logger.exception("Unexpected error in %s", plan.operation)
                    return OperationResult(
                        success=False,
                        operation_id=operation_id,
                        timestamp=self._clock(),
                        error=OperationError(
                            code="INTERNAL_ERROR",
                            message=f"{type(exc).__name__}: {exc}",
                            retryable=False,
                        ),
                    )
        finally:
            duration = time.monotonic() - start
            self._state(plan, "LOCK_RELEASED", duration_ms=round(duration * 1000, 1))
            OPERATIONS.labels(operation=plan.operation, outcome=outcome).inc()
            OPERATION_DURATION.labels(operation=plan.operation).observe(duration)
            operation_id_var.reset(token)

    async def _pipeline(
        self, plan: _Plan, operation_id: str, cache: bool
    ) -> tuple[OperationResult, str]:
        async with self._store.transaction() as uow:
            validation = await plan.validate(uow)
        for warning in validation.warnings:
            logger.info("Validation warning %s: %s", warning.code, warning.message)

        if not validation.valid:
            if plan.replay_code is not None and validation.error_codes == {plan.replay_code}:
                key = generate_key(plan.operation, plan.params)
                cached = await self._idempotency.check(key, plan.operation)
                if cached.is_duplicate:
                    self._state(plan, "IDEMPOTENT_HIT", code=plan.replay_code)
                    self._state(plan, "RETURN_CACHED")
                    return self._success(operation_id, cached.existing_result, duplicate=True), "replayed"
                if plan.replay_fallback is not None:
                    data = await plan.replay_fallback()
                    self._state(plan, "RETURN_CACHED", code=plan.replay_code, cached=False)
                    return self._success(operation_id, data, duplicate=True), "replayed"
            first = validation.errors[0]
            raise ValidationError(first.message, code=first.code, details=validation.messages())

        self._state(plan, "VALIDATED", warnings=len(validation.warnings))

        key = generate_key(plan.operation, plan.params)
        if cache:
            cached = await self._idempotency.check(key, plan.operation)
            if cached.is_duplicate:
                self._state(plan, "IDEMPOTENT_HIT")
                self._state(plan, "RETURN_CACHED")
                return self._success(operation_id, cached.existing_result, duplicate=True), "replayed"

        self._state(plan, "EXECUTING")
        async with self._store.transaction() as uow:
            outcome = await plan.execute(uow)
        self._state(plan, "COMMITTED", events=len(outcome.events))

        await self._after_commit(plan, key, outcome.data, cache)

        for event in outcome.events:
            await self._bus.emit(event)
        self._state(plan, "EVENT_EMITTED", events=",".join(e.type.value for e in outcome.events) or "-")
        return self._success(operation_id, outcome.data), "committed"

    async def _after_commit(
        self, plan: _Plan, key: str, data: dict[str, Any], cache: bool
    ) -> None:
        # The mutation is durable at this point; bookkeeping failures are
        # logged but do not turn a committed operation into a failure.
        try:
            for operation, params in plan.supersedes:
                stale = generate_key(operation, params)
                if stale != key:
                    await self._idempotency.invalidate(stale)
            if cache:
                await self._idempotency.store(
                    key, plan.operation, data, self._settings.idempotency_ttl_hours
                )
        except InfrastructureError as exc:
            logger.error("Idempotency bookkeeping failed after commit: %s", exc.message)

    def _success(
        self, operation_id: str, data: dict[str, Any] | None, *, duplicate: bool = False
    ) -> OperationResult:
        return OperationResult(
            success=True,
            operation_id=operation_id,
            timestamp=self._clock(),
            data=data,
            was_duplicate=duplicate,
        )

    def _failure(self, operation_id: str, exc: EnrollmentError) -> OperationResult:
        details = exc.details if isinstance(exc, ValidationError) else ()
        return OperationResult(
            success=False,
            operation_id=operation_id,
            timestamp=self._clock(),
            error=OperationError(
                code=exc.code,
                message=exc.message,
                retryable=exc.retryable,
                details=tuple(details),
            ),
        )
