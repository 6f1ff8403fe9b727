"""Error taxonomy for orchestrated operations.

Every failure an operation can report maps to one of these classes.
The orchestrator catches them and turns them into an
OperationResult.error{code, message, retryable}; callers map retryable
errors to 409/503-class responses and non-retryable ones to 4xx.
"""

from __future__ import annotations

from collections.abc import Sequence


class EnrollmentError(Exception):
    """Base class: carries a machine-readable code and a retry hint."""

    code = "OPERATION_ERROR"
    retryable = False

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ValidationError(EnrollmentError):
    """Missing referenced entity, invalid state transition, or strict duplicate."""

    code = "VALIDATION_ERROR"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: Sequence[str] = (),
    ) -> None:
        super().__init__(message, code=code)
        self.details = tuple(details)


class LockContentionError(EnrollmentError):
    """The operation lock was not acquired within its timeout."""

    code = "LOCK_CONTENTION"
    retryable = True


class TransactionError(EnrollmentError):
    """The store aborted the transaction; retrying is safe.

    A retry re-runs validation and the idempotency check, so a mutation
    that did commit is never applied twice.
    """

    code = "TRANSACTION_ABORTED"
    retryable = True


class InfrastructureError(EnrollmentError):
    """Lock or idempotency subsystem unreachable.

    Swallowed under the fail-open policy; surfaced (retryable) under
    fail-closed.
    """

    code = "INFRASTRUCTURE_UNAVAILABLE"
    retryable = True
