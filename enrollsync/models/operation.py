from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

# Validation issue codes.  The orchestrator keys its replay handling on
# these, so they are part of the contract, not just log text.
USER_NOT_FOUND = "USER_NOT_FOUND"
USER_INACTIVE = "USER_INACTIVE"
USER_NOT_STUDENT = "USER_NOT_STUDENT"
REVIEWER_NOT_ADMIN = "REVIEWER_NOT_ADMIN"
COURSE_NOT_FOUND = "COURSE_NOT_FOUND"
COURSE_NOT_PUBLISHED = "COURSE_NOT_PUBLISHED"
ALREADY_ENROLLED = "ALREADY_ENROLLED"
NOT_ENROLLED = "NOT_ENROLLED"
INVALID_PROGRESS = "INVALID_PROGRESS"
REQUEST_NOT_FOUND = "REQUEST_NOT_FOUND"
REQUEST_NOT_PENDING = "REQUEST_NOT_PENDING"
REQUEST_PENDING = "REQUEST_PENDING"
LEGACY_ONLY = "LEGACY_ONLY"
PROGRESS_CLAMPED = "PROGRESS_CLAMPED"
CHAPTER_NOT_FOUND = "CHAPTER_NOT_FOUND"
CHAPTER_TRACKING_DISABLED = "CHAPTER_TRACKING_DISABLED"


@dataclass(frozen=True, slots=True)
class ValidationIssue:
    code: str
    message: str

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True, slots=True)
class ValidationResult:
    """Outcome of a read-only pre-condition check.

    errors block the operation; warnings are logged and the caller
    decides what to do with them (e.g. a pending request that the
    enroll path will clean up).
    """

    errors: tuple[ValidationIssue, ...] = ()
    warnings: tuple[ValidationIssue, ...] = ()

    @property
    def valid(self) -> bool:
        return not self.errors

    @property
    def error_codes(self) -> frozenset[str]:
        return frozenset(issue.code for issue in self.errors)

    def messages(self) -> list[str]:
        return [issue.message for issue in self.errors]


@dataclass(frozen=True, slots=True)
class OperationError:
    code: str
    message: str
    retryable: bool
    details: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": list(self.details),
        }


@dataclass(frozen=True, slots=True)
class OperationResult:
    """What every public orchestrator call returns.

    success:       True if the operation committed or was a safe replay.
    data:          Operation-specific payload (JSON-serializable).
    error:         Set when success is False.
    operation_id:  Correlates with the log lines of this call.
    timestamp:     Unix seconds when the call finished.
    was_duplicate: True when the result came from the idempotency store
                   or the call was a no-op replay of committed state.
    """

    success: bool
    operation_id: str
    timestamp: int
    data: dict[str, Any] | None = None
    error: OperationError | None = None
    was_duplicate: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "data": self.data,
            "error": self.error.to_dict() if self.error else None,
            "operation_id": self.operation_id,
            "timestamp": self.timestamp,
            "was_duplicate": self.was_duplicate,
        }


@dataclass(slots=True)
class ValidationCollector:
    """Mutable builder used inside validators."""

    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)

    def error(self, code: str, message: str) -> None:
        self.errors.append(ValidationIssue(code, message))

    def warn(self, code: str, message: str) -> None:
        self.warnings.append(ValidationIssue(code, message))

    def result(self) -> ValidationResult:
        return ValidationResult(errors=tuple(self.errors), warnings=tuple(self.warnings))
