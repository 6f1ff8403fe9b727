"""Pre-condition checks for orchestrated operations.

Validators only read.  Each returns a ValidationResult whose errors
block the operation and whose warnings are logged.  The orchestrator
runs them while holding the operation lock, and the synchronizer
re-checks the critical invariants inside its own transaction.

Calling validate_enrollment() for a pair that is already actively
enrolled reports ALREADY_ENROLLED as an error.  Turning that into an
idempotent success is the orchestrator's decision, not the validator's.
"""

from __future__ import annotations

import math

from enrollsync.models.operation import (
    ALREADY_ENROLLED,
    CHAPTER_NOT_FOUND,
    COURSE_NOT_FOUND,
    COURSE_NOT_PUBLISHED,
    INVALID_PROGRESS,
    LEGACY_ONLY,
    NOT_ENROLLED,
    PROGRESS_CLAMPED,
    REQUEST_NOT_FOUND,
    REQUEST_NOT_PENDING,
    REQUEST_PENDING,
    REVIEWER_NOT_ADMIN,
    USER_INACTIVE,
    USER_NOT_FOUND,
    USER_NOT_STUDENT,
    ValidationCollector,
    ValidationResult,
)
from enrollsync.repos.unit_of_work import UnitOfWork


async def _check_student(uow: UnitOfWork, check: ValidationCollector, user_id: int) -> None:
    user = await uow.users.get_by_id(user_id)
    if user is None:
        check.error(USER_NOT_FOUND, f"User {user_id} not found")
        return
    if not user.is_active:
        check.error(USER_INACTIVE, f"User {user_id} is not active")
    if not user.is_student:
        check.error(USER_NOT_STUDENT, f"User {user_id} has role {user.role!r}, not student")


def _check_percentage(check: ValidationCollector, value: object, label: str) -> None:
    # bool is an int subclass; True is not a percentage.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        check.error(INVALID_PROGRESS, f"{label} must be a number (got {value!r})")
    elif math.isnan(value) or math.isinf(value):
        check.error(INVALID_PROGRESS, f"{label} must be finite (got {value!r})")
    elif value < 0 or value > 100:
        check.warn(PROGRESS_CLAMPED, f"{label} {value} is outside 0-100 and will be clamped")


async def _check_active(
    uow: UnitOfWork, check: ValidationCollector, user_id: int, course_id: int
) -> None:
    enrollment = await uow.enrollments.get(user_id, course_id)
    if enrollment is None or not enrollment.is_active:
        check.error(NOT_ENROLLED, f"User {user_id} is not enrolled in course {course_id}")


async def validate_enrollment(uow: UnitOfWork, user_id: int, course_id: int) -> ValidationResult:
    check = ValidationCollector()
    await _check_student(uow, check, user_id)

    course = await uow.courses.get_by_id(course_id)
    if course is None:
        check.error(COURSE_NOT_FOUND, f"Course {course_id} not found")
    elif not course.is_published:
        check.error(COURSE_NOT_PUBLISHED, f"Course {course_id} is {course.status}, not published")

    enrollment = await uow.enrollments.get(user_id, course_id)
    if enrollment is not None and enrollment.is_active:
        check.error(ALREADY_ENROLLED, f"User {user_id} is already enrolled in course {course_id}")

    if await uow.access_requests.find_pending(user_id, course_id) is not None:
        check.warn(REQUEST_PENDING, "Pending access request will be removed on enrollment")

    active = enrollment is not None and enrollment.is_active
    if not active and await uow.legacy_progress.get(user_id, course_id) is not None:
        check.warn(LEGACY_ONLY, "Legacy progress exists without an active enrollment; it is carried over")

    return check.result()


async def validate_unenrollment(uow: UnitOfWork, user_id: int, course_id: int) -> ValidationResult:
    check = ValidationCollector()
    if await uow.users.get_by_id(user_id) is None:
        check.error(USER_NOT_FOUND, f"User {user_id} not found")
    if await uow.courses.get_by_id(course_id) is None:
        check.error(COURSE_NOT_FOUND, f"Course {course_id} not found")
    if check.errors:
        return check.result()

    enrollment = await uow.enrollments.get(user_id, course_id)
    active = enrollment is not None and enrollment.is_active
    if not active and await uow.legacy_progress.get(user_id, course_id) is None:
        check.error(NOT_ENROLLED, f"User {user_id} is not enrolled in course {course_id}")
    return check.result()


async def validate_progress_update(
    uow: UnitOfWork, user_id: int, course_id: int, progress: object
) -> ValidationResult:
    check = ValidationCollector()
    _check_percentage(check, progress, "Progress")
    await _check_active(uow, check, user_id, course_id)
    return check.result()


async def validate_chapter_activity(
    uow: UnitOfWork,
    user_id: int,
    course_id: int,
    chapter_id: int,
    video_progress: object = None,
) -> ValidationResult:
    """Checks for chapter completion, and for video progress when given."""
    check = ValidationCollector()
    if video_progress is not None:
        _check_percentage(check, video_progress, "Video progress")
    await _check_active(uow, check, user_id, course_id)
    if chapter_id not in await uow.courses.chapter_ids(course_id):
        check.error(CHAPTER_NOT_FOUND, f"Chapter {chapter_id} is not part of course {course_id}")
    return check.result()


async def validate_request_action(
    uow: UnitOfWork, request_id: int, reviewer_id: int, action: str
) -> ValidationResult:
    """Checks for approve/reject.  action is "approve" or "reject"."""
    check = ValidationCollector()
    reviewer = await uow.users.get_by_id(reviewer_id)
    if reviewer is None:
        check.error(USER_NOT_FOUND, f"Reviewer {reviewer_id} not found")
    elif not reviewer.is_admin:
        check.error(REVIEWER_NOT_ADMIN, f"User {reviewer_id} is not an admin")

    request = await uow.access_requests.get(request_id)
    if request is None:
        check.error(REQUEST_NOT_FOUND, f"Access request {request_id} not found")
        return check.result()
    if not request.is_pending:
        check.error(REQUEST_NOT_PENDING, f"Access request {request_id} is already {request.status}")

    if action == "approve":
        enrollment = await uow.enrollments.get(request.student_id, request.course_id)
        if enrollment is not None and enrollment.is_active:
            check.warn(ALREADY_ENROLLED, "Student is already enrolled; approval only resolves the request")
    return check.result()


async def validate_request_creation(
    uow: UnitOfWork, student_id: int, course_id: int
) -> ValidationResult:
    check = ValidationCollector()
    await _check_student(uow, check, student_id)
    if await uow.courses.get_by_id(course_id) is None:
        check.error(COURSE_NOT_FOUND, f"Course {course_id} not found")

    enrollment = await uow.enrollments.get(student_id, course_id)
    if enrollment is not None and enrollment.is_active:
        check.error(ALREADY_ENROLLED, f"User {student_id} is already enrolled in course {course_id}")
    if await uow.access_requests.find_pending(student_id, course_id) is not None:
        check.error(REQUEST_PENDING, f"A pending request for course {course_id} already exists")
    return check.result()


async def validate_admin(uow: UnitOfWork, actor_id: int) -> ValidationResult:
    """Bulk repairs are admin-only."""
    check = ValidationCollector()
    actor = await uow.users.get_by_id(actor_id)
    if actor is None:
        check.error(USER_NOT_FOUND, f"User {actor_id} not found")
    elif not actor.is_admin:
        check.error(REVIEWER_NOT_ADMIN, f"User {actor_id} is not an admin")
    return check.result()


async def validate_student_exists(uow: UnitOfWork, student_id: int) -> ValidationResult:
    check = ValidationCollector()
    if await uow.users.get_by_id(student_id) is None:
        check.error(USER_NOT_FOUND, f"User {student_id} not found")
    return check.result()
