"""Transactional writes across the canonical and legacy representations.

Enrollment state lives in two places while older readers migrate:

  enrollments       canonical, the source of truth going forward
  student_progress  legacy, still read by older screens and reports

Every method here runs inside one UnitOfWork (one transaction), so the
two tables are either both updated or neither is.  Methods return a
SyncOutcome: the result data plus the domain events describing what
changed.  The events are handed to the bus by the orchestrator only
after the transaction committed.

The legacy table is written through a LegacyMirror.  Once no reader is
left on student_progress, swapping in NullLegacyMirror retires it
without touching any operation.
"""

from __future__ import annotations

import datetime
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any, Protocol

from enrollsync.core.errors import TransactionError, ValidationError
from enrollsync.models.course import Course
from enrollsync.models.enrollment import Enrollment, LegacyProgressRecord, clamp_progress
from enrollsync.models.events import DomainEvent, EventType, enrollment_entity_id
from enrollsync.models.operation import (
    ALREADY_ENROLLED,
    CHAPTER_TRACKING_DISABLED,
    NOT_ENROLLED,
    REQUEST_NOT_FOUND,
    REQUEST_NOT_PENDING,
    REQUEST_PENDING,
)
from enrollsync.repos.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


def _utc_now() -> int:
    return int(datetime.datetime.now(datetime.UTC).timestamp())


# Watching this much of a chapter video counts as completing the chapter.
VIDEO_COMPLETION_THRESHOLD = 90


def _json_list(raw: str, column: str) -> list:
    try:
        value = json.loads(raw or "[]")
    except ValueError:
        logger.warning("Unreadable %s JSON, starting from an empty list", column)
        return []
    return value if isinstance(value, list) else []


def _iso(ts: int) -> str:
    return datetime.datetime.fromtimestamp(ts, datetime.UTC).isoformat()


@dataclass(frozen=True, slots=True)
class SyncOutcome:
    data: dict[str, Any]
    events: list[DomainEvent] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Legacy mirror
# ---------------------------------------------------------------------------


class LegacyMirror(Protocol):
    enabled: bool

    async def read(
        self, uow: UnitOfWork, user_id: int, course_id: int, *, for_update: bool = False
    ) -> LegacyProgressRecord | None: ...
    async def write(self, uow: UnitOfWork, enrollment: Enrollment) -> None: ...
    async def remove(self, uow: UnitOfWork, user_id: int, course_id: int) -> bool: ...


class LegacyProgressMirror:
    """Keeps student_progress in step with the canonical enrollment."""

    enabled = True

    async def read(
        self, uow: UnitOfWork, user_id: int, course_id: int, *, for_update: bool = False
    ) -> LegacyProgressRecord | None:
        return await uow.legacy_progress.get(user_id, course_id, for_update=for_update)

    async def write(self, uow: UnitOfWork, enrollment: Enrollment) -> None:
        existing = await uow.legacy_progress.get(
            enrollment.user_id, enrollment.course_id, for_update=True
        )
        if existing is None:
            record = LegacyProgressRecord(
                student_id=enrollment.user_id,
                course_id=enrollment.course_id,
                total_progress=enrollment.progress,
                last_accessed=enrollment.updated_at,
            )
        else:
            # Chapter/video/quiz JSON is written only by activity updates; keep it.
            record = replace(
                existing,
                total_progress=enrollment.progress,
                last_accessed=max(existing.last_accessed, enrollment.updated_at),
            )
        await uow.legacy_progress.save(record)

    async def remove(self, uow: UnitOfWork, user_id: int, course_id: int) -> bool:
        return await uow.legacy_progress.delete(user_id, course_id)


class NullLegacyMirror:
    """Used once the legacy table is retired: reads nothing, writes nothing."""

    enabled = False

    async def read(
        self, uow: UnitOfWork, user_id: int, course_id: int, *, for_update: bool = False
    ) -> LegacyProgressRecord | None:
        return None

    async def write(self, uow: UnitOfWork, enrollment: Enrollment) -> None:
        return None

    async def remove(self, uow: UnitOfWork, user_id: int, course_id: int) -> bool:
        return False


# ---------------------------------------------------------------------------
# Synchronizer
# ---------------------------------------------------------------------------


class EnrollmentSynchronizer:
    def __init__(
        self,
        mirror: LegacyMirror | None = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self._mirror = mirror if mirror is not None else LegacyProgressMirror()
        self._clock = clock or _utc_now

    @property
    def mirror(self) -> LegacyMirror:
        return self._mirror

    def _event(
        self,
        event_type: EventType,
        entity: str,
        entity_id: str,
        action: str,
        actor: int | None,
        now: int,
        **metadata: Any,
    ) -> DomainEvent:
        return DomainEvent(
            type=event_type,
            entity=entity,
            entity_id=entity_id,
            action=action,
            actor=actor,
            timestamp=now,
            metadata=metadata,
        )

    # --- enrollment -------------------------------------------------------

    async def enroll(
        self, uow: UnitOfWork, user_id: int, course_id: int, actor: int | None = None
    ) -> SyncOutcome:
        existing = await uow.enrollments.get(user_id, course_id, for_update=True)
        if existing is not None and existing.is_active:
            raise ValidationError(
                f"User {user_id} is already enrolled in course {course_id}",
                code=ALREADY_ENROLLED,
            )

        now = self._clock()
        legacy = await self._mirror.read(uow, user_id, course_id, for_update=True)
        # A fresh row and a reactivated one both start from the legacy
        # progress when a pre-migration row exists, otherwise from 0.
        start = clamp_progress(legacy.total_progress) if legacy is not None else 0
        enrollment = Enrollment.new(user_id=user_id, course_id=course_id, now=now, progress=start)
        reactivated = existing is not None

        await uow.enrollments.save(enrollment)
        await self._mirror.write(uow, enrollment)
        removed = await uow.access_requests.delete_pending(user_id, course_id)
        if removed:
            logger.info("Removed %d pending request(s) for %d:%d", removed, user_id, course_id)

        event = self._event(
            EventType.ENROLLMENT_CREATED,
            "enrollment",
            enrollment_entity_id(user_id, course_id),
            "created",
            actor,
            now,
            user_id=user_id,
            course_id=course_id,
            progress=enrollment.progress,
            reactivated=reactivated,
        )
        return SyncOutcome(
            data={
                "enrollment": enrollment.to_dict(),
                "reactivated": reactivated,
                "pending_requests_removed": removed,
            },
            events=[event],
        )

    async def unenroll(
        self, uow: UnitOfWork, user_id: int, course_id: int, actor: int | None = None
    ) -> SyncOutcome:
        existing = await uow.enrollments.get(user_id, course_id, for_update=True)
        legacy = await self._mirror.read(uow, user_id, course_id, for_update=True)
        active = existing is not None and existing.is_active
        if not active and legacy is None:
            raise ValidationError(
                f"User {user_id} is not enrolled in course {course_id}", code=NOT_ENROLLED
            )

        now = self._clock()
        if active:
            await uow.enrollments.save(replace(existing, status="cancelled", updated_at=now))
        legacy_removed = await self._mirror.remove(uow, user_id, course_id)

        event = self._event(
            EventType.ENROLLMENT_REMOVED,
            "enrollment",
            enrollment_entity_id(user_id, course_id),
            "removed",
            actor,
            now,
            user_id=user_id,
            course_id=course_id,
        )
        return SyncOutcome(
            data={
                "user_id": user_id,
                "course_id": course_id,
                "status": "cancelled",
                "legacy_removed": legacy_removed,
            },
            events=[event],
        )

    async def update_progress(
        self,
        uow: UnitOfWork,
        user_id: int,
        course_id: int,
        progress: float,
        timestamp: int,
        actor: int | None = None,
    ) -> SyncOutcome:
        """Monotonic merge: progress and timestamps only move forward."""
        existing = await uow.enrollments.get(user_id, course_id, for_update=True)
        if existing is None or not existing.is_active:
            raise ValidationError(
                f"User {user_id} is not enrolled in course {course_id}", code=NOT_ENROLLED
            )
        legacy = await self._mirror.read(uow, user_id, course_id, for_update=True)

        incoming = clamp_progress(progress)
        legacy_progress = legacy.total_progress if legacy is not None else 0
        merged = max(existing.progress, legacy_progress, incoming)
        updated_at = max(existing.updated_at, timestamp)
        completed_at = existing.completed_at
        if merged >= 100 and completed_at is None:
            completed_at = updated_at

        enrollment = replace(
            existing, progress=merged, updated_at=updated_at, completed_at=completed_at
        )
        await uow.enrollments.save(enrollment)
        await self._mirror.write(uow, enrollment)

        event = self._event(
            EventType.PROGRESS_UPDATED,
            "enrollment",
            enrollment_entity_id(user_id, course_id),
            "updated",
            actor,
            self._clock(),
            user_id=user_id,
            course_id=course_id,
            progress=merged,
            previous_progress=existing.progress,
            requested_progress=incoming,
        )
        return SyncOutcome(
            data={
                "enrollment": enrollment.to_dict(),
                "previous_progress": existing.progress,
                "requested_progress": incoming,
            },
            events=[event],
        )

    # --- chapter and video activity ---------------------------------------
    #
    # Completed chapters and per-chapter video progress live in the JSON
    # columns of student_progress, in the shape older readers expect:
    #   completed_chapters  [3, 5]
    #   watched_videos      [{"chapterId": 3, "progress": 95, "lastWatched": "..."}]
    # Course progress is recomputed from the completed share of the
    # course's chapters and merged monotonically into both tables.

    async def _activity_target(
        self, uow: UnitOfWork, user_id: int, course_id: int
    ) -> tuple[Enrollment, LegacyProgressRecord]:
        if not self._mirror.enabled:
            raise ValidationError(
                "Chapter tracking needs the legacy progress table, which is retired",
                code=CHAPTER_TRACKING_DISABLED,
            )
        existing = await uow.enrollments.get(user_id, course_id, for_update=True)
        if existing is None or not existing.is_active:
            raise ValidationError(
                f"User {user_id} is not enrolled in course {course_id}", code=NOT_ENROLLED
            )
        legacy = await self._mirror.read(uow, user_id, course_id, for_update=True)
        if legacy is None:
            legacy = LegacyProgressRecord(
                student_id=user_id,
                course_id=course_id,
                total_progress=existing.progress,
                last_accessed=existing.updated_at,
            )
        return existing, legacy

    async def _save_activity(
        self,
        uow: UnitOfWork,
        existing: Enrollment,
        legacy: LegacyProgressRecord,
        completed: list[int],
        videos: list[dict],
        now: int,
    ) -> tuple[Enrollment, int]:
        chapter_ids = await uow.courses.chapter_ids(existing.course_id)
        done = len(set(completed) & set(chapter_ids))
        computed = round(done / len(chapter_ids) * 100) if chapter_ids else 0
        merged = max(existing.progress, clamp_progress(legacy.total_progress), computed)
        updated_at = max(existing.updated_at, now)
        completed_at = existing.completed_at
        if merged >= 100 and completed_at is None:
            completed_at = updated_at

        enrollment = replace(
            existing, progress=merged, updated_at=updated_at, completed_at=completed_at
        )
        await uow.enrollments.save(enrollment)
        await uow.legacy_progress.save(
            replace(
                legacy,
                completed_chapters=json.dumps(completed),
                watched_videos=json.dumps(videos),
                total_progress=merged,
                last_accessed=max(legacy.last_accessed, now),
            ),
            activity=True,
        )
        return enrollment, len(chapter_ids)

    def _chapter_event(
        self,
        enrollment: Enrollment,
        previous: int,
        chapter_id: int,
        completed: list[int],
        total: int,
        actor: int | None,
        now: int,
    ) -> DomainEvent:
        return self._event(
            EventType.CHAPTER_COMPLETED,
            "enrollment",
            enrollment_entity_id(enrollment.user_id, enrollment.course_id),
            "updated",
            actor,
            now,
            user_id=enrollment.user_id,
            course_id=enrollment.course_id,
            chapter_id=chapter_id,
            completed_chapters=len(completed),
            total_chapters=total,
            progress=enrollment.progress,
            previous_progress=previous,
        )

    async def complete_chapter(
        self,
        uow: UnitOfWork,
        user_id: int,
        course_id: int,
        chapter_id: int,
        actor: int | None = None,
    ) -> SyncOutcome:
        """Mark a chapter complete.  Completing it again changes nothing."""
        existing, legacy = await self._activity_target(uow, user_id, course_id)
        completed = _json_list(legacy.completed_chapters, "completed_chapters")
        newly_completed = chapter_id not in completed
        if newly_completed:
            completed.append(chapter_id)

        now = self._clock()
        videos = _json_list(legacy.watched_videos, "watched_videos")
        enrollment, total = await self._save_activity(uow, existing, legacy, completed, videos, now)

        events = []
        if newly_completed:
            events.append(
                self._chapter_event(
                    enrollment, existing.progress, chapter_id, completed, total, actor, now
                )
            )
        return SyncOutcome(
            data={
                "enrollment": enrollment.to_dict(),
                "completed_chapters": completed,
                "total_chapters": total,
                "newly_completed": newly_completed,
            },
            events=events,
        )

    async def update_video_progress(
        self,
        uow: UnitOfWork,
        user_id: int,
        course_id: int,
        chapter_id: int,
        video_progress: float,
        actor: int | None = None,
    ) -> SyncOutcome:
        """Record how far a chapter video was watched.

        Per-chapter video progress only moves forward.  Reaching
        VIDEO_COMPLETION_THRESHOLD completes the chapter in the same
        transaction.
        """
        existing, legacy = await self._activity_target(uow, user_id, course_id)
        now = self._clock()
        incoming = clamp_progress(video_progress)

        videos = [v for v in _json_list(legacy.watched_videos, "watched_videos") if isinstance(v, dict)]
        entry = next((v for v in videos if v.get("chapterId") == chapter_id), None)
        if entry is None:
            entry = {"chapterId": chapter_id, "progress": 0}
            videos.append(entry)
        raw = entry.get("progress")
        previous_video = clamp_progress(raw) if isinstance(raw, (int, float)) else 0
        entry["progress"] = max(previous_video, incoming)
        entry["lastWatched"] = _iso(now)

        completed = _json_list(legacy.completed_chapters, "completed_chapters")
        chapter_completed = (
            entry["progress"] >= VIDEO_COMPLETION_THRESHOLD and chapter_id not in completed
        )
        if chapter_completed:
            completed.append(chapter_id)

        enrollment, total = await self._save_activity(uow, existing, legacy, completed, videos, now)

        events = [
            self._event(
                EventType.VIDEO_PROGRESS_UPDATED,
                "enrollment",
                enrollment_entity_id(user_id, course_id),
                "updated",
                actor,
                now,
                user_id=user_id,
                course_id=course_id,
                chapter_id=chapter_id,
                video_progress=entry["progress"],
                previous_video_progress=previous_video,
            )
        ]
        if chapter_completed:
            events.append(
                self._chapter_event(
                    enrollment, existing.progress, chapter_id, completed, total, actor, now
                )
            )
        return SyncOutcome(
            data={
                "enrollment": enrollment.to_dict(),
                "chapter_id": chapter_id,
                "video_progress": entry["progress"],
                "chapter_completed": chapter_completed,
            },
            events=events,
        )

    # --- access requests --------------------------------------------------

    async def _pending_request(self, uow: UnitOfWork, request_id: int):
        request = await uow.access_requests.get(request_id, for_update=True)
        if request is None:
            raise ValidationError(
                f"Access request {request_id} not found", code=REQUEST_NOT_FOUND
            )
        if not request.is_pending:
            raise ValidationError(
                f"Access request {request_id} is already {request.status}",
                code=REQUEST_NOT_PENDING,
            )
        return request

    async def approve_request(self, uow: UnitOfWork, request_id: int, reviewer_id: int) -> SyncOutcome:
        request = await self._pending_request(uow, request_id)
        now = self._clock()
        resolved = await uow.access_requests.resolve(
            request_id, status="approved", reviewed_by=reviewer_id, reviewed_at=now
        )

        events = [
            self._event(
                EventType.REQUEST_APPROVED,
                "access_request",
                str(request_id),
                "approved",
                reviewer_id,
                now,
                student_id=request.student_id,
                course_id=request.course_id,
            )
        ]

        existing = await uow.enrollments.get(request.student_id, request.course_id, for_update=True)
        already_enrolled = existing is not None and existing.is_active
        if already_enrolled:
            enrollment_data = existing.to_dict()
            await uow.access_requests.delete_pending(request.student_id, request.course_id)
        else:
            enrolled = await self.enroll(uow, request.student_id, request.course_id, actor=reviewer_id)
            enrollment_data = enrolled.data["enrollment"]
            events.extend(enrolled.events)

        state = await self.verify(uow, request.student_id, request.course_id)
        if not state["verified"]:
            logger.error(
                "Approval left %d:%d unsynced (legacy=%s canonical=%s), rolling back",
                request.student_id,
                request.course_id,
                state["in_legacy"],
                state["in_canonical"],
            )
            raise TransactionError(
                f"Enrollment for request {request_id} could not be verified in both tables"
            )

        return SyncOutcome(
            data={
                "request": resolved.to_dict() if resolved else None,
                "enrollment": enrollment_data,
                "already_enrolled": already_enrolled,
            },
            events=events,
        )

    async def reject_request(self, uow: UnitOfWork, request_id: int, reviewer_id: int) -> SyncOutcome:
        request = await self._pending_request(uow, request_id)
        now = self._clock()
        resolved = await uow.access_requests.resolve(
            request_id, status="rejected", reviewed_by=reviewer_id, reviewed_at=now
        )
        event = self._event(
            EventType.REQUEST_REJECTED,
            "access_request",
            str(request_id),
            "rejected",
            reviewer_id,
            now,
            student_id=request.student_id,
            course_id=request.course_id,
        )
        return SyncOutcome(
            data={"request": resolved.to_dict() if resolved else None},
            events=[event],
        )

    async def create_request(
        self,
        uow: UnitOfWork,
        student_id: int,
        course_id: int,
        reason: str = "",
        actor: int | None = None,
    ) -> SyncOutcome:
        if await uow.access_requests.find_pending(student_id, course_id) is not None:
            raise ValidationError(
                f"A pending request for course {course_id} already exists", code=REQUEST_PENDING
            )
        enrollment = await uow.enrollments.get(student_id, course_id, for_update=True)
        if enrollment is not None and enrollment.is_active:
            raise ValidationError(
                f"User {student_id} is already enrolled in course {course_id}",
                code=ALREADY_ENROLLED,
            )

        now = self._clock()
        request = await uow.access_requests.create(
            student_id=student_id, course_id=course_id, reason=reason, requested_at=now
        )
        event = self._event(
            EventType.REQUEST_CREATED,
            "access_request",
            str(request.id),
            "created",
            actor if actor is not None else student_id,
            now,
            student_id=student_id,
            course_id=course_id,
        )
        return SyncOutcome(data={"request": request.to_dict()}, events=[event])

    # --- repair and inspection --------------------------------------------

    async def reconcile(
        self, uow: UnitOfWork, user_id: int, course_id: int, actor: int | None = None
    ) -> SyncOutcome:
        """Repair a pair that is present in only one table, or whose tables disagree."""
        existing = await uow.enrollments.get(user_id, course_id, for_update=True)
        legacy = await self._mirror.read(uow, user_id, course_id, for_update=True)
        active = existing is not None and existing.is_active
        if not active and legacy is None:
            raise ValidationError(
                f"User {user_id} is not enrolled in course {course_id}", code=NOT_ENROLLED
            )

        now = self._clock()
        repairs: list[str] = []
        if not active:
            # Legacy-only: an enrollment made by a pre-migration writer.
            progress = clamp_progress(legacy.total_progress)
            if existing is None:
                enrollment = Enrollment.new(
                    user_id=user_id, course_id=course_id, now=now, progress=progress
                )
            else:
                enrollment = replace(
                    existing,
                    status="active",
                    progress=progress,
                    enrolled_at=now,
                    updated_at=now,
                    completed_at=now if progress >= 100 else None,
                )
            await uow.enrollments.save(enrollment)
            repairs.append("canonical_created")
        else:
            enrollment = existing
            if legacy is None and self._mirror.enabled:
                await self._mirror.write(uow, enrollment)
                repairs.append("legacy_created")
            elif legacy is not None and legacy.total_progress != enrollment.progress:
                merged = max(enrollment.progress, clamp_progress(legacy.total_progress))
                if merged != enrollment.progress:
                    enrollment = replace(
                        enrollment,
                        progress=merged,
                        updated_at=max(enrollment.updated_at, legacy.last_accessed),
                        completed_at=enrollment.completed_at
                        or (now if merged >= 100 else None),
                    )
                    await uow.enrollments.save(enrollment)
                await self._mirror.write(uow, enrollment)
                repairs.append("progress_aligned")

        events: list[DomainEvent] = []
        if repairs:
            logger.info("Reconciled %d:%d repairs=%s", user_id, course_id, ",".join(repairs))
            events.append(
                self._event(
                    EventType.ENROLLMENT_RECONCILED,
                    "enrollment",
                    enrollment_entity_id(user_id, course_id),
                    "reconciled",
                    actor,
                    now,
                    user_id=user_id,
                    course_id=course_id,
                    progress=enrollment.progress,
                    repairs=list(repairs),
                )
            )
        return SyncOutcome(
            data={
                "enrollment": enrollment.to_dict(),
                "changed": bool(repairs),
                "repairs": repairs,
            },
            events=events,
        )

    async def verify(self, uow: UnitOfWork, user_id: int, course_id: int) -> dict[str, bool]:
        enrollment = await uow.enrollments.get(user_id, course_id)
        in_canonical = enrollment is not None and enrollment.is_active
        in_legacy = await self._mirror.read(uow, user_id, course_id) is not None
        return {
            "in_legacy": in_legacy,
            "in_canonical": in_canonical,
            "verified": in_canonical and (in_legacy or not self._mirror.enabled),
        }

    async def student_state(self, uow: UnitOfWork, student_id: int) -> dict[str, Any]:
        """Per-course view of one student across both tables and their requests."""
        canonical = {e.course_id: e for e in await uow.enrollments.list_for_user(student_id)}
        legacy = (
            {r.course_id: r for r in await uow.legacy_progress.list_for_student(student_id)}
            if self._mirror.enabled
            else {}
        )
        requests = await uow.access_requests.list_for_student(student_id)
        pending = {r.course_id for r in requests if r.is_pending}
        approved = {r.course_id for r in requests if r.status == "approved"}

        courses = []
        for course_id in sorted(set(canonical) | set(legacy) | pending | approved):
            enrollment = canonical.get(course_id)
            record = legacy.get(course_id)
            in_canonical = enrollment is not None and enrollment.is_active
            in_legacy = record is not None
            enrolled = in_canonical or in_legacy
            if enrollment is not None and enrollment.is_active:
                progress = enrollment.progress
            elif record is not None:
                progress = clamp_progress(record.total_progress)
            else:
                progress = 0
            courses.append(
                {
                    "course_id": course_id,
                    "is_enrolled": enrolled,
                    "in_canonical": in_canonical,
                    "in_legacy": in_legacy,
                    "status": enrollment.status if enrollment is not None else None,
                    "has_pending_request": course_id in pending,
                    "has_approved_request": course_id in approved,
                    "progress": progress,
                    "consistent": (
                        (in_canonical == in_legacy or not self._mirror.enabled)
                        and not (enrolled and course_id in pending)
                    ),
                }
            )
        return {"student_id": student_id, "courses": courses}

    async def cleanup_pending_requests(
        self,
        uow: UnitOfWork,
        student_id: int,
        course_ids: list[int],
        actor: int | None = None,
    ) -> SyncOutcome:
        """Delete pending requests for courses the student is already enrolled in."""
        now = self._clock()
        cleaned: list[dict[str, int]] = []
        events: list[DomainEvent] = []
        for course_id in course_ids:
            enrollment = await uow.enrollments.get(student_id, course_id, for_update=True)
            enrolled = enrollment is not None and enrollment.is_active
            if not enrolled:
                enrolled = await self._mirror.read(uow, student_id, course_id) is not None
            if not enrolled:
                continue
            removed = await uow.access_requests.delete_pending(student_id, course_id)
            if not removed:
                continue
            cleaned.append({"course_id": course_id, "removed": removed})
            events.append(
                self._event(
                    EventType.REQUESTS_CLEANED,
                    "access_request",
                    enrollment_entity_id(student_id, course_id),
                    "cleaned",
                    actor,
                    now,
                    student_id=student_id,
                    course_id=course_id,
                    removed=removed,
                )
            )
        if cleaned:
            logger.info(
                "Removed pending requests of enrolled student %d for course(s) %s",
                student_id,
                ",".join(str(c["course_id"]) for c in cleaned),
            )
        return SyncOutcome(
            data={
                "student_id": student_id,
                "cleaned": cleaned,
                "removed": sum(c["removed"] for c in cleaned),
            },
            events=events,
        )

    async def remove_orphaned_legacy(self, uow: UnitOfWork, actor: int | None = None) -> SyncOutcome:
        """Delete student_progress rows whose student or course no longer exists.

        Rows of unpublished courses are only counted; they may be
        re-published and are left alone.
        """
        users: dict[int, bool] = {}
        courses: dict[int, Course | None] = {}
        orphans: list[dict[str, int]] = []
        unpublished = 0
        for record in await uow.legacy_progress.list_all():
            if record.student_id not in users:
                users[record.student_id] = await uow.users.get_by_id(record.student_id) is not None
            if record.course_id not in courses:
                courses[record.course_id] = await uow.courses.get_by_id(record.course_id)
            course = courses[record.course_id]
            if not users[record.student_id] or course is None:
                orphans.append({"student_id": record.student_id, "course_id": record.course_id})
                logger.warning(
                    "Orphaned legacy progress student=%d course=%d",
                    record.student_id,
                    record.course_id,
                )
            elif not course.is_published:
                unpublished += 1

        for orphan in orphans:
            await uow.legacy_progress.delete(orphan["student_id"], orphan["course_id"])

        events: list[DomainEvent] = []
        if orphans:
            events.append(
                self._event(
                    EventType.LEGACY_ORPHANS_REMOVED,
                    "student_progress",
                    "*",
                    "removed",
                    actor,
                    self._clock(),
                    removed=len(orphans),
                )
            )
        return SyncOutcome(
            data={
                "deleted_count": len(orphans),
                "orphaned_entries": orphans,
                "unpublished_progress_count": unpublished,
            },
            events=events,
        )
