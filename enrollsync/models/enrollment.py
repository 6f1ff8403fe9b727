from __future__ import annotations

from dataclasses import dataclass


def clamp_progress(value: float) -> int:
    """Round and clamp a progress percentage into 0..100."""
    return int(min(100, max(0, round(value))))


@dataclass(frozen=True, slots=True)
class Enrollment:
    """Canonical enrollment, the source of truth going forward.

    Unique on (user_id, course_id).  Unenrolling flips status to
    "cancelled" instead of deleting the row, so a later enroll
    reactivates the same row.
    """

    user_id: int
    course_id: int
    status: str = "active"  # active|cancelled
    progress: int = 0
    enrolled_at: int = 0
    updated_at: int = 0
    completed_at: int | None = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @staticmethod
    def new(*, user_id: int, course_id: int, now: int, progress: int = 0) -> Enrollment:
        return Enrollment(
            user_id=user_id,
            course_id=course_id,
            status="active",
            progress=progress,
            enrolled_at=now,
            updated_at=now,
            completed_at=now if progress >= 100 else None,
        )

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "course_id": self.course_id,
            "status": self.status,
            "progress": self.progress,
            "enrolled_at": self.enrolled_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
        }


@dataclass(frozen=True, slots=True)
class LegacyProgressRecord:
    """Row of the legacy student_progress table.

    Kept only for backward compatibility while older readers migrate to
    the canonical Enrollment.  Enrollment writes mirror only
    total_progress and last_accessed; the JSON columns change only
    through chapter and video activity.
    """

    student_id: int
    course_id: int
    total_progress: int = 0
    completed_chapters: str = "[]"
    watched_videos: str = "[]"
    quiz_attempts: str = "[]"
    last_accessed: int = 0
