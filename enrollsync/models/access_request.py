from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class AccessRequest:
    """A student's request to join a course that needs admin approval."""

    id: int
    student_id: int
    course_id: int
    status: str = "pending"  # pending|approved|rejected
    reason: str = ""
    requested_at: int = 0
    reviewed_at: int | None = None
    reviewed_by: int | None = None

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "student_id": self.student_id,
            "course_id": self.course_id,
            "status": self.status,
            "reason": self.reason,
            "requested_at": self.requested_at,
            "reviewed_at": self.reviewed_at,
            "reviewed_by": self.reviewed_by,
        }
