from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


class EventType(str, Enum):
    ENROLLMENT_CREATED = "enrollment.created"
    ENROLLMENT_REMOVED = "enrollment.removed"
    ENROLLMENT_RECONCILED = "enrollment.reconciled"
    PROGRESS_UPDATED = "progress.updated"
    CHAPTER_COMPLETED = "progress.chapter_completed"
    VIDEO_PROGRESS_UPDATED = "progress.video_updated"
    REQUEST_CREATED = "request.created"
    REQUEST_APPROVED = "request.approved"
    REQUEST_REJECTED = "request.rejected"
    REQUESTS_CLEANED = "request.cleaned"
    LEGACY_ORPHANS_REMOVED = "legacy.orphans_removed"


@dataclass(frozen=True, slots=True)
class DomainEvent:
    """Immutable record of a committed state change.

    Built by the synchronizer while the transaction is open, but only
    handed to the event bus after the commit succeeded.
    """

    type: EventType
    entity: str  # enrollment|access_request|student_progress
    entity_id: str
    action: str  # created|removed|reconciled|updated|approved|rejected|cleaned
    actor: int | None
    timestamp: int
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Freeze the payload too; subscribers share one instance.
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "entity": self.entity,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "timestamp": self.timestamp,
            "metadata": dict(self.metadata),
        }


def enrollment_entity_id(user_id: int, course_id: int) -> str:
    return f"{user_id}:{course_id}"
