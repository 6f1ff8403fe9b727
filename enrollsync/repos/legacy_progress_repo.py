from __future__ import annotations

from typing import Protocol

from enrollsync.models.enrollment import LegacyProgressRecord


class LegacyProgressRepo(Protocol):
    async def get(
        self, student_id: int, course_id: int, *, for_update: bool = False
    ) -> LegacyProgressRecord | None: ...
    async def save(self, record: LegacyProgressRecord, *, activity: bool = False) -> None: ...
    async def delete(self, student_id: int, course_id: int) -> bool: ...
    async def list_for_student(self, student_id: int) -> list[LegacyProgressRecord]: ...
    async def list_all(self) -> list[LegacyProgressRecord]: ...


class InMemoryLegacyProgressRepo:
    def __init__(self) -> None:
        self._by_pair: dict[tuple[int, int], LegacyProgressRecord] = {}

    async def get(
        self, student_id: int, course_id: int, *, for_update: bool = False
    ) -> LegacyProgressRecord | None:
        return self._by_pair.get((student_id, course_id))

    async def save(self, record: LegacyProgressRecord, *, activity: bool = False) -> None:
        existing = self._by_pair.get((record.student_id, record.course_id))
        if existing is not None and not activity:
            # Same rule as the PG upsert: chapter/video/quiz JSON survives.
            record = LegacyProgressRecord(
                student_id=record.student_id,
                course_id=record.course_id,
                total_progress=record.total_progress,
                completed_chapters=existing.completed_chapters,
                watched_videos=existing.watched_videos,
                quiz_attempts=existing.quiz_attempts,
                last_accessed=record.last_accessed,
            )
        self._by_pair[(record.student_id, record.course_id)] = record

    async def delete(self, student_id: int, course_id: int) -> bool:
        return self._by_pair.pop((student_id, course_id), None) is not None

    async def list_for_student(self, student_id: int) -> list[LegacyProgressRecord]:
        return sorted(
            (r for (sid, _), r in self._by_pair.items() if sid == student_id),
            key=lambda r: r.course_id,
        )

    async def list_all(self) -> list[LegacyProgressRecord]:
        return sorted(self._by_pair.values(), key=lambda r: (r.student_id, r.course_id))

    def add(self, record: LegacyProgressRecord) -> None:
        """Seed a pre-migration row (tests, local runs)."""
        self._by_pair[(record.student_id, record.course_id)] = record

    def all(self) -> list[LegacyProgressRecord]:
        return list(self._by_pair.values())

    def snapshot(self) -> dict:
        return dict(self._by_pair)

    def restore(self, state: dict) -> None:
        self._by_pair = dict(state)
