"""PostgreSQL implementation of LegacyProgressRepo (student_progress table)."""

from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from enrollsync.db.tables import StudentProgressRow
from enrollsync.models.enrollment import LegacyProgressRecord


class PgLegacyProgressRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(
        self, student_id: int, course_id: int, *, for_update: bool = False
    ) -> LegacyProgressRecord | None:
        stmt = (
            select(StudentProgressRow)
            .where(StudentProgressRow.student_id == student_id)
            .where(StudentProgressRow.course_id == course_id)
        )
        if for_update:
            stmt = stmt.with_for_update()
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return _row_to_record(row)

    async def save(self, record: LegacyProgressRecord, *, activity: bool = False) -> None:
        stmt = insert(StudentProgressRow).values(
            student_id=record.student_id,
            course_id=record.course_id,
            total_progress=record.total_progress,
            completed_chapters=record.completed_chapters,
            watched_videos=record.watched_videos,
            quiz_attempts=record.quiz_attempts,
            last_accessed=record.last_accessed,
        )
        # The JSON columns belong to older readers; only the mirrored
        # fields are overwritten on conflict, unless this write records
        # chapter/video activity itself.
        set_ = {
            "total_progress": stmt.excluded.total_progress,
            "last_accessed": stmt.excluded.last_accessed,
        }
        if activity:
            set_["completed_chapters"] = stmt.excluded.completed_chapters
            set_["watched_videos"] = stmt.excluded.watched_videos
        stmt = stmt.on_conflict_do_update(
            index_elements=[StudentProgressRow.student_id, StudentProgressRow.course_id],
            set_=set_,
        )
        await self._session.execute(stmt)

    async def delete(self, student_id: int, course_id: int) -> bool:
        stmt = (
            delete(StudentProgressRow)
            .where(StudentProgressRow.student_id == student_id)
            .where(StudentProgressRow.course_id == course_id)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def list_for_student(self, student_id: int) -> list[LegacyProgressRecord]:
        stmt = (
            select(StudentProgressRow)
            .where(StudentProgressRow.student_id == student_id)
            .order_by(StudentProgressRow.course_id)
        )
        rows = (await self._session.execute(stmt)).scalars().all()
        return [_row_to_record(row) for row in rows]

    async def list_all(self) -> list[LegacyProgressRecord]:
        stmt = select(StudentProgressRow).order_by(
            StudentProgressRow.student_id, StudentProgressRow.course_id
        )
        rows = (await self._session.execute(stmt)).scalars().all()
        return [_row_to_record(row) for row in rows]


def _row_to_record(row: StudentProgressRow) -> LegacyProgressRecord:
    return LegacyProgressRecord(
        student_id=row.student_id,
        course_id=row.course_id,
        total_progress=row.total_progress,
        completed_chapters=row.completed_chapters,
        watched_videos=row.watched_videos,
        quiz_attempts=row.quiz_attempts,
        last_accessed=row.last_accessed,
    )
