"""PostgreSQL implementation of EnrollmentRepo."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from enrollsync.db.tables import EnrollmentRow
from enrollsync.models.enrollment import Enrollment


class PgEnrollmentRepo:
    """Satisfies the EnrollmentRepo Protocol using PostgreSQL."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(
        self, user_id: int, course_id: int, *, for_update: bool = False
    ) -> Enrollment | None:
        stmt = (
            select(EnrollmentRow)
            .where(EnrollmentRow.user_id == user_id)
            .where(EnrollmentRow.course_id == course_id)
        )
        if for_update:
            # The row is about to be rewritten in this transaction.
            stmt = stmt.with_for_update()
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return _row_to_enrollment(row)

    async def save(self, enrollment: Enrollment) -> None:
        values = {
            "user_id": enrollment.user_id,
            "course_id": enrollment.course_id,
            "status": enrollment.status,
            "progress": enrollment.progress,
            "enrolled_at": enrollment.enrolled_at,
            "updated_at": enrollment.updated_at,
            "completed_at": enrollment.completed_at,
        }
        stmt = insert(EnrollmentRow).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[EnrollmentRow.user_id, EnrollmentRow.course_id],
            set_={
                "status": stmt.excluded.status,
                "progress": stmt.excluded.progress,
                "enrolled_at": stmt.excluded.enrolled_at,
                "updated_at": stmt.excluded.updated_at,
                "completed_at": stmt.excluded.completed_at,
            },
        )
        await self._session.execute(stmt)

    async def list_for_user(self, user_id: int) -> list[Enrollment]:
        stmt = (
            select(EnrollmentRow)
            .where(EnrollmentRow.user_id == user_id)
            .order_by(EnrollmentRow.course_id)
        )
        rows = (await self._session.execute(stmt)).scalars().all()
        return [_row_to_enrollment(row) for row in rows]


def _row_to_enrollment(row: EnrollmentRow) -> Enrollment:
    return Enrollment(
        user_id=row.user_id,
        course_id=row.course_id,
        status=row.status,
        progress=row.progress,
        enrolled_at=row.enrolled_at,
        updated_at=row.updated_at,
        completed_at=row.completed_at,
    )
