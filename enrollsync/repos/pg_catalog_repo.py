"""PostgreSQL implementations of UserRepo and CourseRepo."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from enrollsync.db.tables import ChapterRow, CourseRow, UserRow
from enrollsync.models.course import Course
from enrollsync.models.user import User


class PgUserRepo:
    """Satisfies the UserRepo Protocol using PostgreSQL via SQLAlchemy."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, user_id: int) -> User | None:
        stmt = select(UserRow).where(UserRow.id == user_id)
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return User(
            id=row.id,
            role=row.role,
            is_active=row.is_active,
            name=row.name or "",
        )


class PgCourseRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, course_id: int) -> Course | None:
        stmt = select(CourseRow).where(CourseRow.id == course_id)
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return Course(id=row.id, title=row.title or "", status=row.status)

    async def chapter_ids(self, course_id: int) -> list[int]:
        stmt = select(ChapterRow.id).where(ChapterRow.course_id == course_id).order_by(ChapterRow.id)
        return list((await self._session.execute(stmt)).scalars().all())
