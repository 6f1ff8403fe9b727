"""PostgreSQL implementation of AccessRequestRepo."""

from __future__ import annotations

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from enrollsync.db.tables import AccessRequestRow
from enrollsync.models.access_request import AccessRequest


class PgAccessRequestRepo:
    """Satisfies the AccessRequestRepo Protocol using PostgreSQL."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, request_id: int, *, for_update: bool = False) -> AccessRequest | None:
        stmt = select(AccessRequestRow).where(AccessRequestRow.id == request_id)
        if for_update:
            stmt = stmt.with_for_update()
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return _row_to_request(row)

    async def find_pending(self, student_id: int, course_id: int) -> AccessRequest | None:
        stmt = (
            select(AccessRequestRow)
            .where(AccessRequestRow.student_id == student_id)
            .where(AccessRequestRow.course_id == course_id)
            .where(AccessRequestRow.status == "pending")
            .order_by(AccessRequestRow.id)
            .limit(1)
        )
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return _row_to_request(row)

    async def list_for_student(self, student_id: int) -> list[AccessRequest]:
        stmt = (
            select(AccessRequestRow)
            .where(AccessRequestRow.student_id == student_id)
            .order_by(AccessRequestRow.id)
        )
        rows = (await self._session.execute(stmt)).scalars().all()
        return [_row_to_request(row) for row in rows]

    async def create(
        self, *, student_id: int, course_id: int, reason: str, requested_at: int
    ) -> AccessRequest:
        row = AccessRequestRow(
            student_id=student_id,
            course_id=course_id,
            reason=reason,
            status="pending",
            requested_at=requested_at,
        )
        self._session.add(row)
        await self._session.flush()  # assigns row.id
        return _row_to_request(row)

    async def resolve(
        self, request_id: int, *, status: str, reviewed_by: int, reviewed_at: int
    ) -> AccessRequest | None:
        stmt = (
            update(AccessRequestRow)
            .where(AccessRequestRow.id == request_id)
            .values(status=status, reviewed_by=reviewed_by, reviewed_at=reviewed_at)
            .returning(AccessRequestRow)
        )
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return _row_to_request(row)

    async def delete_pending(self, student_id: int, course_id: int) -> int:
        stmt = (
            delete(AccessRequestRow)
            .where(AccessRequestRow.student_id == student_id)
            .where(AccessRequestRow.course_id == course_id)
            .where(AccessRequestRow.status == "pending")
        )
        result = await self._session.execute(stmt)
        return result.rowcount


def _row_to_request(row: AccessRequestRow) -> AccessRequest:
    return AccessRequest(
        id=row.id,
        student_id=row.student_id,
        course_id=row.course_id,
        status=row.status,
        reason=row.reason or "",
        requested_at=row.requested_at,
        reviewed_at=row.reviewed_at,
        reviewed_by=row.reviewed_by,
    )
