from __future__ import annotations

from typing import Protocol

from enrollsync.models.enrollment import Enrollment


class EnrollmentRepo(Protocol):
    async def get(
        self, user_id: int, course_id: int, *, for_update: bool = False
    ) -> Enrollment | None: ...
    async def save(self, enrollment: Enrollment) -> None: ...
    async def list_for_user(self, user_id: int) -> list[Enrollment]: ...


class InMemoryEnrollmentRepo:
    def __init__(self) -> None:
        self._by_pair: dict[tuple[int, int], Enrollment] = {}

    async def get(
        self, user_id: int, course_id: int, *, for_update: bool = False
    ) -> Enrollment | None:
        return self._by_pair.get((user_id, course_id))

    async def save(self, enrollment: Enrollment) -> None:
        # Upsert on (user_id, course_id), like the unique constraint in PG.
        self._by_pair[(enrollment.user_id, enrollment.course_id)] = enrollment

    async def list_for_user(self, user_id: int) -> list[Enrollment]:
        return sorted(
            (e for (uid, _), e in self._by_pair.items() if uid == user_id),
            key=lambda e: e.course_id,
        )

    def all(self) -> list[Enrollment]:
        return list(self._by_pair.values())

    def snapshot(self) -> dict:
        return dict(self._by_pair)

    def restore(self, state: dict) -> None:
        self._by_pair = dict(state)
