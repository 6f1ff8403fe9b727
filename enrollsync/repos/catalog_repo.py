"""Read-only access to users, courses and course chapters.

These tables belong to the surrounding platform.  The in-memory versions
expose synchronous add()/add_chapter() so tests and local runs can seed
them.
"""

from __future__ import annotations

from typing import Protocol

from enrollsync.models.course import Course
from enrollsync.models.user import User


class UserRepo(Protocol):
    async def get_by_id(self, user_id: int) -> User | None: ...


class CourseRepo(Protocol):
    async def get_by_id(self, course_id: int) -> Course | None: ...
    async def chapter_ids(self, course_id: int) -> list[int]: ...


class InMemoryUserRepo:
    def __init__(self) -> None:
        self._by_id: dict[int, User] = {}

    def add(self, user: User) -> None:
        self._by_id[user.id] = user

    async def get_by_id(self, user_id: int) -> User | None:
        return self._by_id.get(user_id)


class InMemoryCourseRepo:
    def __init__(self) -> None:
        self._by_id: dict[int, Course] = {}
        self._chapters: dict[int, list[int]] = {}

    def add(self, course: Course) -> None:
        self._by_id[course.id] = course

    def add_chapter(self, course_id: int, chapter_id: int) -> None:
        self._chapters.setdefault(course_id, []).append(chapter_id)

    async def get_by_id(self, course_id: int) -> Course | None:
        return self._by_id.get(course_id)

    async def chapter_ids(self, course_id: int) -> list[int]:
        return sorted(self._chapters.get(course_id, []))
