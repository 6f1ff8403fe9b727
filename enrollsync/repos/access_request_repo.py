from __future__ import annotations

from dataclasses import replace
from typing import Protocol

from enrollsync.models.access_request import AccessRequest


class AccessRequestRepo(Protocol):
    async def get(self, request_id: int, *, for_update: bool = False) -> AccessRequest | None: ...
    async def find_pending(self, student_id: int, course_id: int) -> AccessRequest | None: ...
    async def list_for_student(self, student_id: int) -> list[AccessRequest]: ...
    async def create(
        self, *, student_id: int, course_id: int, reason: str, requested_at: int
    ) -> AccessRequest: ...
    async def resolve(
        self, request_id: int, *, status: str, reviewed_by: int, reviewed_at: int
    ) -> AccessRequest | None: ...
    async def delete_pending(self, student_id: int, course_id: int) -> int: ...


class InMemoryAccessRequestRepo:
    def __init__(self) -> None:
        self._by_id: dict[int, AccessRequest] = {}
        self._next_id = 1

    async def get(self, request_id: int, *, for_update: bool = False) -> AccessRequest | None:
        return self._by_id.get(request_id)

    async def find_pending(self, student_id: int, course_id: int) -> AccessRequest | None:
        for req in self._by_id.values():
            if req.student_id == student_id and req.course_id == course_id and req.is_pending:
                return req
        return None

    async def list_for_student(self, student_id: int) -> list[AccessRequest]:
        return [req for _, req in sorted(self._by_id.items()) if req.student_id == student_id]

    async def create(
        self, *, student_id: int, course_id: int, reason: str, requested_at: int
    ) -> AccessRequest:
        req = AccessRequest(
            id=self._next_id,
            student_id=student_id,
            course_id=course_id,
            status="pending",
            reason=reason,
            requested_at=requested_at,
        )
        self._by_id[req.id] = req
        self._next_id += 1
        return req

    async def resolve(
        self, request_id: int, *, status: str, reviewed_by: int, reviewed_at: int
    ) -> AccessRequest | None:
        req = self._by_id.get(request_id)
        if req is None:
            return None
        updated = replace(req, status=status, reviewed_by=reviewed_by, reviewed_at=reviewed_at)
        self._by_id[request_id] = updated
        return updated

    async def delete_pending(self, student_id: int, course_id: int) -> int:
        doomed = [
            rid
            for rid, req in self._by_id.items()
            if req.student_id == student_id and req.course_id == course_id and req.is_pending
        ]
        for rid in doomed:
            del self._by_id[rid]
        return len(doomed)

    def all(self) -> list[AccessRequest]:
        return list(self._by_id.values())

    def snapshot(self) -> tuple[dict, int]:
        return dict(self._by_id), self._next_id

    def restore(self, state: tuple[dict, int]) -> None:
        by_id, next_id = state
        self._by_id = dict(by_id)
        self._next_id = next_id
