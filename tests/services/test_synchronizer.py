from __future__ import annotations

import asyncio

import pytest

from enrollsync.core.errors import TransactionError, ValidationError
from enrollsync.models.enrollment import Enrollment, LegacyProgressRecord
from enrollsync.models.events import EventType
from enrollsync.repos.enrollment_repo import InMemoryEnrollmentRepo
from enrollsync.repos.unit_of_work import InMemoryStore
from enrollsync.services.synchronizer import EnrollmentSynchronizer, NullLegacyMirror
from tests.conftest import T0, FakeClock


@pytest.fixture
def sync(clock: FakeClock) -> EnrollmentSynchronizer:
    return EnrollmentSynchronizer(clock=clock)


def _in_tx(store: InMemoryStore, fn, *args, **kwargs):
    async def run():
        async with store.transaction() as uow:
            return await fn(uow, *args, **kwargs)

    return asyncio.run(run())


def _canonical(store: InMemoryStore, user_id: int, course_id: int) -> Enrollment | None:
    return asyncio.run(store.enrollments.get(user_id, course_id))


def _legacy(store: InMemoryStore, user_id: int, course_id: int) -> LegacyProgressRecord | None:
    return asyncio.run(store.legacy_progress.get(user_id, course_id))


# ---------------------------------------------------------------------------
# enroll / unenroll
# ---------------------------------------------------------------------------


def test_enroll_writes_both_tables(store: InMemoryStore, sync: EnrollmentSynchronizer) -> None:
    outcome = _in_tx(store, sync.enroll, 42, 7, actor=42)

    enrollment = _canonical(store, 42, 7)
    legacy = _legacy(store, 42, 7)
    assert enrollment is not None and enrollment.is_active
    assert enrollment.enrolled_at == T0
    assert legacy is not None and legacy.total_progress == 0
    assert outcome.data["reactivated"] is False
    assert [e.type for e in outcome.events] == [EventType.ENROLLMENT_CREATED]
    assert outcome.events[0].entity_id == "42:7"


def test_enroll_carries_over_legacy_progress(store: InMemoryStore, sync: EnrollmentSynchronizer) -> None:
    store.legacy_progress.add(
        LegacyProgressRecord(
            student_id=42, course_id=7, total_progress=35, completed_chapters="[1,2]", last_accessed=T0 - 50
        )
    )
    _in_tx(store, sync.enroll, 42, 7)

    assert _canonical(store, 42, 7).progress == 35
    legacy = _legacy(store, 42, 7)
    assert legacy.completed_chapters == "[1,2]"
    assert legacy.last_accessed == T0


def test_enroll_reactivation_without_legacy_row_starts_at_zero(
    store: InMemoryStore, sync: EnrollmentSynchronizer, clock: FakeClock
) -> None:
    asyncio.run(
        store.enrollments.save(
            Enrollment(
                user_id=42,
                course_id=7,
                status="cancelled",
                progress=80,
                enrolled_at=T0 - 1000,
                updated_at=T0 - 500,
                completed_at=None,
            )
        )
    )
    clock.advance(10)
    outcome = _in_tx(store, sync.enroll, 42, 7)

    enrollment = _canonical(store, 42, 7)
    assert enrollment.status == "active"
    assert enrollment.progress == 0
    assert enrollment.enrolled_at == T0 + 10
    assert outcome.data["reactivated"] is True


def test_enroll_reactivation_carries_over_legacy_progress(
    store: InMemoryStore, sync: EnrollmentSynchronizer
) -> None:
    asyncio.run(
        store.enrollments.save(
            Enrollment(
                user_id=42,
                course_id=7,
                status="cancelled",
                progress=80,
                enrolled_at=T0 - 1000,
                updated_at=T0 - 500,
            )
        )
    )
    store.legacy_progress.add(
        LegacyProgressRecord(student_id=42, course_id=7, total_progress=35, last_accessed=T0 - 50)
    )
    outcome = _in_tx(store, sync.enroll, 42, 7)

    # same rule as a fresh enrollment: start from the legacy row
    assert _canonical(store, 42, 7).progress == 35
    assert outcome.data["reactivated"] is True
    assert outcome.events[0].metadata["progress"] == 35


def test_enroll_removes_pending_requests(store: InMemoryStore, sync: EnrollmentSynchronizer) -> None:
    asyncio.run(store.access_requests.create(student_id=42, course_id=7, reason="", requested_at=T0))
    outcome = _in_tx(store, sync.enroll, 42, 7)
    assert outcome.data["pending_requests_removed"] == 1
    assert store.access_requests.all() == []


def test_enroll_twice_raises_already_enrolled(store: InMemoryStore, sync: EnrollmentSynchronizer) -> None:
    _in_tx(store, sync.enroll, 42, 7)
    with pytest.raises(ValidationError) as exc_info:
        _in_tx(store, sync.enroll, 42, 7)
    assert exc_info.value.code == "ALREADY_ENROLLED"


def test_unenroll_cancels_and_deletes_legacy(store: InMemoryStore, sync: EnrollmentSynchronizer) -> None:
    _in_tx(store, sync.enroll, 42, 7)
    outcome = _in_tx(store, sync.unenroll, 42, 7, actor=99)

    assert _canonical(store, 42, 7).status == "cancelled"
    assert _legacy(store, 42, 7) is None
    assert outcome.data == {"user_id": 42, "course_id": 7, "status": "cancelled", "legacy_removed": True}
    assert outcome.events[0].type == EventType.ENROLLMENT_REMOVED
    assert outcome.events[0].actor == 99


def test_unenroll_without_enrollment_raises(store: InMemoryStore, sync: EnrollmentSynchronizer) -> None:
    with pytest.raises(ValidationError) as exc_info:
        _in_tx(store, sync.unenroll, 42, 7)
    assert exc_info.value.code == "NOT_ENROLLED"


# ---------------------------------------------------------------------------
# update_progress
# ---------------------------------------------------------------------------


def test_progress_never_decreases(store: InMemoryStore, sync: EnrollmentSynchronizer) -> None:
    _in_tx(store, sync.enroll, 42, 7)
    _in_tx(store, sync.update_progress, 42, 7, 40, T0 + 10)
    outcome = _in_tx(store, sync.update_progress, 42, 7, 30, T0 + 5)

    enrollment = _canonical(store, 42, 7)
    assert enrollment.progress == 40
    assert enrollment.updated_at == T0 + 10
    assert _legacy(store, 42, 7).total_progress == 40
    assert outcome.data["previous_progress"] == 40
    assert outcome.data["requested_progress"] == 30
    assert outcome.events[0].type == EventType.PROGRESS_UPDATED


def test_progress_is_clamped_and_completion_recorded(
    store: InMemoryStore, sync: EnrollmentSynchronizer
) -> None:
    _in_tx(store, sync.enroll, 42, 7)
    _in_tx(store, sync.update_progress, 42, 7, 150, T0 + 20)
    enrollment = _canonical(store, 42, 7)
    assert enrollment.progress == 100
    assert enrollment.completed_at == T0 + 20

    _in_tx(store, sync.update_progress, 42, 7, 100, T0 + 30)
    assert _canonical(store, 42, 7).completed_at == T0 + 20


def test_progress_merges_higher_legacy_value(store: InMemoryStore, sync: EnrollmentSynchronizer) -> None:
    _in_tx(store, sync.enroll, 42, 7)
    asyncio.run(
        store.legacy_progress.save(
            LegacyProgressRecord(student_id=42, course_id=7, total_progress=60, last_accessed=T0)
        )
    )
    _in_tx(store, sync.update_progress, 42, 7, 10, T0 + 1)
    assert _canonical(store, 42, 7).progress == 60


# ---------------------------------------------------------------------------
# Access requests
# ---------------------------------------------------------------------------


def test_approve_enrolls_and_resolves(store: InMemoryStore, sync: EnrollmentSynchronizer) -> None:
    request = asyncio.run(
        store.access_requests.create(student_id=42, course_id=7, reason="cohort", requested_at=T0)
    )
    outcome = _in_tx(store, sync.approve_request, request.id, 99)

    assert outcome.data["request"]["status"] == "approved"
    assert outcome.data["request"]["reviewed_by"] == 99
    assert outcome.data["already_enrolled"] is False
    assert _canonical(store, 42, 7).is_active
    assert [e.type for e in outcome.events] == [EventType.REQUEST_APPROVED, EventType.ENROLLMENT_CREATED]


def test_approve_when_already_enrolled_does_not_reenroll(
    store: InMemoryStore, sync: EnrollmentSynchronizer
) -> None:
    _in_tx(store, sync.enroll, 42, 7)
    request = asyncio.run(
        store.access_requests.create(student_id=42, course_id=7, reason="", requested_at=T0)
    )
    outcome = _in_tx(store, sync.approve_request, request.id, 99)
    assert outcome.data["already_enrolled"] is True
    assert [e.type for e in outcome.events] == [EventType.REQUEST_APPROVED]


def test_approve_resolved_request_raises(store: InMemoryStore, sync: EnrollmentSynchronizer) -> None:
    request = asyncio.run(
        store.access_requests.create(student_id=42, course_id=7, reason="", requested_at=T0)
    )
    _in_tx(store, sync.reject_request, request.id, 99)
    with pytest.raises(ValidationError) as exc_info:
        _in_tx(store, sync.approve_request, request.id, 99)
    assert exc_info.value.code == "REQUEST_NOT_PENDING"
    assert _canonical(store, 42, 7) is None


def test_unverified_approval_rolls_back(store: InMemoryStore, clock: FakeClock) -> None:
    class DroppingMirror:
        """Claims to mirror but never writes, so verification fails."""

        enabled = True

        async def read(self, uow, user_id, course_id, *, for_update=False):
            return None

        async def write(self, uow, enrollment):
            return None

        async def remove(self, uow, user_id, course_id):
            return False

    sync = EnrollmentSynchronizer(mirror=DroppingMirror(), clock=clock)
    request = asyncio.run(
        store.access_requests.create(student_id=42, course_id=7, reason="", requested_at=T0)
    )
    with pytest.raises(TransactionError):
        _in_tx(store, sync.approve_request, request.id, 99)

    assert _canonical(store, 42, 7) is None
    assert asyncio.run(store.access_requests.get(request.id)).status == "pending"


def test_create_request_defaults_actor_to_student(
    store: InMemoryStore, sync: EnrollmentSynchronizer
) -> None:
    outcome = _in_tx(store, sync.create_request, 42, 7, "please")
    assert outcome.data["request"]["status"] == "pending"
    assert outcome.data["request"]["reason"] == "please"
    assert outcome.events[0].actor == 42
    with pytest.raises(ValidationError):
        _in_tx(store, sync.create_request, 42, 7, "again")


# ---------------------------------------------------------------------------
# reconcile / verify
# ---------------------------------------------------------------------------


def test_reconcile_legacy_only_creates_canonical(
    store: InMemoryStore, sync: EnrollmentSynchronizer
) -> None:
    store.legacy_progress.add(LegacyProgressRecord(student_id=42, course_id=7, total_progress=55))
    outcome = _in_tx(store, sync.reconcile, 42, 7)

    assert outcome.data["repairs"] == ["canonical_created"]
    assert _canonical(store, 42, 7).progress == 55
    assert outcome.events[0].type == EventType.ENROLLMENT_RECONCILED


def test_reconcile_cancelled_with_legacy_row_reactivates(
    store: InMemoryStore, sync: EnrollmentSynchronizer
) -> None:
    asyncio.run(
        store.enrollments.save(
            Enrollment(user_id=42, course_id=7, status="cancelled", progress=10, enrolled_at=T0, updated_at=T0)
        )
    )
    store.legacy_progress.add(LegacyProgressRecord(student_id=42, course_id=7, total_progress=70))
    _in_tx(store, sync.reconcile, 42, 7)
    enrollment = _canonical(store, 42, 7)
    assert enrollment.is_active
    assert enrollment.progress == 70


def test_reconcile_canonical_only_creates_legacy(
    store: InMemoryStore, sync: EnrollmentSynchronizer
) -> None:
    _in_tx(store, sync.enroll, 42, 7)
    asyncio.run(store.legacy_progress.delete(42, 7))
    outcome = _in_tx(store, sync.reconcile, 42, 7)
    assert outcome.data["repairs"] == ["legacy_created"]
    assert _legacy(store, 42, 7) is not None


def test_reconcile_aligns_diverged_progress(store: InMemoryStore, sync: EnrollmentSynchronizer) -> None:
    _in_tx(store, sync.enroll, 42, 7)
    _in_tx(store, sync.update_progress, 42, 7, 20, T0)
    store.legacy_progress.add(LegacyProgressRecord(student_id=42, course_id=7, total_progress=45))
    outcome = _in_tx(store, sync.reconcile, 42, 7)
    assert outcome.data["repairs"] == ["progress_aligned"]
    assert _canonical(store, 42, 7).progress == 45
    assert _legacy(store, 42, 7).total_progress == 45


def test_reconcile_consistent_pair_is_noop(store: InMemoryStore, sync: EnrollmentSynchronizer) -> None:
    _in_tx(store, sync.enroll, 42, 7)
    outcome = _in_tx(store, sync.reconcile, 42, 7)
    assert outcome.data["changed"] is False
    assert outcome.events == []


def test_verify(store: InMemoryStore, sync: EnrollmentSynchronizer) -> None:
    assert _in_tx(store, sync.verify, 42, 7) == {
        "in_legacy": False,
        "in_canonical": False,
        "verified": False,
    }
    _in_tx(store, sync.enroll, 42, 7)
    assert _in_tx(store, sync.verify, 42, 7)["verified"] is True


def test_null_mirror_leaves_legacy_table_alone(store: InMemoryStore, clock: FakeClock) -> None:
    sync = EnrollmentSynchronizer(mirror=NullLegacyMirror(), clock=clock)
    _in_tx(store, sync.enroll, 42, 7)
    assert store.legacy_progress.all() == []
    assert _in_tx(store, sync.verify, 42, 7)["verified"] is True


# ---------------------------------------------------------------------------
# chapter and video activity
# ---------------------------------------------------------------------------


def _chapters(store: InMemoryStore, course_id: int, *chapter_ids: int) -> None:
    for chapter_id in chapter_ids:
        store.courses.add_chapter(course_id, chapter_id)


def test_complete_chapter_updates_both_tables(store: InMemoryStore, sync: EnrollmentSynchronizer) -> None:
    _chapters(store, 7, 10, 11, 12, 13)
    _in_tx(store, sync.enroll, 42, 7)
    _in_tx(store, sync.complete_chapter, 42, 7, 10)
    outcome = _in_tx(store, sync.complete_chapter, 42, 7, 12, actor=42)

    assert outcome.data["completed_chapters"] == [10, 12]
    assert outcome.data["enrollment"]["progress"] == 50
    assert _canonical(store, 42, 7).progress == 50
    legacy = _legacy(store, 42, 7)
    assert legacy.completed_chapters == "[10, 12]"
    assert legacy.total_progress == 50
    event = outcome.events[0]
    assert event.type == EventType.CHAPTER_COMPLETED
    assert event.metadata["previous_progress"] == 25
    assert event.metadata["total_chapters"] == 4


def test_last_chapter_completes_enrollment(
    store: InMemoryStore, sync: EnrollmentSynchronizer, clock: FakeClock
) -> None:
    _chapters(store, 7, 1, 2)
    _in_tx(store, sync.enroll, 42, 7)
    _in_tx(store, sync.complete_chapter, 42, 7, 1)
    clock.advance(30)
    _in_tx(store, sync.complete_chapter, 42, 7, 2)

    enrollment = _canonical(store, 42, 7)
    assert enrollment.progress == 100
    assert enrollment.completed_at == T0 + 30


def test_chapter_progress_never_lowers_reported_progress(
    store: InMemoryStore, sync: EnrollmentSynchronizer
) -> None:
    _chapters(store, 7, 1, 2, 3, 4)
    _in_tx(store, sync.enroll, 42, 7)
    _in_tx(store, sync.update_progress, 42, 7, 60, T0)
    outcome = _in_tx(store, sync.complete_chapter, 42, 7, 1)
    assert outcome.data["enrollment"]["progress"] == 60


def test_malformed_legacy_json_is_treated_as_empty(
    store: InMemoryStore, sync: EnrollmentSynchronizer
) -> None:
    _chapters(store, 7, 1, 2)
    store.legacy_progress.add(
        LegacyProgressRecord(
            student_id=42, course_id=7, completed_chapters="not json", watched_videos="{}", last_accessed=T0
        )
    )
    _in_tx(store, sync.enroll, 42, 7)
    outcome = _in_tx(store, sync.update_video_progress, 42, 7, 2, 40)

    assert outcome.data["video_progress"] == 40
    legacy = _legacy(store, 42, 7)
    assert legacy.completed_chapters == "[]"
    assert '"chapterId": 2' in legacy.watched_videos


def test_video_progress_entry_shape(store: InMemoryStore, sync: EnrollmentSynchronizer) -> None:
    _chapters(store, 7, 1)
    _in_tx(store, sync.enroll, 42, 7)
    outcome = _in_tx(store, sync.update_video_progress, 42, 7, 1, 150)

    assert outcome.data["video_progress"] == 100
    assert outcome.data["chapter_completed"] is True
    assert [e.type for e in outcome.events] == [
        EventType.VIDEO_PROGRESS_UPDATED,
        EventType.CHAPTER_COMPLETED,
    ]
    legacy = _legacy(store, 42, 7)
    assert '"progress": 100' in legacy.watched_videos
    assert '"lastWatched": "2025-' in legacy.watched_videos


def test_enrollment_writes_keep_activity_json(store: InMemoryStore, sync: EnrollmentSynchronizer) -> None:
    _chapters(store, 7, 1, 2)
    _in_tx(store, sync.enroll, 42, 7)
    _in_tx(store, sync.complete_chapter, 42, 7, 1)
    _in_tx(store, sync.update_progress, 42, 7, 80, T0 + 5)
    assert _legacy(store, 42, 7).completed_chapters == "[1]"


def test_activity_on_cancelled_enrollment_raises(store: InMemoryStore, sync: EnrollmentSynchronizer) -> None:
    _chapters(store, 7, 1)
    _in_tx(store, sync.enroll, 42, 7)
    _in_tx(store, sync.unenroll, 42, 7)
    with pytest.raises(ValidationError) as exc_info:
        _in_tx(store, sync.complete_chapter, 42, 7, 1)
    assert exc_info.value.code == "NOT_ENROLLED"


# ---------------------------------------------------------------------------
# student state and cleanups
# ---------------------------------------------------------------------------


def test_student_state_flags_half_synced_pairs(store: InMemoryStore, sync: EnrollmentSynchronizer) -> None:
    _in_tx(store, sync.enroll, 42, 7)
    store.legacy_progress.add(LegacyProgressRecord(student_id=42, course_id=3, total_progress=15))

    state = _in_tx(store, sync.student_state, 42)

    assert state["student_id"] == 42
    by_course = {c["course_id"]: c for c in state["courses"]}
    assert by_course[7]["consistent"] is True
    assert by_course[3] == {
        "course_id": 3,
        "is_enrolled": True,
        "in_canonical": False,
        "in_legacy": True,
        "status": None,
        "has_pending_request": False,
        "has_approved_request": False,
        "progress": 15,
        "consistent": False,
    }


def test_cleanup_keeps_requests_of_unenrolled_courses(
    store: InMemoryStore, sync: EnrollmentSynchronizer
) -> None:
    asyncio.run(store.access_requests.create(student_id=42, course_id=7, reason="", requested_at=T0))
    store.legacy_progress.add(LegacyProgressRecord(student_id=42, course_id=3))
    asyncio.run(store.access_requests.create(student_id=42, course_id=3, reason="", requested_at=T0))

    outcome = _in_tx(store, sync.cleanup_pending_requests, 42, [3, 7])

    assert outcome.data["cleaned"] == [{"course_id": 3, "removed": 1}]
    assert [r.course_id for r in store.access_requests.all()] == [7]
    assert [e.type for e in outcome.events] == [EventType.REQUESTS_CLEANED]


def test_remove_orphaned_legacy_without_orphans_emits_nothing(
    store: InMemoryStore, sync: EnrollmentSynchronizer
) -> None:
    _in_tx(store, sync.enroll, 42, 7)
    outcome = _in_tx(store, sync.remove_orphaned_legacy)
    assert outcome.data == {
        "deleted_count": 0,
        "orphaned_entries": [],
        "unpublished_progress_count": 0,
    }
    assert outcome.events == []


class _RecordingEnrollmentRepo(InMemoryEnrollmentRepo):
    def __init__(self) -> None:
        super().__init__()
        self.locked_reads: list[bool] = []

    async def get(self, user_id: int, course_id: int, *, for_update: bool = False) -> Enrollment | None:
        self.locked_reads.append(for_update)
        return await super().get(user_id, course_id, for_update=for_update)


def test_writes_lock_rows_and_reads_do_not(store: InMemoryStore, sync: EnrollmentSynchronizer) -> None:
    repo = _RecordingEnrollmentRepo()
    store.enrollments = repo

    _in_tx(store, sync.enroll, 42, 7)
    assert repo.locked_reads and all(repo.locked_reads)

    repo.locked_reads.clear()
    _in_tx(store, sync.verify, 42, 7)
    _in_tx(store, sync.student_state, 42)
    assert repo.locked_reads == [False]
