from __future__ import annotations

import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from enrollsync.core.errors import InfrastructureError
from enrollsync.services.idempotency import (
    IdempotencyStore,
    InMemoryIdempotencyStore,
    PgIdempotencyStore,
    execute_with_idempotency,
    generate_key,
)
from tests.conftest import FakeClock

# ---------------------------------------------------------------------------
# generate_key
# ---------------------------------------------------------------------------


def test_key_is_independent_of_parameter_order() -> None:
    a = generate_key("enroll_student", {"user_id": 42, "course_id": 7})
    b = generate_key("enroll_student", {"course_id": 7, "user_id": 42})
    assert a == b


def test_key_distinguishes_value_types() -> None:
    assert generate_key("enroll_student", {"user_id": 42}) != generate_key(
        "enroll_student", {"user_id": "42"}
    )


def test_key_distinguishes_operations() -> None:
    params = {"user_id": 42, "course_id": 7}
    assert generate_key("enroll_student", params) != generate_key("unenroll_student", params)


def test_key_is_hex_sha256() -> None:
    key = generate_key("enroll_student", {"user_id": 42})
    assert len(key) == 64
    int(key, 16)


def test_in_memory_store_satisfies_protocol() -> None:
    assert isinstance(InMemoryIdempotencyStore(), IdempotencyStore)


# ---------------------------------------------------------------------------
# execute_with_idempotency
# ---------------------------------------------------------------------------


def test_executor_runs_once_per_fingerprint(clock: FakeClock) -> None:
    store = InMemoryIdempotencyStore(clock=clock)
    calls: list[int] = []

    async def executor() -> dict:
        calls.append(1)
        return {"enrolled": True, "attempt": len(calls)}

    async def scenario() -> None:
        params = {"user_id": 42, "course_id": 7}
        first, dup1 = await execute_with_idempotency(store, "enroll_student", params, executor)
        second, dup2 = await execute_with_idempotency(store, "enroll_student", params, executor)
        assert (dup1, dup2) == (False, True)
        assert first == second == {"enrolled": True, "attempt": 1}

    asyncio.run(scenario())
    assert len(calls) == 1


def test_executor_failure_stores_nothing(clock: FakeClock) -> None:
    store = InMemoryIdempotencyStore(clock=clock)

    async def executor() -> dict:
        raise RuntimeError("boom")

    async def scenario() -> None:
        with pytest.raises(RuntimeError):
            await execute_with_idempotency(store, "enroll_student", {"user_id": 42}, executor)

    asyncio.run(scenario())
    assert len(store) == 0


# ---------------------------------------------------------------------------
# InMemoryIdempotencyStore
# ---------------------------------------------------------------------------


def test_check_misses_after_ttl(clock: FakeClock) -> None:
    store = InMemoryIdempotencyStore(clock=clock)

    async def scenario() -> None:
        await store.store("k1", "enroll_student", {"ok": True}, ttl_hours=1)
        assert (await store.check("k1", "enroll_student")).is_duplicate is True
        clock.advance(3_599)
        assert (await store.check("k1", "enroll_student")).is_duplicate is True
        clock.advance(1)
        assert (await store.check("k1", "enroll_student")).is_duplicate is False

    asyncio.run(scenario())


def test_check_is_scoped_to_operation(clock: FakeClock) -> None:
    store = InMemoryIdempotencyStore(clock=clock)

    async def scenario() -> None:
        await store.store("k1", "enroll_student", {"ok": True})
        assert (await store.check("k1", "unenroll_student")).is_duplicate is False

    asyncio.run(scenario())


def test_store_returns_a_copy_not_the_original(clock: FakeClock) -> None:
    store = InMemoryIdempotencyStore(clock=clock)
    result = {"enrollment": {"progress": 10}}

    async def scenario() -> None:
        await store.store("k1", "update_progress", result)
        result["enrollment"]["progress"] = 99
        check = await store.check("k1", "update_progress")
        assert check.existing_result == {"enrollment": {"progress": 10}}

    asyncio.run(scenario())


def test_invalidate_removes_record(clock: FakeClock) -> None:
    store = InMemoryIdempotencyStore(clock=clock)

    async def scenario() -> None:
        await store.store("k1", "enroll_student", {"ok": True})
        await store.invalidate("k1")
        await store.invalidate("never-stored")
        assert (await store.check("k1", "enroll_student")).is_duplicate is False

    asyncio.run(scenario())


def test_purge_expired_counts_only_expired(clock: FakeClock) -> None:
    store = InMemoryIdempotencyStore(clock=clock)

    async def scenario() -> int:
        await store.store("short", "enroll_student", {}, ttl_hours=1)
        await store.store("long", "enroll_student", {}, ttl_hours=48)
        clock.advance(2 * 3600)
        return await store.purge_expired()

    assert asyncio.run(scenario()) == 1
    assert len(store) == 1


# ---------------------------------------------------------------------------
# PgIdempotencyStore failure policy
# ---------------------------------------------------------------------------


def _unreachable_session_factory():
    raise OperationalError("SELECT 1", {}, ConnectionRefusedError("connection refused"))


def test_pg_store_fail_open_treats_check_as_miss(clock: FakeClock) -> None:
    store = PgIdempotencyStore(
        _unreachable_session_factory,  # type: ignore[arg-type]
        failure_policy="open",
        clock=clock,
    )

    async def scenario() -> None:
        check = await store.check("k1", "enroll_student")
        assert check.is_duplicate is False
        await store.store("k1", "enroll_student", {"ok": True})
        await store.invalidate("k1")

    asyncio.run(scenario())


def test_pg_store_fail_closed_raises(clock: FakeClock) -> None:
    store = PgIdempotencyStore(
        _unreachable_session_factory,  # type: ignore[arg-type]
        failure_policy="closed",
        clock=clock,
    )

    async def scenario() -> None:
        with pytest.raises(InfrastructureError):
            await store.check("k1", "enroll_student")
        with pytest.raises(InfrastructureError):
            await store.store("k1", "enroll_student", {"ok": True})

    asyncio.run(scenario())


def test_pg_purge_raises_regardless_of_policy(clock: FakeClock) -> None:
    store = PgIdempotencyStore(
        _unreachable_session_factory,  # type: ignore[arg-type]
        failure_policy="open",
        clock=clock,
    )

    async def scenario() -> None:
        with pytest.raises(InfrastructureError):
            await store.purge_expired()

    asyncio.run(scenario())
