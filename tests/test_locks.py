"""Tests for per-resource locking."""

import asyncio
from unittest.mock import AsyncMock, MagicMock
from uuid import UUID, uuid4

import pytest

from practice_scheduler.core.exceptions import ResourceBusyException
from practice_scheduler.core.locks import InMemoryLockManager, RedisLockManager

PROFESSIONAL = ("professional", UUID("11111111-1111-4111-8111-111111111111"))
ROOM = ("room", UUID("22222222-2222-4222-8222-222222222222"))


@pytest.mark.asyncio
async def test_same_key_is_serialized():
    manager = InMemoryLockManager(timeout=1.0)
    order = []

    async def worker(name: str) -> None:
        async with manager.hold([PROFESSIONAL]):
            order.append(f"{name}-in")
            await asyncio.sleep(0.01)
            order.append(f"{name}-out")

    await asyncio.gather(worker("a"), worker("b"))

    assert order == ["a-in", "a-out", "b-in", "b-out"]


@pytest.mark.asyncio
async def test_different_keys_do_not_block():
    manager = InMemoryLockManager(timeout=0.05)

    async with manager.hold([PROFESSIONAL]):
        async with manager.hold([ROOM]):
            pass


@pytest.mark.asyncio
async def test_timeout_raises_resource_busy():
    manager = InMemoryLockManager(timeout=0.05)

    async with manager.hold([PROFESSIONAL, ROOM]):
        with pytest.raises(ResourceBusyException):
            async with manager.hold([ROOM]):
                pass

    # Everything was released, including after the failed attempt
    async with manager.hold([PROFESSIONAL, ROOM]):
        pass


@pytest.mark.asyncio
async def test_opposite_key_order_does_not_deadlock():
    manager = InMemoryLockManager(timeout=1.0)

    async def worker(keys) -> None:
        for _ in range(5):
            async with manager.hold(keys):
                await asyncio.sleep(0)

    await asyncio.wait_for(
        asyncio.gather(worker([PROFESSIONAL, ROOM]), worker([ROOM, PROFESSIONAL])),
        timeout=2.0,
    )


def make_redis(acquire_results):
    locks = []

    def lock(name, timeout, blocking_timeout):
        mock_lock = MagicMock()
        mock_lock.name = name
        mock_lock.acquire = AsyncMock(return_value=acquire_results[len(locks)])
        mock_lock.release = AsyncMock()
        locks.append(mock_lock)
        return mock_lock

    redis = MagicMock()
    redis.lock.side_effect = lock
    return redis, locks


@pytest.mark.asyncio
async def test_redis_locks_acquired_in_order_and_released():
    redis, locks = make_redis([True, True])
    manager = RedisLockManager(redis, timeout=1.0, lease=10.0)

    async with manager.hold([ROOM, PROFESSIONAL]):
        assert all(lock.release.await_count == 0 for lock in locks)

    assert [lock.name for lock in locks] == [
        f"schedule-lock:professional:{PROFESSIONAL[1]}",
        f"schedule-lock:room:{ROOM[1]}",
    ]
    redis.lock.assert_any_call(locks[0].name, timeout=10.0, blocking_timeout=1.0)
    for lock in locks:
        lock.release.assert_awaited_once()


@pytest.mark.asyncio
async def test_redis_lock_timeout_releases_acquired_locks():
    redis, locks = make_redis([True, False])
    manager = RedisLockManager(redis, timeout=0.1)

    with pytest.raises(ResourceBusyException):
        async with manager.hold([PROFESSIONAL, ROOM]):
            pytest.fail("body must not run without every lock")

    locks[0].release.assert_awaited_once()
    locks[1].release.assert_not_awaited()


@pytest.mark.asyncio
async def test_duplicate_keys_are_locked_once():
    redis, locks = make_redis([True])
    manager = RedisLockManager(redis)
    key = ("patient", uuid4())

    async with manager.hold([key, key]):
        pass

    assert len(locks) == 1
