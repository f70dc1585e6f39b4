"""Per-resource critical sections for booking writes.

Creating or moving an appointment reads the resource's schedule and then
writes to it. Both steps run while holding a lock keyed by
``(resource_type, resource_id)`` for every resource the booking touches, so
two requests for the same professional or room cannot both pass the
conflict check.
"""

import asyncio
import weakref
from collections.abc import AsyncIterator, Iterable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from functools import lru_cache
from typing import Protocol
from uuid import UUID

import structlog
from redis import asyncio as aioredis

from practice_scheduler.config import settings
from practice_scheduler.core.exceptions import ResourceBusyException
from practice_scheduler.core.redis_client import get_redis_client

logger = structlog.get_logger()

ResourceKey = tuple[str, UUID]


def _ordered(keys: Iterable[ResourceKey]) -> list[ResourceKey]:
    # A single global order prevents deadlock between multi-key holders.
    return sorted(set(keys), key=lambda key: (key[0], str(key[1])))


class ResourceLockManager(Protocol):
    """Something that can hold a set of resource locks."""

    def hold(self, keys: Iterable[ResourceKey]) -> AbstractAsyncContextManager[None]:
        """Async context manager holding every lock in *keys*."""
        ...


class InMemoryLockManager:
    """Per-process locks, one ``asyncio.Lock`` per resource key."""

    def __init__(self, timeout: float = 5.0):
        """Initialize with the maximum wait for each lock in seconds."""
        self.timeout = timeout
        self._locks: weakref.WeakValueDictionary[ResourceKey, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, key: ResourceKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, keys: Iterable[ResourceKey]) -> AsyncIterator[None]:
        """
        Acquire all locks for *keys* in a fixed order.

        Raises:
            ResourceBusyException: If a lock is not acquired within the timeout
        """
        acquired: list[asyncio.Lock] = []
        try:
            for key in _ordered(keys):
                lock = self._lock_for(key)
                try:
                    await asyncio.wait_for(lock.acquire(), timeout=self.timeout)
                except asyncio.TimeoutError:
                    logger.warning("resource_lock_timeout", resource_type=key[0], resource_id=str(key[1]))
                    raise ResourceBusyException()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


class RedisLockManager:
    """Cross-process locks backed by Redis, for multi-worker deployments."""

    def __init__(
        self,
        redis_client: aioredis.Redis,
        timeout: float = 5.0,
        lease: float = 30.0,
        prefix: str = "schedule-lock",
    ):
        """
        Initialize lock manager.

        Args:
            redis_client: Async Redis client
            timeout: Maximum wait for each lock in seconds
            lease: Lock expiry, so a crashed holder cannot block forever
            prefix: Key namespace
        """
        self.redis = redis_client
        self.timeout = timeout
        self.lease = lease
        self.prefix = prefix

    def _name(self, key: ResourceKey) -> str:
        return f"{self.prefix}:{key[0]}:{key[1]}"

    @asynccontextmanager
    async def hold(self, keys: Iterable[ResourceKey]) -> AsyncIterator[None]:
        """
        Acquire all Redis locks for *keys* in a fixed order.

        Raises:
            ResourceBusyException: If a lock is not acquired within the timeout
        """
        acquired = []
        try:
            for key in _ordered(keys):
                lock = self.redis.lock(
                    self._name(key),
                    timeout=self.lease,
                    blocking_timeout=self.timeout,
                )
                if not await lock.acquire():
                    logger.warning("resource_lock_timeout", resource_type=key[0], resource_id=str(key[1]))
                    raise ResourceBusyException()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                await lock.release()


@lru_cache
def get_lock_manager() -> ResourceLockManager:
    """Get the process-wide lock manager selected by LOCK_BACKEND."""
    if settings.lock_backend == "redis":
        return RedisLockManager(
            get_redis_client(),
            timeout=settings.lock_timeout_seconds,
            lease=settings.lock_lease_seconds,
        )
    return InMemoryLockManager(timeout=settings.lock_timeout_seconds)
