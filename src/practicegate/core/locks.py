"""Per-key mutual exclusion.

Locks serialize work scoped to one user (or one user and action) so that
independent users never contend. ``LocalKeyedLock`` covers a single
process; ``RedisKeyedLock`` extends the same domain across processes.
Storage-level compare-and-set remains the source of truth; these locks
keep external side effects, such as provider customer creation, from
running twice.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager

from redis.asyncio import Redis
from redis.exceptions import LockError

from practicegate.core.exceptions import ConflictError
from practicegate.core.logging import LoggerMixin


class KeyedLock(ABC):
    """Async lock factory keyed by string."""

    @abstractmethod
    def hold(self, key: str) -> AbstractAsyncContextManager[None]:
        """Async context manager holding the lock for ``key``."""


class LocalKeyedLock(KeyedLock, LoggerMixin):
    """In-process keyed lock built on ``asyncio.Lock``.

    Entries are reference counted and dropped when no task holds or waits
    on them, so the map stays bounded by the number of active keys.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    @property
    def active_keys(self) -> int:
        """Number of keys currently held or awaited."""
        return len(self._locks)


class RedisKeyedLock(KeyedLock, LoggerMixin):
    """Distributed keyed lock using redis-py's ``Lock``."""

    def __init__(
        self,
        redis: Redis,
        *,
        timeout: float = 10.0,
        blocking_timeout: float = 10.0,
        prefix: str = "lock:",
    ) -> None:
        """Initialize the lock factory.

        Args:
            redis: Redis client.
            timeout: Lock expiry, so a crashed holder cannot wedge a key.
            blocking_timeout: Maximum wait to acquire before giving up.
            prefix: Key namespace.
        """
        self.redis = redis
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout
        self.prefix = prefix

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self.redis.lock(
            f"{self.prefix}{key}",
            timeout=self.timeout,
            blocking_timeout=self.blocking_timeout,
        )
        acquired = await lock.acquire()
        if not acquired:
            self.logger.warning("lock_acquire_timeout", key=key)
            raise ConflictError(
                "Another request for this account is in progress",
                details={"lock": key},
            )
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                # Expired while held; the next holder already owns the key
                self.logger.warning("lock_expired_before_release", key=key)
