"""Per-key mutual exclusion.

Used to serialize the writers of a single video against its deletion and the
manifest read-modify-write cycle. Keys are independent: holding the lock for
one video never blocks work on another.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import redis.asyncio as redis
from redis.exceptions import LockError, LockNotOwnedError

from vodforge.core.errors import ConflictError
from vodforge.core.logging import log_error, log_warning

logger = logging.getLogger(__name__)


class KeyedLockBase(ABC):
    """Interface for a lock keyed by an arbitrary string."""

    @abstractmethod
    def hold(self, key: str):
        """Return an async context manager holding the lock for ``key``."""


class KeyedLock(KeyedLockBase):
    """In-process asyncio lock per key with reference-counted cleanup."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def active_keys(self) -> list[str]:
        return list(self._locks)


class RedisKeyedLock(KeyedLockBase):
    """Redis-backed lock per key, shared by every orchestrator process.

    The lease is ``timeout`` seconds and is renewed every third of it while
    the holder is alive, so long assemblies and deletions keep ownership. A
    crashed holder loses the key once its last lease runs out.
    """

    def __init__(
        self,
        client: redis.Redis,
        prefix: str = "vodforge:lock:",
        timeout: float = 120.0,
        blocking_timeout: Optional[float] = None,
    ):
        self.client = client
        self.prefix = prefix
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        name = f"{self.prefix}{key}"
        lock = self.client.lock(
            name,
            timeout=self.timeout,
            blocking_timeout=self.blocking_timeout,
        )
        if not await lock.acquire():
            raise ConflictError("Timed out waiting for lock", key=key)

        heartbeat = asyncio.create_task(self._renew(lock, name), name=f"lock-renew:{name}")
        try:
            yield
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)
            try:
                await lock.release()
            except LockNotOwnedError:
                log_warning(logger, "Lock lease expired before release", key=name)

    async def _renew(self, lock, name: str) -> None:
        interval = self.timeout / 3
        while True:
            await asyncio.sleep(interval)
            try:
                await lock.reacquire()
            except LockError as e:
                log_error(logger, "Lost lock lease", key=name, error=str(e))
                return


def create_keyed_lock(redis_url: Optional[str], timeout: float = 120.0) -> KeyedLockBase:
    """Pick the Redis lock when Redis is configured, else the in-process one."""
    if redis_url:
        client = redis.from_url(redis_url, decode_responses=True)
        return RedisKeyedLock(client, timeout=timeout)
    return KeyedLock()
