"""
LockManager implementations.

* ``RedisLockManager``: redis.asyncio lock, safe across worker processes.
* ``LocalLockManager``: asyncio.Lock per key, for a single process and tests.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from redis import asyncio as aioredis
from redis.exceptions import LockError, RedisError

from application.ports.locks import LockAcquisitionError
from core.logging_config import get_logger


logger = get_logger(__name__)


class RedisLockManager:
    def __init__(
        self,
        client: aioredis.Redis,
        *,
        namespace: str = "payment-engine",
        timeout: float = 300,
        blocking_timeout: float = 0.5,
    ) -> None:
        self._client = client
        self._namespace = namespace
        self._timeout = timeout
        self._blocking_timeout = blocking_timeout

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisLockManager":
        return cls(aioredis.from_url(url, decode_responses=True), **kwargs)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock_key = f"{self._namespace}:lock:{key}"
        lock = self._client.lock(lock_key, timeout=self._timeout, blocking_timeout=self._blocking_timeout)
        acquired = await lock.acquire()
        if not acquired:
            raise LockAcquisitionError(key)
        try:
            yield
        finally:
            try:
                await lock.release()
            except (LockError, RedisError) as e:
                # 锁已过期被其他 worker 接管时 release 会失败
                logger.error("lock_release_failed", key=lock_key, error=str(e))

    async def aclose(self) -> None:
        await self._client.aclose()


class LocalLockManager:
    def __init__(self, *, blocking_timeout: Optional[float] = 0.5) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        # 持有或等待该锁的任务数，归零时删除条目
        self._users: Dict[str, int] = {}
        self._blocking_timeout = blocking_timeout

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self._blocking_timeout)
            except asyncio.TimeoutError:
                raise LockAcquisitionError(key)
            try:
                yield
            finally:
                lock.release()
        finally:
            remaining = self._users.get(key, 1) - 1
            if remaining:
                self._users[key] = remaining
            else:
                self._users.pop(key, None)
                self._locks.pop(key, None)

    async def aclose(self) -> None:
        self._locks.clear()
        self._users.clear()
