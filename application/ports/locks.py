"""
Lock manager port used to serialize work on one key across workers.
"""
from __future__ import annotations

from typing import AsyncContextManager, Protocol, runtime_checkable


class LockAcquisitionError(TimeoutError):
    """锁被其他 worker 持有，未能在等待时间内获取"""

    def __init__(self, key: str):
        super().__init__(f"Could not acquire lock: {key}")
        self.key = key


@runtime_checkable
class LockManager(Protocol):

    def hold(self, key: str) -> AsyncContextManager[None]:
        """Async context manager holding ``key``; raises LockAcquisitionError on contention."""
        ...
