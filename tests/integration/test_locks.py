import asyncio

import pytest

from application.ports.locks import LockAcquisitionError
from infrastructure.external.cache.locks import LocalLockManager


@pytest.mark.asyncio
async def test_local_lock_entries_are_dropped_after_release():
    locks = LocalLockManager(blocking_timeout=0.01)
    for i in range(3):
        async with locks.hold(f"billing:subscription:sub_{i}"):
            assert f"billing:subscription:sub_{i}" in locks._locks
    assert locks._locks == {}
    assert locks._users == {}


@pytest.mark.asyncio
async def test_local_lock_is_kept_while_another_task_waits():
    locks = LocalLockManager(blocking_timeout=1)
    order = []

    async def worker(name):
        async with locks.hold("k"):
            order.append(name)
            await asyncio.sleep(0.01)

    await asyncio.gather(worker("a"), worker("b"))

    assert order == ["a", "b"]
    assert locks._locks == {}


@pytest.mark.asyncio
async def test_local_lock_timeout_keeps_holder_entry():
    locks = LocalLockManager(blocking_timeout=0.01)
    async with locks.hold("k"):
        with pytest.raises(LockAcquisitionError):
            async with locks.hold("k"):
                pass
        assert "k" in locks._locks
    assert locks._locks == {}
