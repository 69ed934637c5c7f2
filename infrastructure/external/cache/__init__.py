"""缓存层对外暴露的接口"""
from .locks import LocalLockManager, RedisLockManager


__all__ = [
    "RedisLockManager",
    "LocalLockManager",
]
