"""Backends implementing the coordination adapter contracts."""

from .database import DatabaseLockAdapter, DatabaseSemaphoreAdapter, DatabaseSharedLockAdapter
from .memory import MemoryLockAdapter, MemorySemaphoreAdapter, MemorySharedLockAdapter
from .redis_lua import RedisLockAdapter, RedisSemaphoreAdapter, RedisSharedLockAdapter
from .sqlite import SqliteDatabase
from .sweeper import ExpirySweeper

__all__ = [
    "DatabaseLockAdapter",
    "DatabaseSemaphoreAdapter",
    "DatabaseSharedLockAdapter",
    "ExpirySweeper",
    "MemoryLockAdapter",
    "MemorySemaphoreAdapter",
    "MemorySharedLockAdapter",
    "RedisLockAdapter",
    "RedisSemaphoreAdapter",
    "RedisSharedLockAdapter",
    "SqliteDatabase",
]
