from __future__ import annotations

import contextlib
import os
import uuid
from typing import AsyncIterator, List

import pytest
import pytest_asyncio

from distsync.adapters.database import DatabaseLockAdapter, DatabaseSemaphoreAdapter, DatabaseSharedLockAdapter
from distsync.adapters.memory import MemoryLockAdapter, MemorySemaphoreAdapter, MemorySharedLockAdapter
from distsync.adapters.sqlite import SqliteDatabase
from distsync.core.models import EventEnvelope


REDIS_URL = os.getenv("REDIS_URL")

BACKENDS = [
    "memory",
    "sqlite",
    pytest.param("redis", marks=pytest.mark.skipif(not REDIS_URL, reason="REDIS_URL not set")),
]


class RecordingBus:
    """Publisher double that keeps every envelope it receives."""

    def __init__(self) -> None:
        self.events: List[EventEnvelope] = []

    async def publish(self, envelope: EventEnvelope) -> None:
        self.events.append(envelope)

    def types(self):
        return [envelope.type for envelope in self.events]


class FailingBus:
    async def publish(self, envelope: EventEnvelope) -> None:
        raise ConnectionError("bus is down")


@contextlib.asynccontextmanager
async def open_adapter(kind: str, backend: str, tmp_path, key: str) -> AsyncIterator[object]:
    if backend == "memory":
        factory = {
            "lock": MemoryLockAdapter,
            "semaphore": MemorySemaphoreAdapter,
            "shared": MemorySharedLockAdapter,
        }[kind]
        yield factory()
        return

    if backend == "sqlite":
        database = SqliteDatabase(tmp_path / f"{kind}.sqlite3")
        await database.init()
        try:
            if kind == "lock":
                yield DatabaseLockAdapter(database.lock_store())
            elif kind == "semaphore":
                yield DatabaseSemaphoreAdapter(database.semaphore_store())
            else:
                yield DatabaseSharedLockAdapter(database.shared_lock_store())
        finally:
            await database.close()
        return

    from redis.asyncio import Redis

    from distsync.adapters.redis_lua import RedisLockAdapter, RedisSemaphoreAdapter, RedisSharedLockAdapter

    client = Redis.from_url(REDIS_URL)
    factory = {
        "lock": RedisLockAdapter,
        "semaphore": RedisSemaphoreAdapter,
        "shared": RedisSharedLockAdapter,
    }[kind]
    try:
        yield factory(client)
    finally:
        async for stored in client.scan_iter(match=f"*{key}*"):
            await client.delete(stored)
        await client.aclose()


@pytest.fixture
def key() -> str:
    return f"test-{uuid.uuid4().hex}"


@pytest.fixture
def recording_bus() -> RecordingBus:
    return RecordingBus()


@pytest.fixture
def failing_bus() -> FailingBus:
    return FailingBus()


@pytest_asyncio.fixture(params=BACKENDS)
async def lock_adapter(request, tmp_path, key):
    async with open_adapter("lock", request.param, tmp_path, key) as adapter:
        yield adapter


@pytest_asyncio.fixture(params=BACKENDS)
async def semaphore_adapter(request, tmp_path, key):
    async with open_adapter("semaphore", request.param, tmp_path, key) as adapter:
        yield adapter


@pytest_asyncio.fixture(params=BACKENDS)
async def shared_lock_adapter(request, tmp_path, key):
    async with open_adapter("shared", request.param, tmp_path, key) as adapter:
        yield adapter
