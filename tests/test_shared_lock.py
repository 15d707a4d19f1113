from __future__ import annotations

import asyncio
import datetime as dt

import pytest

from distsync.core.errors import (
    FailedAcquireWriterLockError,
    FailedRefreshReaderSemaphoreError,
    FailedReleaseWriterLockError,
    LimitReachedReaderSemaphoreError,
)
from distsync.core.models import EventType, SharedLockStateType
from distsync.primitives.provider import SharedLockProvider


@pytest.fixture
def provider(shared_lock_adapter, recording_bus):
    return SharedLockProvider(
        shared_lock_adapter,
        message_bus=recording_bus,
        default_blocking_interval=dt.timedelta(milliseconds=10),
    )


@pytest.mark.asyncio
async def test_writer_excludes_everyone(provider, recording_bus, key):
    writer = provider.create(key, limit=3)
    reader = provider.create(key, limit=3)

    assert await writer.acquire_writer() is True
    assert await reader.acquire_reader() is False
    assert await reader.acquire_writer() is False
    await provider.drain_events()

    assert recording_bus.types() == [
        EventType.WRITER_ACQUIRED,
        EventType.SHARED_LOCK_UNAVAILABLE,
        EventType.SHARED_LOCK_UNAVAILABLE,
    ]
    assert [envelope.payload.get("mode") for envelope in recording_bus.events[1:]] == ["reader", "writer"]


@pytest.mark.asyncio
async def test_readers_share_up_to_limit(provider, key):
    readers = [provider.create(key, limit=2) for _ in range(3)]

    assert await readers[0].acquire_reader() is True
    assert await readers[1].acquire_reader() is True
    assert await readers[2].acquire_reader() is False

    state = await readers[2].get_state()
    assert state.type is SharedLockStateType.READER_LIMIT_REACHED
    assert state.acquired_slots_count == 2

    with pytest.raises(FailedAcquireWriterLockError):
        await readers[2].acquire_writer_or_fail()


@pytest.mark.asyncio
async def test_get_state_precedence(provider, key):
    mine = provider.create(key, limit=2)
    other = provider.create(key, limit=2)

    assert (await mine.get_state()).type is SharedLockStateType.EXPIRED

    await mine.acquire_writer()
    assert (await mine.get_state()).type is SharedLockStateType.WRITER_ACQUIRED
    other_state = await other.get_state()
    assert other_state.type is SharedLockStateType.WRITER_UNAVAILABLE
    assert other_state.owner == mine.id

    await mine.release_writer()
    await mine.acquire_reader()
    assert (await mine.get_state()).type is SharedLockStateType.READER_ACQUIRED
    assert (await other.get_state()).type is SharedLockStateType.READER_UNACQUIRED


@pytest.mark.asyncio
async def test_writer_waits_for_readers(provider, key):
    reader = provider.create(key, limit=2)
    writer = provider.create(key, limit=2)
    await reader.acquire_reader()

    async def release_later():
        await asyncio.sleep(0.05)
        await reader.release_reader()

    releaser = asyncio.create_task(release_later())
    assert await writer.acquire_writer_blocking(time=2) is True
    await releaser
    assert (await writer.get_state()).type is SharedLockStateType.WRITER_ACQUIRED


@pytest.mark.asyncio
async def test_or_fail_variants_raise(provider, key):
    writer = provider.create(key, limit=1)
    other = provider.create(key, limit=1)
    await writer.acquire_writer_or_fail()

    with pytest.raises(LimitReachedReaderSemaphoreError):
        await other.acquire_reader_or_fail()
    with pytest.raises(FailedReleaseWriterLockError):
        await other.release_writer_or_fail()
    with pytest.raises(FailedRefreshReaderSemaphoreError):
        await other.refresh_reader_or_fail()
    with pytest.raises(LimitReachedReaderSemaphoreError):
        await other.acquire_reader_blocking_or_fail(time=0.03)

    await writer.refresh_writer_or_fail()
    await writer.release_writer_or_fail()


@pytest.mark.asyncio
async def test_run_writer_and_reader(provider, key):
    handle = provider.create(key, limit=2)

    assert await handle.run_writer_or_fail(lambda: "w") == "w"
    assert (await handle.run_reader(lambda: "r")).value == "r"
    assert await handle.run_reader_blocking_or_fail(lambda: "rb", time=0.1) == "rb"
    assert (await handle.run_writer_blocking(lambda: "wb", time=0.1)).value == "wb"
    assert (await handle.get_state()).type is SharedLockStateType.EXPIRED


@pytest.mark.asyncio
async def test_run_reader_reports_blocked_writer(provider, key):
    await provider.create(key, limit=2).acquire_writer()

    result = await provider.create(key, limit=2).run_reader(lambda: "never")
    assert isinstance(result.error, LimitReachedReaderSemaphoreError)


@pytest.mark.asyncio
async def test_force_release_variants(provider, recording_bus, key):
    writer = provider.create(key, limit=2)
    await writer.acquire_writer()
    assert await writer.force_release_writer() is True

    readers = [provider.create(key, limit=2) for _ in range(2)]
    for reader in readers:
        await reader.acquire_reader()
    assert await readers[0].force_release_all_readers() is True
    assert (await readers[1].get_state()).type is SharedLockStateType.EXPIRED

    await writer.acquire_writer()
    assert await writer.force_release() is True
    assert await writer.force_release() is False

    await provider.drain_events()
    released = {}
    for event in recording_bus.events:
        if "released" in event.payload:
            released.setdefault(event.type, []).append(event.payload["released"])
    assert released == {
        EventType.WRITER_FORCE_RELEASED: [True],
        EventType.READER_ALL_FORCE_RELEASED: [True],
        EventType.SHARED_LOCK_FORCE_RELEASED: [True, False],
    }


@pytest.mark.asyncio
async def test_expired_writer_lets_readers_in(provider, key):
    writer = provider.create(key, limit=2, ttl=dt.timedelta(milliseconds=50))
    reader = provider.create(key, limit=2)

    await writer.acquire_writer()
    await asyncio.sleep(0.1)
    assert await reader.acquire_reader() is True
    assert await writer.release_writer() is False


@pytest.mark.asyncio
async def test_concurrent_modes_never_overlap(provider, key):
    handles = [provider.create(key, limit=5) for _ in range(6)]
    results = await asyncio.gather(
        handles[0].acquire_writer(),
        *(handle.acquire_reader() for handle in handles[1:]),
    )
    writer_won, readers_won = results[0], results[1:]
    if writer_won:
        assert not any(readers_won)
    else:
        assert readers_won.count(True) == 5
