from __future__ import annotations

import asyncio
import datetime as dt

import pytest

from distsync.core.errors import (
    AdapterError,
    FailedAcquireLockError,
    UnownedRefreshLockError,
    UnownedReleaseLockError,
)
from distsync.core.locks import LockAdapter
from distsync.core.models import EventType, LockStateType
from distsync.primitives.provider import LockProvider


@pytest.fixture
def provider(lock_adapter, recording_bus):
    return LockProvider(
        lock_adapter,
        message_bus=recording_bus,
        default_blocking_interval=dt.timedelta(milliseconds=10),
    )


@pytest.mark.asyncio
async def test_lock_lifecycle_emits_events(provider, recording_bus, key):
    lock = provider.create(key)
    other = provider.create(key)

    assert await lock.acquire() is True
    assert await other.acquire() is False
    assert await other.release() is False
    assert await lock.refresh() is True
    assert await lock.release() is True
    await provider.drain_events()

    assert recording_bus.types() == [
        EventType.LOCK_ACQUIRED,
        EventType.LOCK_NOT_AVAILABLE,
        EventType.LOCK_FAILED_RELEASE,
        EventType.LOCK_REFRESHED,
        EventType.LOCK_RELEASED,
    ]
    assert all(envelope.key == key for envelope in recording_bus.events)
    assert recording_bus.events[0].handle_id == lock.id
    assert recording_bus.events[0].payload["namespace"] == "@lock"


@pytest.mark.asyncio
async def test_or_fail_variants_raise(provider, key):
    lock = provider.create(key)
    other = provider.create(key)
    await lock.acquire_or_fail()

    with pytest.raises(FailedAcquireLockError):
        await other.acquire_or_fail()
    with pytest.raises(UnownedReleaseLockError):
        await other.release_or_fail()
    with pytest.raises(UnownedRefreshLockError):
        await other.refresh_or_fail()

    await lock.refresh_or_fail(dt.timedelta(minutes=1))
    await lock.release_or_fail()


@pytest.mark.asyncio
async def test_get_state(provider, key):
    lock = provider.create(key, ttl=dt.timedelta(minutes=1))
    other = provider.create(key)

    assert (await lock.get_state()).type is LockStateType.EXPIRED
    await lock.acquire()

    mine = await lock.get_state()
    assert mine.type is LockStateType.ACQUIRED
    assert dt.timedelta(seconds=50) < mine.remaining_time <= dt.timedelta(minutes=1)

    theirs = await other.get_state()
    assert theirs.type is LockStateType.UNAVAILABLE
    assert theirs.owner == lock.id


@pytest.mark.asyncio
async def test_same_id_is_reentrant(provider, key):
    first = provider.create(key, lock_id="worker-1")
    second = provider.create(key, lock_id="worker-1")

    assert await first.acquire() is True
    assert await second.acquire() is True
    assert await second.release() is True
    assert (await first.get_state()).type is LockStateType.EXPIRED


@pytest.mark.asyncio
async def test_ttl_none_never_expires_and_never_refreshes(provider, key):
    lock = provider.create(key, ttl=None)
    await lock.acquire()

    assert await lock.refresh() is False
    state = await lock.get_state()
    assert state.type is LockStateType.ACQUIRED
    assert state.remaining_time is None


@pytest.mark.asyncio
async def test_expired_owner_loses_the_lock(provider, key):
    owner_a = provider.create(key, ttl=dt.timedelta(milliseconds=50))
    owner_b = provider.create(key)

    assert await owner_a.acquire() is True
    await asyncio.sleep(0.06)
    assert await owner_b.acquire() is True
    assert await owner_a.release() is False


@pytest.mark.asyncio
async def test_run_releases_after_success(provider, key):
    lock = provider.create(key)

    result = await lock.run(lambda: "done")
    assert result.ok
    assert result.value == "done"
    assert (await lock.get_state()).type is LockStateType.EXPIRED


@pytest.mark.asyncio
async def test_run_accepts_coroutine_functions_and_callables(provider, key):
    class Job:
        async def __call__(self):
            return 42

    async def job():
        return "async"

    lock = provider.create(key)
    assert (await lock.run(job)).value == "async"
    assert await lock.run_or_fail(Job()) == 42


@pytest.mark.asyncio
async def test_run_reports_contention_without_calling_fn(provider, key):
    holder = provider.create(key)
    await holder.acquire()
    calls = []

    result = await provider.create(key).run(lambda: calls.append(1))
    assert not result.ok
    assert isinstance(result.error, FailedAcquireLockError)
    assert calls == []
    with pytest.raises(FailedAcquireLockError):
        await provider.create(key).run_or_fail(lambda: None)


@pytest.mark.asyncio
async def test_run_releases_and_propagates_fn_errors(provider, key):
    lock = provider.create(key)

    def boom():
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await lock.run(boom)
    assert (await lock.get_state()).type is LockStateType.EXPIRED


@pytest.mark.asyncio
async def test_blocking_acquire_waits_for_release(provider, key):
    holder = provider.create(key)
    waiter = provider.create(key)
    await holder.acquire()

    async def release_later():
        await asyncio.sleep(0.05)
        await holder.release()

    releaser = asyncio.create_task(release_later())
    assert await waiter.acquire_blocking(time=dt.timedelta(seconds=2)) is True
    await releaser


@pytest.mark.asyncio
async def test_blocking_acquire_times_out(provider, key):
    await provider.create(key).acquire()
    waiter = provider.create(key)

    assert await waiter.acquire_blocking(time=dt.timedelta(milliseconds=50)) is False
    with pytest.raises(FailedAcquireLockError):
        await waiter.acquire_blocking_or_fail(time=0.03)
    result = await waiter.run_blocking(lambda: 1, time=0.03)
    assert isinstance(result.error, FailedAcquireLockError)
    with pytest.raises(FailedAcquireLockError):
        await waiter.run_blocking_or_fail(lambda: 1, time=0.03)


@pytest.mark.asyncio
async def test_run_blocking_or_fail_returns_value(provider, key):
    assert await provider.create(key).run_blocking_or_fail(lambda: "ok", time=0.1) == "ok"


@pytest.mark.asyncio
async def test_force_release(provider, recording_bus, key):
    holder = provider.create(key)
    await holder.acquire()

    assert await provider.create(key).force_release() is True
    assert await holder.release() is False
    assert await provider.create(key).force_release() is False
    await provider.drain_events()
    forced = [event for event in recording_bus.events if event.type is EventType.LOCK_FORCE_RELEASED]
    assert [event.payload["released"] for event in forced] == [True, False]


@pytest.mark.asyncio
async def test_async_with_releases_only_when_acquired(provider, key):
    holder = provider.create(key)
    await holder.acquire()

    async with provider.create(key) as acquired:
        assert acquired is False
    assert (await holder.get_state()).type is LockStateType.ACQUIRED

    await holder.release()
    lock = provider.create(key)
    async with lock as acquired:
        assert acquired is True
        assert (await lock.get_state()).type is LockStateType.ACQUIRED
    assert (await lock.get_state()).type is LockStateType.EXPIRED


@pytest.mark.asyncio
async def test_concurrent_handles_have_one_winner(provider, key):
    handles = [provider.create(key) for _ in range(10)]
    results = await asyncio.gather(*(handle.acquire() for handle in handles))
    assert results.count(True) == 1


class _BrokenAdapter(LockAdapter):
    async def acquire(self, key, owner, ttl):
        raise ConnectionResetError("store unreachable")

    async def release(self, key, owner):
        raise ConnectionResetError("store unreachable")

    async def force_release(self, key):
        raise ConnectionResetError("store unreachable")

    async def refresh(self, key, owner, ttl):
        raise ConnectionResetError("store unreachable")

    async def get_state(self, key):
        raise ConnectionResetError("store unreachable")


@pytest.mark.asyncio
async def test_backend_failures_raise_adapter_error(recording_bus):
    provider = LockProvider(_BrokenAdapter(), message_bus=recording_bus)
    lock = provider.create("key")

    with pytest.raises(AdapterError) as excinfo:
        await lock.acquire()
    assert isinstance(excinfo.value.__cause__, ConnectionResetError)
    await provider.drain_events()
    assert recording_bus.types() == [EventType.LOCK_UNEXPECTED_ERROR]
    assert recording_bus.events[0].payload["operation"] == "acquire"


@pytest.mark.asyncio
async def test_publish_failures_never_fail_operations(lock_adapter, failing_bus, key):
    provider = LockProvider(lock_adapter, message_bus=failing_bus)
    lock = provider.create(key)

    assert await lock.acquire() is True
    await provider.drain_events()
    assert await lock.release() is True
