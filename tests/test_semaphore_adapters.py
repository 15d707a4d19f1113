from __future__ import annotations

import asyncio
import datetime as dt

import pytest


TTL = dt.timedelta(seconds=30)
SHORT = dt.timedelta(milliseconds=50)


@pytest.mark.asyncio
async def test_limit_bounds_live_slots(semaphore_adapter, key):
    assert await semaphore_adapter.acquire(key, "a1", 2, TTL) is True
    assert await semaphore_adapter.acquire(key, "a2", 2, TTL) is True
    assert await semaphore_adapter.acquire(key, "a3", 2, TTL) is False

    assert await semaphore_adapter.release(key, "a1") is True
    assert await semaphore_adapter.acquire(key, "a3", 2, TTL) is True

    state = await semaphore_adapter.get_state(key)
    assert state.limit == 2
    assert set(state.acquired_slots) == {"a2", "a3"}


@pytest.mark.asyncio
async def test_held_slot_reacquires_when_full(semaphore_adapter, key):
    await semaphore_adapter.acquire(key, "a1", 1, TTL)
    assert await semaphore_adapter.acquire(key, "a1", 1, TTL) is True
    assert len((await semaphore_adapter.get_state(key)).acquired_slots) == 1


@pytest.mark.asyncio
async def test_stored_limit_wins_until_drained(semaphore_adapter, key):
    await semaphore_adapter.acquire(key, "a1", 1, TTL)
    assert await semaphore_adapter.acquire(key, "a2", 5, TTL) is False
    assert (await semaphore_adapter.get_state(key)).limit == 1

    await semaphore_adapter.release(key, "a1")
    assert await semaphore_adapter.acquire(key, "a2", 3, TTL) is True
    assert (await semaphore_adapter.get_state(key)).limit == 3


@pytest.mark.asyncio
async def test_expired_slots_free_capacity(semaphore_adapter, key):
    await semaphore_adapter.acquire(key, "a1", 1, SHORT)
    await asyncio.sleep(0.1)

    assert await semaphore_adapter.acquire(key, "a2", 1, TTL) is True
    assert await semaphore_adapter.release(key, "a1") is False


@pytest.mark.asyncio
async def test_release_and_refresh_touch_only_own_slot(semaphore_adapter, key):
    await semaphore_adapter.acquire(key, "a1", 3, dt.timedelta(seconds=1))
    await semaphore_adapter.acquire(key, "a2", 3, dt.timedelta(seconds=1))

    assert await semaphore_adapter.release(key, "missing") is False
    assert await semaphore_adapter.refresh(key, "missing", TTL) is False
    assert await semaphore_adapter.refresh(key, "a1", dt.timedelta(minutes=10)) is True

    slots = (await semaphore_adapter.get_state(key)).acquired_slots
    assert slots["a1"] > slots["a2"] + dt.timedelta(minutes=5)


@pytest.mark.asyncio
async def test_refresh_never_applies_to_slots_without_ttl(semaphore_adapter, key):
    await semaphore_adapter.acquire(key, "a1", 2, None)
    assert await semaphore_adapter.refresh(key, "a1", TTL) is False
    assert (await semaphore_adapter.get_state(key)).acquired_slots["a1"] is None


@pytest.mark.asyncio
async def test_force_release_all(semaphore_adapter, key):
    assert await semaphore_adapter.force_release_all(key) is False
    await semaphore_adapter.acquire(key, "a1", 2, TTL)
    await semaphore_adapter.acquire(key, "a2", 2, TTL)

    assert await semaphore_adapter.force_release_all(key) is True
    assert await semaphore_adapter.get_state(key) is None


@pytest.mark.asyncio
async def test_concurrent_acquire_respects_limit(semaphore_adapter, key):
    results = await asyncio.gather(*(semaphore_adapter.acquire(key, f"s-{i}", 3, TTL) for i in range(10)))
    assert results.count(True) == 3
    assert len((await semaphore_adapter.get_state(key)).acquired_slots) == 3


@pytest.mark.asyncio
@pytest.mark.parametrize("suffix", [":limit", ":slots"])
async def test_keys_sharing_a_prefix_stay_independent(semaphore_adapter, key, suffix):
    other = f"{key}{suffix}"
    assert await semaphore_adapter.acquire(key, "a1", 1, TTL) is True
    assert await semaphore_adapter.acquire(other, "b1", 2, TTL) is True
    assert await semaphore_adapter.acquire(other, "b2", 2, TTL) is True

    assert (await semaphore_adapter.get_state(key)).limit == 1
    assert set((await semaphore_adapter.get_state(other)).acquired_slots) == {"b1", "b2"}

    assert await semaphore_adapter.force_release_all(key) is True
    assert await semaphore_adapter.get_state(other) is not None
    await semaphore_adapter.force_release_all(other)
