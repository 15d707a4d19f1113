from __future__ import annotations

import asyncio
import datetime as dt

import pytest


TTL = dt.timedelta(seconds=30)
SHORT = dt.timedelta(milliseconds=50)


@pytest.mark.asyncio
async def test_readers_block_writers(shared_lock_adapter, key):
    assert await shared_lock_adapter.acquire_reader(key, "r1", 2, TTL) is True
    assert await shared_lock_adapter.acquire_writer(key, "w1", TTL) is False

    assert await shared_lock_adapter.release_reader(key, "r1") is True
    assert await shared_lock_adapter.acquire_writer(key, "w1", TTL) is True


@pytest.mark.asyncio
async def test_writer_blocks_readers(shared_lock_adapter, key):
    assert await shared_lock_adapter.acquire_writer(key, "w1", TTL) is True
    assert await shared_lock_adapter.acquire_reader(key, "r1", 2, TTL) is False
    assert await shared_lock_adapter.acquire_writer(key, "w2", TTL) is False

    assert await shared_lock_adapter.release_writer(key, "w1") is True
    assert await shared_lock_adapter.acquire_reader(key, "r1", 2, TTL) is True


@pytest.mark.asyncio
async def test_mode_switches_after_expiry(shared_lock_adapter, key):
    await shared_lock_adapter.acquire_reader(key, "r1", 2, SHORT)
    await asyncio.sleep(0.1)
    assert await shared_lock_adapter.acquire_writer(key, "w1", SHORT) is True

    await asyncio.sleep(0.1)
    assert await shared_lock_adapter.acquire_reader(key, "r2", 2, TTL) is True


@pytest.mark.asyncio
async def test_reader_limit(shared_lock_adapter, key):
    assert await shared_lock_adapter.acquire_reader(key, "r1", 1, TTL) is True
    assert await shared_lock_adapter.acquire_reader(key, "r2", 1, TTL) is False
    assert await shared_lock_adapter.acquire_reader(key, "r1", 1, TTL) is True


@pytest.mark.asyncio
async def test_writer_ops_do_not_touch_readers(shared_lock_adapter, key):
    await shared_lock_adapter.acquire_reader(key, "r1", 2, TTL)

    assert await shared_lock_adapter.release_writer(key, "r1") is False
    assert await shared_lock_adapter.refresh_writer(key, "r1", TTL) is False
    assert await shared_lock_adapter.force_release_writer(key) is False

    state = await shared_lock_adapter.get_state(key)
    assert state.writer is None
    assert list(state.reader.acquired_slots) == ["r1"]


@pytest.mark.asyncio
async def test_reader_ops_do_not_touch_writer(shared_lock_adapter, key):
    await shared_lock_adapter.acquire_writer(key, "w1", TTL)

    assert await shared_lock_adapter.release_reader(key, "w1") is False
    assert await shared_lock_adapter.refresh_reader(key, "w1", TTL) is False
    assert await shared_lock_adapter.force_release_all_readers(key) is False

    state = await shared_lock_adapter.get_state(key)
    assert state.reader is None
    assert state.writer.owner == "w1"


@pytest.mark.asyncio
async def test_refresh_both_sides(shared_lock_adapter, key):
    await shared_lock_adapter.acquire_writer(key, "w1", dt.timedelta(seconds=1))
    assert await shared_lock_adapter.refresh_writer(key, "w1", dt.timedelta(minutes=10)) is True
    assert (await shared_lock_adapter.get_state(key)).writer.expiration > dt.datetime.now(dt.timezone.utc) + dt.timedelta(minutes=9)
    await shared_lock_adapter.release_writer(key, "w1")

    await shared_lock_adapter.acquire_reader(key, "r1", 2, dt.timedelta(seconds=1))
    assert await shared_lock_adapter.refresh_reader(key, "r1", dt.timedelta(minutes=10)) is True
    assert await shared_lock_adapter.refresh_reader(key, "r2", TTL) is False


@pytest.mark.asyncio
async def test_force_release_clears_active_mode(shared_lock_adapter, key):
    assert await shared_lock_adapter.force_release(key) is False

    await shared_lock_adapter.acquire_writer(key, "w1", TTL)
    assert await shared_lock_adapter.force_release(key) is True
    assert await shared_lock_adapter.get_state(key) is None

    await shared_lock_adapter.acquire_reader(key, "r1", 2, TTL)
    await shared_lock_adapter.acquire_reader(key, "r2", 2, TTL)
    assert await shared_lock_adapter.force_release(key) is True
    assert await shared_lock_adapter.acquire_writer(key, "w1", TTL) is True


@pytest.mark.asyncio
async def test_concurrent_reader_and_writer_never_both_win(shared_lock_adapter, key):
    for attempt in range(5):
        attempt_key = f"{key}-{attempt}"
        writer, reader = await asyncio.gather(
            shared_lock_adapter.acquire_writer(attempt_key, "w", TTL),
            shared_lock_adapter.acquire_reader(attempt_key, "r", 3, TTL),
        )
        assert writer != reader


@pytest.mark.asyncio
@pytest.mark.parametrize("suffix", [":writer", ":readers", ":readers:limit"])
async def test_keys_sharing_a_prefix_stay_independent(shared_lock_adapter, key, suffix):
    other = f"{key}{suffix}"
    assert await shared_lock_adapter.acquire_reader(key, "r1", 1, TTL) is True
    assert await shared_lock_adapter.acquire_writer(other, "w1", TTL) is True
    assert await shared_lock_adapter.acquire_reader(f"{other}:x", "r2", 2, TTL) is True

    state = await shared_lock_adapter.get_state(key)
    assert state.writer is None
    assert set(state.reader.acquired_slots) == {"r1"}
    assert (await shared_lock_adapter.get_state(other)).reader is None
    await shared_lock_adapter.force_release(other)
    await shared_lock_adapter.force_release(f"{other}:x")
