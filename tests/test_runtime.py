from __future__ import annotations

import asyncio
import json

import pytest

from distsync.core.models import EventType, LockStateType
from distsync.core.runtime import CoordinationRuntime
from distsync.core.settings import CoordinationSettings, SqliteSettings
from distsync.services.audit_logger import AuditLogger


def _read_audit(path):
    return [json.loads(line) for line in path.read_text().splitlines()]


@pytest.mark.asyncio
async def test_memory_runtime_records_audit_trail(tmp_path):
    audit_path = tmp_path / "audit.log"
    settings = CoordinationSettings(backend="memory", bus="memory", audit_log_path=audit_path)

    async with CoordinationRuntime(settings) as runtime:
        assert runtime.started
        lock = runtime.locks.create("nightly-report")
        assert await lock.acquire() is True
        assert await runtime.locks.create("nightly-report").acquire() is False
        await lock.release()

    assert not runtime.started
    entries = _read_audit(audit_path)
    events = [entry["event"] for entry in entries]
    assert events[0] == "runtime.started"
    assert events[-1] == "runtime.stopped"
    assert events[1:-1] == [
        EventType.LOCK_ACQUIRED.value,
        EventType.LOCK_NOT_AVAILABLE.value,
        EventType.LOCK_RELEASED.value,
    ]
    assert entries[1]["key"] == "nightly-report"
    assert entries[1]["handle_id"] == lock.id


@pytest.mark.asyncio
async def test_sqlite_runtime_shares_one_database(tmp_path):
    settings = CoordinationSettings(
        backend="sqlite",
        bus="none",
        sqlite=SqliteSettings(path=tmp_path / "coordination.sqlite3"),
        sweep_interval_seconds=0.05,
    )

    async with CoordinationRuntime(settings) as runtime:
        semaphore = runtime.semaphores.create("pool", limit=1)
        shared = runtime.shared_locks.create("doc", limit=2)
        assert await semaphore.acquire() is True
        assert await shared.acquire_reader() is True
        assert await runtime.locks.create("job").acquire() is True

    async with CoordinationRuntime(settings) as reopened:
        state = await reopened.semaphores.create("pool", limit=1, slot_id=semaphore.id).get_state()
        assert state.limit == 1
        assert semaphore.id in state.acquired_slots


@pytest.mark.asyncio
async def test_handles_travel_through_runtime_serde():
    settings = CoordinationSettings(bus="none", serde_tag_prefix="svc")

    async with CoordinationRuntime(settings) as runtime:
        lock = runtime.locks.create("migrate")
        await lock.acquire()

        restored = runtime.serde.deserialize(runtime.serde.serialize(lock))
        assert runtime.locks.serde_tag.startswith("svc/lock/")
        assert (await restored.get_state()).type is LockStateType.ACQUIRED


@pytest.mark.asyncio
async def test_start_and_stop_are_idempotent():
    runtime = CoordinationRuntime(CoordinationSettings(bus="none"))
    await runtime.start()
    await runtime.start()
    await runtime.stop()
    await runtime.stop()
    assert not runtime.started


@pytest.mark.asyncio
async def test_audit_logger_consumes_until_bus_closes(tmp_path):
    from distsync.core.message_bus import MessageBus
    from distsync.core.models import EventEnvelope

    bus = MessageBus()
    logger = AuditLogger(tmp_path / "nested" / "audit.log")
    consumer = asyncio.create_task(logger.consume(bus, [EventType.SEMAPHORE_ACQUIRED]))
    await asyncio.sleep(0.01)

    await bus.publish(EventEnvelope(type=EventType.SEMAPHORE_ACQUIRED, key="pool", handle_id="s1"))
    await bus.publish(EventEnvelope(type=EventType.LOCK_ACQUIRED, key="job"))
    await asyncio.sleep(0.05)
    await bus.close()
    await asyncio.wait_for(consumer, timeout=1)

    (entry,) = _read_audit(logger.path)
    assert entry["event"] == EventType.SEMAPHORE_ACQUIRED.value
    assert entry["handle_id"] == "s1"
