from __future__ import annotations

import datetime as dt

import pytest

from distsync.adapters.memory import MemoryLockAdapter, MemorySemaphoreAdapter, MemorySharedLockAdapter
from distsync.adapters.sqlite import SqliteDatabase
from distsync.core.errors import DefaultAdapterNotDefinedError, UnregisteredAdapterError
from distsync.core.models import EventType
from distsync.core.runtime import CoordinationRuntime
from distsync.core.serde import SerdeRegistry
from distsync.core.settings import CoordinationSettings
from distsync.primitives.factory import LockProviderFactory, SemaphoreProviderFactory, SharedLockProviderFactory
from distsync.primitives.provider import LockProvider, _BaseProvider


@pytest.mark.asyncio
async def test_use_resolves_named_and_default_adapters(tmp_path):
    async with SqliteDatabase(tmp_path / "factory.sqlite3") as database:
        factory = LockProviderFactory(
            {"memory": MemoryLockAdapter(), "sqlite": database.lock_store()},
            default_adapter="memory",
        )

        assert factory.use() is factory.use("memory")
        assert isinstance(factory.use().adapter, MemoryLockAdapter)

        held = factory.use("sqlite").create("report")
        assert await held.acquire() is True
        # Separate stores: the same key is free on the default adapter.
        assert await factory.use().create("report").acquire() is True
        assert await factory.use("sqlite").create("report").acquire() is False


def test_missing_default_adapter():
    factory = SemaphoreProviderFactory({"memory": MemorySemaphoreAdapter()})
    with pytest.raises(DefaultAdapterNotDefinedError):
        factory.use()
    assert factory.use("memory").create("pool", limit=2).limit == 2


def test_unregistered_adapter():
    factory = SharedLockProviderFactory({"memory": MemorySharedLockAdapter()}, default_adapter="redis")
    with pytest.raises(UnregisteredAdapterError):
        factory.use()
    with pytest.raises(UnregisteredAdapterError):
        factory.use("sqlite")


def test_provider_settings_are_shared():
    serde = SerdeRegistry()
    factory = LockProviderFactory(
        {"a": MemoryLockAdapter()},
        default_adapter="a",
        namespace="billing",
        default_ttl=dt.timedelta(seconds=7),
        serde=serde,
        serde_tag_prefix="svc",
    )
    factory.register("b", MemoryLockAdapter())

    provider = factory.use("b")
    assert str(provider.namespace) == "billing"
    assert provider.create("invoice").ttl == dt.timedelta(seconds=7)
    assert provider.serde_tag == "svc/lock/MemoryLockAdapter/billing"
    assert set(factory.adapter_names) == {"a", "b"}
    assert "b" in factory


def test_register_rejects_existing_name():
    factory = LockProviderFactory({"memory": MemoryLockAdapter()})
    with pytest.raises(ValueError):
        factory.register("memory", MemoryLockAdapter())


@pytest.mark.asyncio
async def test_factory_drains_events_of_every_provider(recording_bus):
    factory = LockProviderFactory(
        {"a": MemoryLockAdapter(), "b": MemoryLockAdapter()}, default_adapter="a", message_bus=recording_bus
    )
    await factory.use("a").create("job").acquire()
    await factory.use("b").create("job").acquire()
    await factory.drain_events()

    assert recording_bus.types() == [EventType.LOCK_ACQUIRED, EventType.LOCK_ACQUIRED]


class ScratchLockAdapter(MemoryLockAdapter):
    pass


@pytest.mark.asyncio
async def test_runtime_exposes_factories():
    async with CoordinationRuntime(CoordinationSettings(backend="memory", bus="none")) as runtime:
        assert runtime.lock_factory.default_adapter == "memory"
        assert runtime.lock_factory.use() is runtime.locks
        assert runtime.semaphore_factory.use() is runtime.semaphores
        assert runtime.shared_lock_factory.use() is runtime.shared_locks

        runtime.lock_factory.register("scratch", ScratchLockAdapter())
        scratch = runtime.lock_factory.use("scratch")
        assert await scratch.create("job").acquire() is True
        assert await runtime.locks.create("job").acquire() is True


def test_provider_hooks_are_abstract():
    class IncompleteProvider(_BaseProvider):
        kind = "lock"
        default_namespace = "@lock"

    with pytest.raises(TypeError):
        IncompleteProvider(MemoryLockAdapter())
    assert issubclass(LockProvider, _BaseProvider)
