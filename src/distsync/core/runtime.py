"""Runtime wiring: settings to adapters, bus and providers."""

from __future__ import annotations

import asyncio
import datetime as dt
from typing import Any, List, Optional, Tuple

from redis.asyncio import Redis

from distsync.adapters.memory import MemoryLockAdapter, MemorySemaphoreAdapter, MemorySharedLockAdapter
from distsync.adapters.redis_lua import RedisLockAdapter, RedisSemaphoreAdapter, RedisSharedLockAdapter
from distsync.adapters.sqlite import SqliteDatabase
from distsync.core.message_bus import MessageBus
from distsync.core.message_bus_redis import RedisMessageBus
from distsync.core.serde import SerdeRegistry
from distsync.core.settings import CoordinationSettings
from distsync.primitives.factory import LockProviderFactory, SemaphoreProviderFactory, SharedLockProviderFactory
from distsync.services.audit_logger import AuditLogger
from distsync.utils.logging import get_logger


class CoordinationRuntime:
    """Builds the three provider factories from settings and owns the background pieces.

    Each factory starts with the configured backend as its default adapter;
    ``locks``, ``semaphores`` and ``shared_locks`` are those default providers.
    More adapters can be registered on the factories by name.

    ``start`` opens backends, starts expiry sweepers and the audit consumer;
    ``stop`` flushes pending events and tears everything down in reverse.
    """

    def __init__(
        self,
        settings: Optional[CoordinationSettings] = None,
        *,
        message_bus: Optional[Any] = None,
        serde: Optional[SerdeRegistry] = None,
        audit_logger: Optional[AuditLogger] = None,
    ) -> None:
        self.settings = settings or CoordinationSettings.from_env()
        self.logger = get_logger("CoordinationRuntime")
        self.serde = serde or SerdeRegistry()
        self.message_bus = message_bus if message_bus is not None else self._build_bus()
        if audit_logger is None and self.settings.audit_log_path is not None:
            audit_logger = AuditLogger(self.settings.audit_log_path)
        self.audit_logger = audit_logger
        self._redis: Optional[Redis] = None
        self._resources: List[Any] = []

        lock_adapter, semaphore_adapter, shared_lock_adapter = self._build_adapters()
        common = dict(
            message_bus=self.message_bus,
            serde=self.serde,
            serde_tag_prefix=self.settings.serde_tag_prefix,
            **self.settings.defaults.provider_kwargs(),
        )
        backend = self.settings.backend
        self.lock_factory = LockProviderFactory({backend: lock_adapter}, default_adapter=backend, **common)
        self.semaphore_factory = SemaphoreProviderFactory(
            {backend: semaphore_adapter}, default_adapter=backend, **common
        )
        self.shared_lock_factory = SharedLockProviderFactory(
            {backend: shared_lock_adapter}, default_adapter=backend, **common
        )
        self.locks = self.lock_factory.use()
        self.semaphores = self.semaphore_factory.use()
        self.shared_locks = self.shared_lock_factory.use()

        self._audit_task: Optional[asyncio.Task[None]] = None
        self._started = False
        self._lock = asyncio.Lock()

    def _build_bus(self) -> Optional[Any]:
        if self.settings.bus == "memory":
            return MessageBus()
        if self.settings.bus == "redis":
            return RedisMessageBus(self.settings.redis.url, stream=self.settings.redis.event_stream)
        return None

    def _build_adapters(self) -> Tuple[Any, Any, Any]:
        settings = self.settings
        if settings.backend == "redis":
            self._redis = Redis.from_url(settings.redis.url)
            return (
                RedisLockAdapter(self._redis),
                RedisSemaphoreAdapter(self._redis),
                RedisSharedLockAdapter(self._redis),
            )
        if settings.backend == "sqlite":
            database = SqliteDatabase(
                settings.sqlite.path,
                table_prefix=settings.sqlite.table_prefix,
                sweep_interval=settings.sweep_interval,
                busy_timeout=dt.timedelta(seconds=settings.sqlite.busy_timeout_seconds),
            )
            self._resources.append(database)
            return database.lock_store(), database.semaphore_store(), database.shared_lock_store()
        adapters = (
            MemoryLockAdapter(sweep_interval=settings.sweep_interval),
            MemorySemaphoreAdapter(sweep_interval=settings.sweep_interval),
            MemorySharedLockAdapter(sweep_interval=settings.sweep_interval),
        )
        self._resources.extend(adapters)
        return adapters

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        async with self._lock:
            if self._started:
                return
            self.logger.info(
                "Starting coordination runtime (backend=%s, bus=%s)", self.settings.backend, self.settings.bus
            )
            for resource in self._resources:
                await resource.init()
            if self.audit_logger is not None and self.message_bus is not None:
                self._audit_task = asyncio.create_task(
                    self.audit_logger.consume(self.message_bus), name="distsync-audit"
                )
                # Let the consumer register its subscription before any handle emits.
                await asyncio.sleep(0)
                await self.audit_logger.log(
                    event="runtime.started", key="*", payload={"backend": self.settings.backend}
                )
            self._started = True

    async def stop(self) -> None:
        async with self._lock:
            if not self._started:
                return
            self.logger.info("Stopping coordination runtime")
            for factory in (self.lock_factory, self.semaphore_factory, self.shared_lock_factory):
                await factory.drain_events()
            if self.message_bus is not None:
                await self.message_bus.close()
            if self._audit_task is not None:
                try:
                    await asyncio.wait_for(self._audit_task, timeout=1.0)
                except asyncio.TimeoutError:
                    self.logger.warning("Audit consumer did not finish, cancelling")
                except Exception as exc:
                    self.logger.warning("Audit consumer failed: %s", exc)
                self._audit_task = None
            if self.audit_logger is not None:
                await self.audit_logger.log(
                    event="runtime.stopped", key="*", payload={"backend": self.settings.backend}
                )
            for resource in reversed(self._resources):
                await resource.close()
            if self._redis is not None:
                await self._redis.aclose()
            self._started = False

    async def __aenter__(self) -> "CoordinationRuntime":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
