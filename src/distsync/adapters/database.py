"""Adapters that run each coordination operation inside one store transaction.

The record store only offers find/insert/update/delete. Atomicity comes from
re-reading and re-evaluating the condition (owner, expiry, slot count,
mode) inside the same transaction that performs the write. A unique
constraint violation raised by a concurrent insert means another writer won
the race: the operation is re-evaluated a bounded number of times and then
reported as ``False``.
"""

from __future__ import annotations

import datetime as dt
from typing import Awaitable, Callable, Dict, Optional, TypeVar, Union

from distsync.core.errors import RecordConflictError
from distsync.core.locks import (
    DatabaseLockStore,
    DatabaseSemaphoreStore,
    DatabaseSharedLockStore,
    LockAdapter,
    LockTransaction,
    SemaphoreAdapter,
    SemaphoreTransaction,
    SharedLockAdapter,
    SharedLockTransaction,
)
from distsync.core.models import LockAdapterState, SemaphoreAdapterState, SharedLockAdapterState
from distsync.utils.clock import expiration_from, is_live, utcnow
from distsync.utils.logging import get_logger


T = TypeVar("T")

DEFAULT_MAX_CONFLICT_RETRIES = 3


# Exclusive record logic, shared by locks and shared-lock writers.

async def _lock_acquire(trx: LockTransaction, key: str, owner: str, ttl: Optional[dt.timedelta]) -> bool:
    now = utcnow()
    expiration = expiration_from(ttl, now=now)
    row = await trx.find(key)
    if row is None:
        await trx.insert(key, owner, expiration)
        return True
    if row.owner != owner and is_live(row.expiration, now=now):
        return False
    await trx.update(key, owner, expiration)
    return True


async def _lock_release(trx: LockTransaction, key: str, owner: str) -> bool:
    row = await trx.find(key)
    if row is None or row.owner != owner:
        return False
    await trx.delete(key)
    return is_live(row.expiration)


async def _lock_force_release(trx: LockTransaction, key: str) -> bool:
    row = await trx.delete(key)
    return row is not None and is_live(row.expiration)


async def _lock_refresh(trx: LockTransaction, key: str, owner: str, ttl: dt.timedelta) -> bool:
    now = utcnow()
    row = await trx.find(key)
    if row is None or row.owner != owner:
        return False
    if row.expiration is None or not is_live(row.expiration, now=now):
        return False
    await trx.update(key, owner, now + ttl)
    return True


async def _lock_state(trx: LockTransaction, key: str) -> Optional[LockAdapterState]:
    row = await trx.find(key)
    if row is None or not is_live(row.expiration):
        return None
    return LockAdapterState(owner=row.owner, expiration=row.expiration)


# Counting record logic, shared by semaphores and shared-lock readers.

async def _live_slots(trx: SemaphoreTransaction, key: str, now: dt.datetime) -> Dict[str, Optional[dt.datetime]]:
    live: Dict[str, Optional[dt.datetime]] = {}
    for slot in await trx.find_slots(key):
        if is_live(slot.expiration, now=now):
            live[slot.slot_id] = slot.expiration
        else:
            await trx.delete_slot(key, slot.slot_id)
    return live


async def _slot_acquire(
    trx: SemaphoreTransaction, key: str, slot_id: str, limit: int, ttl: Optional[dt.timedelta]
) -> bool:
    if limit < 1:
        raise ValueError(f"Semaphore limit must be at least 1, got {limit}")
    now = utcnow()
    expiration = expiration_from(ttl, now=now)
    live = await _live_slots(trx, key, now)
    stored_limit = await trx.find_limit(key)
    if not live or stored_limit is None:
        # A drained semaphore takes the limit of whoever revives it.
        stored_limit = limit
        await trx.upsert_limit(key, limit)
    if slot_id not in live and len(live) >= stored_limit:
        return False
    await trx.upsert_slot(key, slot_id, expiration)
    return True


async def _slot_release(trx: SemaphoreTransaction, key: str, slot_id: str) -> bool:
    live = await _live_slots(trx, key, utcnow())
    if slot_id not in live:
        return False
    await trx.delete_slot(key, slot_id)
    if len(live) == 1:
        await trx.delete_limit(key)
    return True


async def _slot_force_release_all(trx: SemaphoreTransaction, key: str) -> bool:
    now = utcnow()
    removed = await trx.delete_slots(key)
    await trx.delete_limit(key)
    return any(is_live(slot.expiration, now=now) for slot in removed)


async def _slot_refresh(trx: SemaphoreTransaction, key: str, slot_id: str, ttl: dt.timedelta) -> bool:
    now = utcnow()
    live = await _live_slots(trx, key, now)
    if slot_id not in live or live[slot_id] is None:
        return False
    await trx.upsert_slot(key, slot_id, now + ttl)
    return True


async def _slot_state(trx: SemaphoreTransaction, key: str) -> Optional[SemaphoreAdapterState]:
    live = await _live_slots(trx, key, utcnow())
    if not live:
        return None
    limit = await trx.find_limit(key)
    return SemaphoreAdapterState(limit=limit if limit is not None else len(live), acquired_slots=live)


class _DatabaseAdapterBase:
    def __init__(self, store, *, max_conflict_retries: int = DEFAULT_MAX_CONFLICT_RETRIES) -> None:
        if max_conflict_retries < 0:
            raise ValueError("max_conflict_retries must be >= 0")
        self._store = store
        self._max_conflict_retries = max_conflict_retries
        self.logger = get_logger(type(self).__name__)

    @property
    def store(self):
        return self._store

    async def _run(self, fn: Callable[..., Awaitable[T]], conflict_result: T) -> T:
        attempts = self._max_conflict_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return await self._store.transaction(fn)
            except RecordConflictError:
                self.logger.debug("Write conflict, re-evaluating (%d/%d)", attempt, attempts)
        return conflict_result


class DatabaseLockAdapter(_DatabaseAdapterBase, LockAdapter):
    def __init__(self, store: DatabaseLockStore, *, max_conflict_retries: int = DEFAULT_MAX_CONFLICT_RETRIES) -> None:
        super().__init__(store, max_conflict_retries=max_conflict_retries)

    async def acquire(self, key: str, owner: str, ttl: Optional[dt.timedelta]) -> bool:
        return await self._run(lambda trx: _lock_acquire(trx, key, owner, ttl), False)

    async def release(self, key: str, owner: str) -> bool:
        return await self._run(lambda trx: _lock_release(trx, key, owner), False)

    async def force_release(self, key: str) -> bool:
        return await self._run(lambda trx: _lock_force_release(trx, key), False)

    async def refresh(self, key: str, owner: str, ttl: dt.timedelta) -> bool:
        return await self._run(lambda trx: _lock_refresh(trx, key, owner, ttl), False)

    async def get_state(self, key: str) -> Optional[LockAdapterState]:
        return await self._run(lambda trx: _lock_state(trx, key), None)


class DatabaseSemaphoreAdapter(_DatabaseAdapterBase, SemaphoreAdapter):
    def __init__(
        self, store: DatabaseSemaphoreStore, *, max_conflict_retries: int = DEFAULT_MAX_CONFLICT_RETRIES
    ) -> None:
        super().__init__(store, max_conflict_retries=max_conflict_retries)

    async def acquire(self, key: str, slot_id: str, limit: int, ttl: Optional[dt.timedelta]) -> bool:
        return await self._run(lambda trx: _slot_acquire(trx, key, slot_id, limit, ttl), False)

    async def release(self, key: str, slot_id: str) -> bool:
        return await self._run(lambda trx: _slot_release(trx, key, slot_id), False)

    async def force_release_all(self, key: str) -> bool:
        return await self._run(lambda trx: _slot_force_release_all(trx, key), False)

    async def refresh(self, key: str, slot_id: str, ttl: dt.timedelta) -> bool:
        return await self._run(lambda trx: _slot_refresh(trx, key, slot_id, ttl), False)

    async def get_state(self, key: str) -> Optional[SemaphoreAdapterState]:
        return await self._run(lambda trx: _slot_state(trx, key), None)


class DatabaseSharedLockAdapter(_DatabaseAdapterBase, SharedLockAdapter):
    """Writer row and reader slots are checked together in every transaction.

    Checking the mode in one transaction and writing in another would let a
    reader and a writer both observe an empty record and both succeed.
    """

    def __init__(
        self, store: DatabaseSharedLockStore, *, max_conflict_retries: int = DEFAULT_MAX_CONFLICT_RETRIES
    ) -> None:
        super().__init__(store, max_conflict_retries=max_conflict_retries)

    @staticmethod
    async def _readers_drained(trx: SharedLockTransaction, key: str) -> bool:
        if await _live_slots(trx.reader, key, utcnow()):
            return False
        await trx.reader.delete_limit(key)
        return True

    @staticmethod
    async def _writer_drained(trx: SharedLockTransaction, key: str) -> bool:
        row = await trx.writer.find(key)
        if row is None:
            return True
        if is_live(row.expiration):
            return False
        await trx.writer.delete(key)
        return True

    async def acquire_writer(self, key: str, owner: str, ttl: Optional[dt.timedelta]) -> bool:
        async def fn(trx: SharedLockTransaction) -> bool:
            if not await self._readers_drained(trx, key):
                return False
            return await _lock_acquire(trx.writer, key, owner, ttl)

        return await self._run(fn, False)

    async def release_writer(self, key: str, owner: str) -> bool:
        return await self._run(lambda trx: _lock_release(trx.writer, key, owner), False)

    async def force_release_writer(self, key: str) -> bool:
        return await self._run(lambda trx: _lock_force_release(trx.writer, key), False)

    async def refresh_writer(self, key: str, owner: str, ttl: dt.timedelta) -> bool:
        return await self._run(lambda trx: _lock_refresh(trx.writer, key, owner, ttl), False)

    async def acquire_reader(self, key: str, slot_id: str, limit: int, ttl: Optional[dt.timedelta]) -> bool:
        async def fn(trx: SharedLockTransaction) -> bool:
            if not await self._writer_drained(trx, key):
                return False
            return await _slot_acquire(trx.reader, key, slot_id, limit, ttl)

        return await self._run(fn, False)

    async def release_reader(self, key: str, slot_id: str) -> bool:
        return await self._run(lambda trx: _slot_release(trx.reader, key, slot_id), False)

    async def force_release_all_readers(self, key: str) -> bool:
        return await self._run(lambda trx: _slot_force_release_all(trx.reader, key), False)

    async def refresh_reader(self, key: str, slot_id: str, ttl: dt.timedelta) -> bool:
        return await self._run(lambda trx: _slot_refresh(trx.reader, key, slot_id, ttl), False)

    async def force_release(self, key: str) -> bool:
        async def fn(trx: SharedLockTransaction) -> bool:
            writer_released = await _lock_force_release(trx.writer, key)
            readers_released = await _slot_force_release_all(trx.reader, key)
            return writer_released or readers_released

        return await self._run(fn, False)

    async def get_state(self, key: str) -> Optional[SharedLockAdapterState]:
        async def fn(trx: SharedLockTransaction) -> Optional[SharedLockAdapterState]:
            writer = await _lock_state(trx.writer, key)
            reader = await _slot_state(trx.reader, key)
            if writer is None and reader is None:
                return None
            return SharedLockAdapterState(writer=writer, reader=reader)

        return await self._run(fn, None)


def resolve_lock_adapter(adapter: Union[LockAdapter, DatabaseLockStore]) -> LockAdapter:
    if isinstance(adapter, DatabaseLockStore):
        return DatabaseLockAdapter(adapter)
    return adapter


def resolve_semaphore_adapter(adapter: Union[SemaphoreAdapter, DatabaseSemaphoreStore]) -> SemaphoreAdapter:
    if isinstance(adapter, DatabaseSemaphoreStore):
        return DatabaseSemaphoreAdapter(adapter)
    return adapter


def resolve_shared_lock_adapter(adapter: Union[SharedLockAdapter, DatabaseSharedLockStore]) -> SharedLockAdapter:
    if isinstance(adapter, DatabaseSharedLockStore):
        return DatabaseSharedLockAdapter(adapter)
    return adapter
