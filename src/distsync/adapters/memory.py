"""In-process adapters backed by plain dicts.

Each method reads, checks and writes without awaiting in between, so on a
single event loop every operation is atomic. State is limited to one
process; pass the same ``records`` dict to several adapter instances to
model one shared store (useful in tests).
"""

from __future__ import annotations

import abc
import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Dict, MutableMapping, Optional

from distsync.adapters.sweeper import ExpirySweeper
from distsync.core.locks import LockAdapter, SemaphoreAdapter, SharedLockAdapter
from distsync.core.models import LockAdapterState, SemaphoreAdapterState, SharedLockAdapterState
from distsync.utils.clock import expiration_from, is_live, utcnow


@dataclass(slots=True)
class MemoryLockData:
    owner: str
    expiration: Optional[dt.datetime]


@dataclass(slots=True)
class MemorySemaphoreData:
    limit: int
    slots: Dict[str, Optional[dt.datetime]] = field(default_factory=dict)


@dataclass(slots=True)
class MemorySharedLockData:
    writer: Optional[MemoryLockData] = None
    reader: Optional[MemorySemaphoreData] = None


def _check_limit(limit: int) -> None:
    if limit < 1:
        raise ValueError(f"Semaphore limit must be at least 1, got {limit}")


def _prune_slots(data: MemorySemaphoreData, now: dt.datetime) -> None:
    for slot_id in [slot_id for slot_id, expiration in data.slots.items() if not is_live(expiration, now=now)]:
        del data.slots[slot_id]


def _claim_slot(data: MemorySemaphoreData, slot_id: str, expiration: Optional[dt.datetime]) -> bool:
    if slot_id in data.slots:
        data.slots[slot_id] = expiration
        return True
    if len(data.slots) >= data.limit:
        return False
    data.slots[slot_id] = expiration
    return True


def _extend_slot(data: MemorySemaphoreData, slot_id: str, ttl: dt.timedelta, now: dt.datetime) -> bool:
    if slot_id not in data.slots or data.slots[slot_id] is None:
        return False
    data.slots[slot_id] = now + ttl
    return True


class _MemoryAdapterBase(abc.ABC):
    def __init__(
        self,
        records: Optional[MutableMapping[str, Any]] = None,
        *,
        sweep_interval: Optional[dt.timedelta] = None,
    ) -> None:
        self._records: MutableMapping[str, Any] = records if records is not None else {}
        self._sweeper: Optional[ExpirySweeper] = None
        if sweep_interval is not None:
            self._sweeper = ExpirySweeper(
                self.purge_expired,
                interval=sweep_interval,
                name=type(self).__name__,
            )

    async def init(self) -> None:
        if self._sweeper:
            await self._sweeper.start()

    async def close(self) -> None:
        if self._sweeper:
            await self._sweeper.stop()

    async def __aenter__(self):
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @abc.abstractmethod
    def _live(self, key: str, now: dt.datetime) -> Any:  # pragma: no cover - interface
        """Return the live record for ``key``, dropping it if expired."""
        raise NotImplementedError

    async def purge_expired(self) -> int:
        now = utcnow()
        before = len(self._records)
        for key in list(self._records):
            self._live(key, now)
        return before - len(self._records)


class MemoryLockAdapter(_MemoryAdapterBase, LockAdapter):
    def _live(self, key: str, now: dt.datetime) -> Optional[MemoryLockData]:
        data = self._records.get(key)
        if data is None:
            return None
        if not is_live(data.expiration, now=now):
            del self._records[key]
            return None
        return data

    async def acquire(self, key: str, owner: str, ttl: Optional[dt.timedelta]) -> bool:
        now = utcnow()
        data = self._live(key, now)
        if data is not None and data.owner != owner:
            return False
        self._records[key] = MemoryLockData(owner=owner, expiration=expiration_from(ttl, now=now))
        return True

    async def release(self, key: str, owner: str) -> bool:
        data = self._live(key, utcnow())
        if data is None or data.owner != owner:
            return False
        del self._records[key]
        return True

    async def force_release(self, key: str) -> bool:
        data = self._live(key, utcnow())
        self._records.pop(key, None)
        return data is not None

    async def refresh(self, key: str, owner: str, ttl: dt.timedelta) -> bool:
        now = utcnow()
        data = self._live(key, now)
        if data is None or data.owner != owner or data.expiration is None:
            return False
        data.expiration = now + ttl
        return True

    async def get_state(self, key: str) -> Optional[LockAdapterState]:
        data = self._live(key, utcnow())
        if data is None:
            return None
        return LockAdapterState(owner=data.owner, expiration=data.expiration)


class MemorySemaphoreAdapter(_MemoryAdapterBase, SemaphoreAdapter):
    def _live(self, key: str, now: dt.datetime) -> Optional[MemorySemaphoreData]:
        data = self._records.get(key)
        if data is None:
            return None
        _prune_slots(data, now)
        if not data.slots:
            del self._records[key]
            return None
        return data

    async def acquire(self, key: str, slot_id: str, limit: int, ttl: Optional[dt.timedelta]) -> bool:
        _check_limit(limit)
        now = utcnow()
        data = self._live(key, now)
        if data is None:
            # A drained semaphore takes the limit of whoever revives it.
            data = MemorySemaphoreData(limit=limit)
        acquired = _claim_slot(data, slot_id, expiration_from(ttl, now=now))
        if acquired:
            self._records[key] = data
        return acquired

    async def release(self, key: str, slot_id: str) -> bool:
        data = self._live(key, utcnow())
        if data is None or slot_id not in data.slots:
            return False
        del data.slots[slot_id]
        if not data.slots:
            del self._records[key]
        return True

    async def force_release_all(self, key: str) -> bool:
        data = self._live(key, utcnow())
        self._records.pop(key, None)
        return data is not None

    async def refresh(self, key: str, slot_id: str, ttl: dt.timedelta) -> bool:
        now = utcnow()
        data = self._live(key, now)
        if data is None:
            return False
        return _extend_slot(data, slot_id, ttl, now)

    async def get_state(self, key: str) -> Optional[SemaphoreAdapterState]:
        data = self._live(key, utcnow())
        if data is None:
            return None
        return SemaphoreAdapterState(limit=data.limit, acquired_slots=dict(data.slots))


class MemorySharedLockAdapter(_MemoryAdapterBase, SharedLockAdapter):
    def _live(self, key: str, now: dt.datetime) -> Optional[MemorySharedLockData]:
        data = self._records.get(key)
        if data is None:
            return None
        if data.writer is not None and not is_live(data.writer.expiration, now=now):
            data.writer = None
        if data.reader is not None:
            _prune_slots(data.reader, now)
            if not data.reader.slots:
                data.reader = None
        if data.writer is None and data.reader is None:
            del self._records[key]
            return None
        return data

    async def acquire_writer(self, key: str, owner: str, ttl: Optional[dt.timedelta]) -> bool:
        now = utcnow()
        data = self._live(key, now)
        if data is not None:
            if data.reader is not None:
                return False
            if data.writer is not None and data.writer.owner != owner:
                return False
        writer = MemoryLockData(owner=owner, expiration=expiration_from(ttl, now=now))
        self._records[key] = MemorySharedLockData(writer=writer)
        return True

    async def release_writer(self, key: str, owner: str) -> bool:
        data = self._live(key, utcnow())
        if data is None or data.writer is None or data.writer.owner != owner:
            return False
        del self._records[key]
        return True

    async def force_release_writer(self, key: str) -> bool:
        data = self._live(key, utcnow())
        if data is None or data.writer is None:
            return False
        del self._records[key]
        return True

    async def refresh_writer(self, key: str, owner: str, ttl: dt.timedelta) -> bool:
        now = utcnow()
        data = self._live(key, now)
        if data is None or data.writer is None:
            return False
        writer = data.writer
        if writer.owner != owner or writer.expiration is None:
            return False
        writer.expiration = now + ttl
        return True

    async def acquire_reader(self, key: str, slot_id: str, limit: int, ttl: Optional[dt.timedelta]) -> bool:
        _check_limit(limit)
        now = utcnow()
        data = self._live(key, now)
        if data is not None and data.writer is not None:
            return False
        reader = data.reader if data is not None and data.reader is not None else MemorySemaphoreData(limit=limit)
        acquired = _claim_slot(reader, slot_id, expiration_from(ttl, now=now))
        if acquired:
            self._records[key] = MemorySharedLockData(reader=reader)
        return acquired

    async def release_reader(self, key: str, slot_id: str) -> bool:
        data = self._live(key, utcnow())
        if data is None or data.reader is None or slot_id not in data.reader.slots:
            return False
        del data.reader.slots[slot_id]
        if not data.reader.slots:
            del self._records[key]
        return True

    async def force_release_all_readers(self, key: str) -> bool:
        data = self._live(key, utcnow())
        if data is None or data.reader is None:
            return False
        del self._records[key]
        return True

    async def refresh_reader(self, key: str, slot_id: str, ttl: dt.timedelta) -> bool:
        now = utcnow()
        data = self._live(key, now)
        if data is None or data.reader is None:
            return False
        return _extend_slot(data.reader, slot_id, ttl, now)

    async def force_release(self, key: str) -> bool:
        data = self._live(key, utcnow())
        self._records.pop(key, None)
        return data is not None

    async def get_state(self, key: str) -> Optional[SharedLockAdapterState]:
        data = self._live(key, utcnow())
        if data is None:
            return None
        writer = None
        if data.writer is not None:
            writer = LockAdapterState(owner=data.writer.owner, expiration=data.writer.expiration)
        reader = None
        if data.reader is not None:
            reader = SemaphoreAdapterState(limit=data.reader.limit, acquired_slots=dict(data.reader.slots))
        return SharedLockAdapterState(writer=writer, reader=reader)
