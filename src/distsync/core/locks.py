"""Abstract interfaces for coordination backends.

Two layers live here:

* ``LockAdapter``, ``SemaphoreAdapter`` and ``SharedLockAdapter`` are the
  atomicity contract handles rely on. Each method must perform its whole
  read-check-write as one atomic unit from the store's point of view (a
  single scripted command, an immediate transaction, or a map mutation
  with no suspension point). Two owners must never both see ``True``.
* ``DatabaseLockStore`` and friends describe plain record stores that are
  not atomic per operation but can run a callback inside a transaction.
  ``distsync.adapters.database`` lifts them onto the adapter contract.

Every expiration passed through these interfaces is an aware UTC datetime,
or ``None`` for records that never expire.
"""

from __future__ import annotations

import abc
import datetime as dt
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, TypeVar

from distsync.core.models import LockAdapterState, SemaphoreAdapterState, SharedLockAdapterState


T = TypeVar("T")


class LockAdapter(abc.ABC):
    @abc.abstractmethod
    async def acquire(self, key: str, owner: str, ttl: Optional[dt.timedelta]) -> bool:  # pragma: no cover - interface
        """Write the record if absent, expired, or already held by ``owner``."""
        raise NotImplementedError

    @abc.abstractmethod
    async def release(self, key: str, owner: str) -> bool:  # pragma: no cover - interface
        """Remove the record only if ``owner`` holds it and it is live."""
        raise NotImplementedError

    @abc.abstractmethod
    async def force_release(self, key: str) -> bool:  # pragma: no cover - interface
        """Remove the record regardless of owner; True if a live one existed."""
        raise NotImplementedError

    @abc.abstractmethod
    async def refresh(self, key: str, owner: str, ttl: dt.timedelta) -> bool:  # pragma: no cover - interface
        """Extend a live, expirable record held by ``owner``."""
        raise NotImplementedError

    @abc.abstractmethod
    async def get_state(self, key: str) -> Optional[LockAdapterState]:  # pragma: no cover - interface
        raise NotImplementedError


class SemaphoreAdapter(abc.ABC):
    @abc.abstractmethod
    async def acquire(
        self, key: str, slot_id: str, limit: int, ttl: Optional[dt.timedelta]
    ) -> bool:  # pragma: no cover - interface
        """Add ``slot_id`` if the live slot count stays within the stored limit."""
        raise NotImplementedError

    @abc.abstractmethod
    async def release(self, key: str, slot_id: str) -> bool:  # pragma: no cover - interface
        raise NotImplementedError

    @abc.abstractmethod
    async def force_release_all(self, key: str) -> bool:  # pragma: no cover - interface
        raise NotImplementedError

    @abc.abstractmethod
    async def refresh(self, key: str, slot_id: str, ttl: dt.timedelta) -> bool:  # pragma: no cover - interface
        raise NotImplementedError

    @abc.abstractmethod
    async def get_state(self, key: str) -> Optional[SemaphoreAdapterState]:  # pragma: no cover - interface
        raise NotImplementedError


class SharedLockAdapter(abc.ABC):
    """Reader/writer record. Writer and reader sides are mutually exclusive."""

    @abc.abstractmethod
    async def acquire_writer(self, key: str, owner: str, ttl: Optional[dt.timedelta]) -> bool:  # pragma: no cover
        raise NotImplementedError

    @abc.abstractmethod
    async def release_writer(self, key: str, owner: str) -> bool:  # pragma: no cover
        raise NotImplementedError

    @abc.abstractmethod
    async def force_release_writer(self, key: str) -> bool:  # pragma: no cover
        raise NotImplementedError

    @abc.abstractmethod
    async def refresh_writer(self, key: str, owner: str, ttl: dt.timedelta) -> bool:  # pragma: no cover
        raise NotImplementedError

    @abc.abstractmethod
    async def acquire_reader(
        self, key: str, slot_id: str, limit: int, ttl: Optional[dt.timedelta]
    ) -> bool:  # pragma: no cover
        raise NotImplementedError

    @abc.abstractmethod
    async def release_reader(self, key: str, slot_id: str) -> bool:  # pragma: no cover
        raise NotImplementedError

    @abc.abstractmethod
    async def force_release_all_readers(self, key: str) -> bool:  # pragma: no cover
        raise NotImplementedError

    @abc.abstractmethod
    async def refresh_reader(self, key: str, slot_id: str, ttl: dt.timedelta) -> bool:  # pragma: no cover
        raise NotImplementedError

    @abc.abstractmethod
    async def force_release(self, key: str) -> bool:  # pragma: no cover
        """Clear whichever side is active."""
        raise NotImplementedError

    @abc.abstractmethod
    async def get_state(self, key: str) -> Optional[SharedLockAdapterState]:  # pragma: no cover
        raise NotImplementedError


# Record stores

@dataclass(slots=True)
class LockRow:
    owner: str
    expiration: Optional[dt.datetime]


@dataclass(slots=True)
class SlotRow:
    slot_id: str
    expiration: Optional[dt.datetime]


class LockTransaction(abc.ABC):
    @abc.abstractmethod
    async def find(self, key: str) -> Optional[LockRow]:  # pragma: no cover - interface
        """Return the row whether or not it has expired."""
        raise NotImplementedError

    @abc.abstractmethod
    async def insert(self, key: str, owner: str, expiration: Optional[dt.datetime]) -> None:  # pragma: no cover
        """Insert a new row; raise ``RecordConflictError`` if the key exists."""
        raise NotImplementedError

    @abc.abstractmethod
    async def update(self, key: str, owner: str, expiration: Optional[dt.datetime]) -> int:  # pragma: no cover
        """Overwrite owner and expiration of an existing row; return rows touched."""
        raise NotImplementedError

    @abc.abstractmethod
    async def delete(self, key: str) -> Optional[LockRow]:  # pragma: no cover - interface
        raise NotImplementedError


class SemaphoreTransaction(abc.ABC):
    @abc.abstractmethod
    async def find_limit(self, key: str) -> Optional[int]:  # pragma: no cover - interface
        raise NotImplementedError

    @abc.abstractmethod
    async def upsert_limit(self, key: str, limit: int) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    @abc.abstractmethod
    async def delete_limit(self, key: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    @abc.abstractmethod
    async def find_slots(self, key: str) -> List[SlotRow]:  # pragma: no cover - interface
        """Return every slot row, expired ones included."""
        raise NotImplementedError

    @abc.abstractmethod
    async def upsert_slot(self, key: str, slot_id: str, expiration: Optional[dt.datetime]) -> None:  # pragma: no cover
        raise NotImplementedError

    @abc.abstractmethod
    async def delete_slot(self, key: str, slot_id: str) -> Optional[SlotRow]:  # pragma: no cover - interface
        raise NotImplementedError

    @abc.abstractmethod
    async def delete_slots(self, key: str) -> List[SlotRow]:  # pragma: no cover - interface
        raise NotImplementedError


class SharedLockTransaction(abc.ABC):
    @property
    @abc.abstractmethod
    def writer(self) -> LockTransaction:  # pragma: no cover - interface
        raise NotImplementedError

    @property
    @abc.abstractmethod
    def reader(self) -> SemaphoreTransaction:  # pragma: no cover - interface
        raise NotImplementedError


class DatabaseLockStore(abc.ABC):
    @abc.abstractmethod
    async def transaction(self, fn: Callable[[LockTransaction], Awaitable[T]]) -> T:  # pragma: no cover
        """Run ``fn`` in one transaction, committing on return and rolling back on error."""
        raise NotImplementedError


class DatabaseSemaphoreStore(abc.ABC):
    @abc.abstractmethod
    async def transaction(self, fn: Callable[[SemaphoreTransaction], Awaitable[T]]) -> T:  # pragma: no cover
        raise NotImplementedError


class DatabaseSharedLockStore(abc.ABC):
    @abc.abstractmethod
    async def transaction(self, fn: Callable[[SharedLockTransaction], Awaitable[T]]) -> T:  # pragma: no cover
        raise NotImplementedError
