"""Exclusive lock handle."""

from __future__ import annotations

import asyncio
from typing import Optional, TypeVar

from distsync.core.blocking import Invokable
from distsync.core.errors import FailedAcquireLockError, UnownedRefreshLockError, UnownedReleaseLockError
from distsync.core.locks import LockAdapter
from distsync.core.models import EventType, LockState, LockStateType, RunResult
from distsync.primitives.base import BaseHandle
from distsync.utils.clock import TtlLike, remaining, ttl_to_millis


T = TypeVar("T")


class Lock(BaseHandle[LockAdapter]):
    """Handle over one lock record; ``id`` is the owner value.

    Ownership is a value, not a task: any handle created with the same key
    and id (for instance one deserialized in another process) can release or
    refresh the record. Acquiring again with the same id succeeds and resets
    the expiration.

    ``async with lock as acquired:`` acquires on entry and releases on exit
    only when the entry acquired.
    """

    unexpected_error_event = EventType.LOCK_UNEXPECTED_ERROR

    async def acquire(self) -> bool:
        acquired = await self._call("acquire", lambda: self._adapter.acquire(self._stored_key, self._id, self._ttl))
        if acquired:
            self.logger.debug("Acquired %s as %s", self._stored_key, self._id)
            self._emit(EventType.LOCK_ACQUIRED, ttl_ms=ttl_to_millis(self._ttl))
        else:
            self.logger.debug("Lock %s is held by another owner", self._stored_key)
            self._emit(EventType.LOCK_NOT_AVAILABLE)
        return acquired

    async def acquire_or_fail(self) -> None:
        if not await self.acquire():
            raise self._acquire_error()

    async def release(self) -> bool:
        released = await self._call("release", lambda: self._adapter.release(self._stored_key, self._id))
        if released:
            self.logger.debug("Released %s", self._stored_key)
            self._emit(EventType.LOCK_RELEASED)
        else:
            self._emit(EventType.LOCK_FAILED_RELEASE)
        return released

    async def release_or_fail(self) -> None:
        if not await self.release():
            raise UnownedReleaseLockError(f"Lock {self._key!r} is not owned by {self._id!r}")

    async def force_release(self) -> bool:
        released = await self._call("force_release", lambda: self._adapter.force_release(self._stored_key))
        if released:
            self.logger.debug("Force released %s", self._stored_key)
        self._emit(EventType.LOCK_FORCE_RELEASED, released=released)
        return released

    async def refresh(self, ttl: Optional[TtlLike] = None) -> bool:
        """Extend the expiration; always False for a lock created with ``ttl=None``."""
        new_ttl = self._refresh_ttl(ttl)
        refreshed = await self._call(
            "refresh", lambda: self._adapter.refresh(self._stored_key, self._id, new_ttl)
        )
        if refreshed:
            self._emit(EventType.LOCK_REFRESHED, ttl_ms=ttl_to_millis(new_ttl))
        else:
            self._emit(EventType.LOCK_FAILED_REFRESH)
        return refreshed

    async def refresh_or_fail(self, ttl: Optional[TtlLike] = None) -> None:
        if not await self.refresh(ttl):
            raise UnownedRefreshLockError(f"Lock {self._key!r} cannot be refreshed by {self._id!r}")

    async def acquire_blocking(
        self,
        *,
        time: Optional[TtlLike] = None,
        interval: Optional[TtlLike] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> bool:
        return await self._blocking(self.acquire, time=time, interval=interval, cancel_event=cancel_event)

    async def acquire_blocking_or_fail(
        self,
        *,
        time: Optional[TtlLike] = None,
        interval: Optional[TtlLike] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> None:
        if not await self.acquire_blocking(time=time, interval=interval, cancel_event=cancel_event):
            raise self._acquire_error()

    async def run(self, fn: Invokable[T]) -> RunResult[T]:
        return await self._run(self.acquire, self.release, self._acquire_error, fn)

    async def run_or_fail(self, fn: Invokable[T]) -> T:
        return (await self.run(fn)).unwrap()

    async def run_blocking(
        self,
        fn: Invokable[T],
        *,
        time: Optional[TtlLike] = None,
        interval: Optional[TtlLike] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> RunResult[T]:
        async def acquire() -> bool:
            return await self.acquire_blocking(time=time, interval=interval, cancel_event=cancel_event)

        return await self._run(acquire, self.release, self._acquire_error, fn)

    async def run_blocking_or_fail(
        self,
        fn: Invokable[T],
        *,
        time: Optional[TtlLike] = None,
        interval: Optional[TtlLike] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> T:
        result = await self.run_blocking(fn, time=time, interval=interval, cancel_event=cancel_event)
        return result.unwrap()

    async def get_state(self) -> LockState:
        state = await self._call("get_state", lambda: self._adapter.get_state(self._stored_key))
        if state is None:
            return LockState(type=LockStateType.EXPIRED)
        if state.owner == self._id:
            return LockState(
                type=LockStateType.ACQUIRED,
                owner=state.owner,
                remaining_time=remaining(state.expiration),
            )
        return LockState(type=LockStateType.UNAVAILABLE, owner=state.owner)

    def _acquire_error(self) -> FailedAcquireLockError:
        return FailedAcquireLockError(f"Lock {self._key!r} is already acquired by another owner")

    async def __aenter__(self) -> bool:
        self._entered = await self.acquire()
        return self._entered

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._entered:
            self._entered = False
            await self.release()
