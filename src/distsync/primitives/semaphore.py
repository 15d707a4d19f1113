"""Counting semaphore handle."""

from __future__ import annotations

import asyncio
import datetime as dt
from typing import Optional, TypeVar

from distsync.core.blocking import Invokable
from distsync.core.errors import (
    FailedRefreshSemaphoreError,
    FailedReleaseSemaphoreError,
    LimitReachedSemaphoreError,
)
from distsync.core.locks import SemaphoreAdapter
from distsync.core.models import EventType, RunResult, SemaphoreState, SemaphoreStateType
from distsync.primitives.base import BaseHandle, HandleContext
from distsync.utils.clock import TtlLike, remaining, ttl_to_millis


T = TypeVar("T")


class Semaphore(BaseHandle[SemaphoreAdapter]):
    """Handle over one slot of a semaphore; ``id`` is the slot id.

    ``limit`` only takes effect when this handle revives a drained record;
    while slots are live the stored limit wins.
    """

    unexpected_error_event = EventType.SEMAPHORE_UNEXPECTED_ERROR

    def __init__(
        self,
        context: HandleContext[SemaphoreAdapter],
        key: str,
        handle_id: str,
        ttl: Optional[dt.timedelta],
        limit: int,
    ) -> None:
        if limit < 1:
            raise ValueError(f"Semaphore limit must be at least 1, got {limit}")
        super().__init__(context, key, handle_id, ttl)
        self._limit = limit

    @property
    def limit(self) -> int:
        return self._limit

    async def acquire(self) -> bool:
        acquired = await self._call(
            "acquire", lambda: self._adapter.acquire(self._stored_key, self._id, self._limit, self._ttl)
        )
        if acquired:
            self.logger.debug("Acquired slot %s of %s", self._id, self._stored_key)
            self._emit(EventType.SEMAPHORE_ACQUIRED, limit=self._limit, ttl_ms=ttl_to_millis(self._ttl))
        else:
            self.logger.debug("Semaphore %s has no free slot", self._stored_key)
            self._emit(EventType.SEMAPHORE_LIMIT_REACHED, limit=self._limit)
        return acquired

    async def acquire_or_fail(self) -> None:
        if not await self.acquire():
            raise self._acquire_error()

    async def release(self) -> bool:
        released = await self._call("release", lambda: self._adapter.release(self._stored_key, self._id))
        if released:
            self._emit(EventType.SEMAPHORE_RELEASED)
        else:
            self._emit(EventType.SEMAPHORE_FAILED_RELEASE)
        return released

    async def release_or_fail(self) -> None:
        if not await self.release():
            raise FailedReleaseSemaphoreError(f"Slot {self._id!r} of semaphore {self._key!r} is not held")

    async def force_release_all(self) -> bool:
        released = await self._call("force_release_all", lambda: self._adapter.force_release_all(self._stored_key))
        if released:
            self.logger.debug("Force released every slot of %s", self._stored_key)
        self._emit(EventType.SEMAPHORE_ALL_FORCE_RELEASED, released=released)
        return released

    async def refresh(self, ttl: Optional[TtlLike] = None) -> bool:
        new_ttl = self._refresh_ttl(ttl)
        refreshed = await self._call(
            "refresh", lambda: self._adapter.refresh(self._stored_key, self._id, new_ttl)
        )
        if refreshed:
            self._emit(EventType.SEMAPHORE_REFRESHED, ttl_ms=ttl_to_millis(new_ttl))
        else:
            self._emit(EventType.SEMAPHORE_FAILED_REFRESH)
        return refreshed

    async def refresh_or_fail(self, ttl: Optional[TtlLike] = None) -> None:
        if not await self.refresh(ttl):
            raise FailedRefreshSemaphoreError(f"Slot {self._id!r} of semaphore {self._key!r} cannot be refreshed")

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

    async def get_state(self) -> SemaphoreState:
        state = await self._call("get_state", lambda: self._adapter.get_state(self._stored_key))
        if state is None:
            return SemaphoreState(type=SemaphoreStateType.EXPIRED)
        slots = tuple(state.acquired_slots)
        if self._id in state.acquired_slots:
            return SemaphoreState(
                type=SemaphoreStateType.ACQUIRED,
                limit=state.limit,
                acquired_slots=slots,
                remaining_time=remaining(state.acquired_slots[self._id]),
            )
        if len(slots) >= state.limit:
            return SemaphoreState(type=SemaphoreStateType.LIMIT_REACHED, limit=state.limit, acquired_slots=slots)
        return SemaphoreState(type=SemaphoreStateType.UNACQUIRED, limit=state.limit, acquired_slots=slots)

    def _acquire_error(self) -> LimitReachedSemaphoreError:
        return LimitReachedSemaphoreError(f"Semaphore {self._key!r} has reached its limit")

    async def __aenter__(self) -> bool:
        self._entered = await self.acquire()
        return self._entered

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._entered:
            self._entered = False
            await self.release()
