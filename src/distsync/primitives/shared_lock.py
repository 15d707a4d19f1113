"""Reader-writer lock handle.

One record, two mutually exclusive modes. The writer side behaves like
``Lock`` and the reader side like ``Semaphore`` with ``limit`` concurrent
readers. The handle id is both the writer owner and the reader slot id.
"""

from __future__ import annotations

import asyncio
import datetime as dt
from typing import Optional, TypeVar

from distsync.core.blocking import Invokable
from distsync.core.errors import (
    FailedAcquireWriterLockError,
    FailedRefreshReaderSemaphoreError,
    FailedRefreshWriterLockError,
    FailedReleaseReaderSemaphoreError,
    FailedReleaseWriterLockError,
    LimitReachedReaderSemaphoreError,
)
from distsync.core.locks import SharedLockAdapter
from distsync.core.models import EventType, RunResult, SharedLockState, SharedLockStateType
from distsync.primitives.base import BaseHandle, HandleContext
from distsync.utils.clock import TtlLike, remaining, ttl_to_millis


T = TypeVar("T")


class SharedLock(BaseHandle[SharedLockAdapter]):
    unexpected_error_event = EventType.SHARED_LOCK_UNEXPECTED_ERROR

    def __init__(
        self,
        context: HandleContext[SharedLockAdapter],
        key: str,
        handle_id: str,
        ttl: Optional[dt.timedelta],
        limit: int,
    ) -> None:
        if limit < 1:
            raise ValueError(f"Reader limit must be at least 1, got {limit}")
        super().__init__(context, key, handle_id, ttl)
        self._limit = limit

    @property
    def limit(self) -> int:
        return self._limit

    # Writer

    async def acquire_writer(self) -> bool:
        acquired = await self._call(
            "acquire_writer", lambda: self._adapter.acquire_writer(self._stored_key, self._id, self._ttl)
        )
        if acquired:
            self.logger.debug("Acquired writer on %s as %s", self._stored_key, self._id)
            self._emit(EventType.WRITER_ACQUIRED, ttl_ms=ttl_to_millis(self._ttl))
        else:
            self.logger.debug("Writer on %s is blocked", self._stored_key)
            self._emit(EventType.SHARED_LOCK_UNAVAILABLE, mode="writer")
        return acquired

    async def acquire_writer_or_fail(self) -> None:
        if not await self.acquire_writer():
            raise self._writer_error()

    async def release_writer(self) -> bool:
        released = await self._call(
            "release_writer", lambda: self._adapter.release_writer(self._stored_key, self._id)
        )
        self._emit(EventType.WRITER_RELEASED if released else EventType.WRITER_FAILED_RELEASE)
        return released

    async def release_writer_or_fail(self) -> None:
        if not await self.release_writer():
            raise FailedReleaseWriterLockError(f"Writer of {self._key!r} is not owned by {self._id!r}")

    async def force_release_writer(self) -> bool:
        released = await self._call(
            "force_release_writer", lambda: self._adapter.force_release_writer(self._stored_key)
        )
        self._emit(EventType.WRITER_FORCE_RELEASED, released=released)
        return released

    async def refresh_writer(self, ttl: Optional[TtlLike] = None) -> bool:
        new_ttl = self._refresh_ttl(ttl)
        refreshed = await self._call(
            "refresh_writer", lambda: self._adapter.refresh_writer(self._stored_key, self._id, new_ttl)
        )
        if refreshed:
            self._emit(EventType.WRITER_REFRESHED, ttl_ms=ttl_to_millis(new_ttl))
        else:
            self._emit(EventType.WRITER_FAILED_REFRESH)
        return refreshed

    async def refresh_writer_or_fail(self, ttl: Optional[TtlLike] = None) -> None:
        if not await self.refresh_writer(ttl):
            raise FailedRefreshWriterLockError(f"Writer of {self._key!r} cannot be refreshed by {self._id!r}")

    async def acquire_writer_blocking(
        self,
        *,
        time: Optional[TtlLike] = None,
        interval: Optional[TtlLike] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> bool:
        return await self._blocking(self.acquire_writer, time=time, interval=interval, cancel_event=cancel_event)

    async def acquire_writer_blocking_or_fail(
        self,
        *,
        time: Optional[TtlLike] = None,
        interval: Optional[TtlLike] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> None:
        if not await self.acquire_writer_blocking(time=time, interval=interval, cancel_event=cancel_event):
            raise self._writer_error()

    async def run_writer(self, fn: Invokable[T]) -> RunResult[T]:
        return await self._run(self.acquire_writer, self.release_writer, self._writer_error, fn)

    async def run_writer_or_fail(self, fn: Invokable[T]) -> T:
        return (await self.run_writer(fn)).unwrap()

    async def run_writer_blocking(
        self,
        fn: Invokable[T],
        *,
        time: Optional[TtlLike] = None,
        interval: Optional[TtlLike] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> RunResult[T]:
        async def acquire() -> bool:
            return await self.acquire_writer_blocking(time=time, interval=interval, cancel_event=cancel_event)

        return await self._run(acquire, self.release_writer, self._writer_error, fn)

    async def run_writer_blocking_or_fail(
        self,
        fn: Invokable[T],
        *,
        time: Optional[TtlLike] = None,
        interval: Optional[TtlLike] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> T:
        result = await self.run_writer_blocking(fn, time=time, interval=interval, cancel_event=cancel_event)
        return result.unwrap()

    # Reader

    async def acquire_reader(self) -> bool:
        acquired = await self._call(
            "acquire_reader",
            lambda: self._adapter.acquire_reader(self._stored_key, self._id, self._limit, self._ttl),
        )
        if acquired:
            self.logger.debug("Acquired reader slot %s on %s", self._id, self._stored_key)
            self._emit(EventType.READER_ACQUIRED, limit=self._limit, ttl_ms=ttl_to_millis(self._ttl))
        else:
            self.logger.debug("Reader on %s is blocked", self._stored_key)
            self._emit(EventType.SHARED_LOCK_UNAVAILABLE, mode="reader", limit=self._limit)
        return acquired

    async def acquire_reader_or_fail(self) -> None:
        if not await self.acquire_reader():
            raise self._reader_error()

    async def release_reader(self) -> bool:
        released = await self._call(
            "release_reader", lambda: self._adapter.release_reader(self._stored_key, self._id)
        )
        self._emit(EventType.READER_RELEASED if released else EventType.READER_FAILED_RELEASE)
        return released

    async def release_reader_or_fail(self) -> None:
        if not await self.release_reader():
            raise FailedReleaseReaderSemaphoreError(f"Reader slot {self._id!r} of {self._key!r} is not held")

    async def force_release_all_readers(self) -> bool:
        released = await self._call(
            "force_release_all_readers", lambda: self._adapter.force_release_all_readers(self._stored_key)
        )
        self._emit(EventType.READER_ALL_FORCE_RELEASED, released=released)
        return released

    async def refresh_reader(self, ttl: Optional[TtlLike] = None) -> bool:
        new_ttl = self._refresh_ttl(ttl)
        refreshed = await self._call(
            "refresh_reader", lambda: self._adapter.refresh_reader(self._stored_key, self._id, new_ttl)
        )
        if refreshed:
            self._emit(EventType.READER_REFRESHED, ttl_ms=ttl_to_millis(new_ttl))
        else:
            self._emit(EventType.READER_FAILED_REFRESH)
        return refreshed

    async def refresh_reader_or_fail(self, ttl: Optional[TtlLike] = None) -> None:
        if not await self.refresh_reader(ttl):
            raise FailedRefreshReaderSemaphoreError(f"Reader slot {self._id!r} of {self._key!r} cannot be refreshed")

    async def acquire_reader_blocking(
        self,
        *,
        time: Optional[TtlLike] = None,
        interval: Optional[TtlLike] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> bool:
        return await self._blocking(self.acquire_reader, time=time, interval=interval, cancel_event=cancel_event)

    async def acquire_reader_blocking_or_fail(
        self,
        *,
        time: Optional[TtlLike] = None,
        interval: Optional[TtlLike] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> None:
        if not await self.acquire_reader_blocking(time=time, interval=interval, cancel_event=cancel_event):
            raise self._reader_error()

    async def run_reader(self, fn: Invokable[T]) -> RunResult[T]:
        return await self._run(self.acquire_reader, self.release_reader, self._reader_error, fn)

    async def run_reader_or_fail(self, fn: Invokable[T]) -> T:
        return (await self.run_reader(fn)).unwrap()

    async def run_reader_blocking(
        self,
        fn: Invokable[T],
        *,
        time: Optional[TtlLike] = None,
        interval: Optional[TtlLike] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> RunResult[T]:
        async def acquire() -> bool:
            return await self.acquire_reader_blocking(time=time, interval=interval, cancel_event=cancel_event)

        return await self._run(acquire, self.release_reader, self._reader_error, fn)

    async def run_reader_blocking_or_fail(
        self,
        fn: Invokable[T],
        *,
        time: Optional[TtlLike] = None,
        interval: Optional[TtlLike] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> T:
        result = await self.run_reader_blocking(fn, time=time, interval=interval, cancel_event=cancel_event)
        return result.unwrap()

    # Both modes

    async def force_release(self) -> bool:
        released = await self._call("force_release", lambda: self._adapter.force_release(self._stored_key))
        if released:
            self.logger.debug("Force released %s", self._stored_key)
        self._emit(EventType.SHARED_LOCK_FORCE_RELEASED, released=released)
        return released

    async def get_state(self) -> SharedLockState:
        state = await self._call("get_state", lambda: self._adapter.get_state(self._stored_key))
        if state is None:
            return SharedLockState(type=SharedLockStateType.EXPIRED)
        if state.writer is not None:
            if state.writer.owner == self._id:
                return SharedLockState(
                    type=SharedLockStateType.WRITER_ACQUIRED,
                    owner=state.writer.owner,
                    remaining_time=remaining(state.writer.expiration),
                )
            return SharedLockState(type=SharedLockStateType.WRITER_UNAVAILABLE, owner=state.writer.owner)
        if state.reader is None:
            return SharedLockState(type=SharedLockStateType.EXPIRED)
        reader = state.reader
        slots = tuple(reader.acquired_slots)
        if self._id in reader.acquired_slots:
            return SharedLockState(
                type=SharedLockStateType.READER_ACQUIRED,
                limit=reader.limit,
                acquired_slots=slots,
                remaining_time=remaining(reader.acquired_slots[self._id]),
            )
        if len(slots) >= reader.limit:
            return SharedLockState(type=SharedLockStateType.READER_LIMIT_REACHED, limit=reader.limit, acquired_slots=slots)
        return SharedLockState(type=SharedLockStateType.READER_UNACQUIRED, limit=reader.limit, acquired_slots=slots)

    def _writer_error(self) -> FailedAcquireWriterLockError:
        return FailedAcquireWriterLockError(f"Writer of {self._key!r} is blocked by another writer or by readers")

    def _reader_error(self) -> LimitReachedReaderSemaphoreError:
        return LimitReachedReaderSemaphoreError(f"Reader of {self._key!r} is blocked by a writer or the reader limit")
