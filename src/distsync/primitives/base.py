"""Plumbing shared by the lock, semaphore and shared-lock handles."""

from __future__ import annotations

import asyncio
import datetime as dt
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from distsync.core.blocking import Invokable, acquire_blocking, resolve_invokable
from distsync.core.errors import AdapterError, CoordinationError, FailedAcquireError
from distsync.core.message_bus import EventDispatcher
from distsync.core.models import EventEnvelope, EventType, RunResult
from distsync.core.namespace import Namespace
from distsync.utils.clock import TtlLike, as_timedelta, ttl_to_millis
from distsync.utils.logging import get_logger


A = TypeVar("A")
T = TypeVar("T")


@dataclass(frozen=True)
class HandleContext(Generic[A]):
    """Provider configuration every handle it creates is bound to."""

    adapter: A
    namespace: Namespace
    dispatcher: EventDispatcher
    default_blocking_time: dt.timedelta
    default_blocking_interval: dt.timedelta
    default_refresh_ttl: dt.timedelta


class BaseHandle(Generic[A]):
    unexpected_error_event: EventType

    def __init__(self, context: HandleContext[A], key: str, handle_id: str, ttl: Optional[dt.timedelta]) -> None:
        self._context = context
        self._key = key
        self._id = handle_id
        self._ttl = ttl
        self._entered = False
        self.logger = get_logger(type(self).__name__)

    @property
    def key(self) -> str:
        return self._key

    @property
    def id(self) -> str:
        return self._id

    @property
    def ttl(self) -> Optional[dt.timedelta]:
        return self._ttl

    @property
    def namespace(self) -> Namespace:
        return self._context.namespace

    @property
    def context(self) -> HandleContext[A]:
        return self._context

    @property
    def _adapter(self) -> A:
        return self._context.adapter

    @property
    def _stored_key(self) -> str:
        return self._context.namespace.key(self._key)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(key={self._key!r}, id={self._id!r}, namespace={str(self.namespace)!r})"

    def _emit(self, event_type: EventType, **payload: Any) -> None:
        envelope = EventEnvelope(
            type=event_type,
            key=self._key,
            handle_id=self._id,
            payload={"namespace": str(self.namespace), **payload},
        )
        self._context.dispatcher.dispatch(envelope)

    async def _call(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run one adapter call; backend failures surface as ``AdapterError``."""
        try:
            return await fn()
        except AdapterError as exc:
            self._report_unexpected(operation, exc)
            raise
        except CoordinationError:
            raise
        except Exception as exc:
            self._report_unexpected(operation, exc)
            raise AdapterError(f"{operation} failed for {self._stored_key!r}: {exc}") from exc

    def _report_unexpected(self, operation: str, exc: BaseException) -> None:
        self.logger.warning("Unexpected error during %s on %s: %s", operation, self._stored_key, exc)
        self._emit(
            self.unexpected_error_event,
            operation=operation,
            error=repr(exc),
            ttl_ms=ttl_to_millis(self._ttl),
        )

    def _refresh_ttl(self, ttl: Optional[TtlLike]) -> dt.timedelta:
        return self._context.default_refresh_ttl if ttl is None else as_timedelta(ttl)

    async def _run(
        self,
        acquire: Callable[[], Awaitable[bool]],
        release: Callable[[], Awaitable[bool]],
        failure: Callable[[], FailedAcquireError],
        fn: Invokable[T],
    ) -> RunResult[T]:
        if not await acquire():
            return RunResult(error=failure())
        try:
            value = await resolve_invokable(fn)
        finally:
            await release()
        return RunResult(value=value)

    async def _blocking(
        self,
        acquire: Callable[[], Awaitable[bool]],
        *,
        time: Optional[TtlLike],
        interval: Optional[TtlLike],
        cancel_event: Optional[asyncio.Event],
    ) -> bool:
        return await acquire_blocking(
            acquire,
            time=self._context.default_blocking_time if time is None else as_timedelta(time),
            interval=self._context.default_blocking_interval if interval is None else as_timedelta(interval),
            cancel_event=cancel_event,
        )
