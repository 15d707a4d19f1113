"""Fixed-interval polling used by every ``*_blocking`` operation."""

from __future__ import annotations

import asyncio
import datetime as dt
import inspect
from typing import Awaitable, Callable, Optional, TypeVar, Union


T = TypeVar("T")

# Zero-argument callable: a function, a closure, or an object with __call__.
Invokable = Callable[[], Union[Awaitable[T], T]]


async def resolve_invokable(fn: Invokable[T]) -> T:
    result = fn()
    if inspect.isawaitable(result):
        return await result
    return result


async def _pause(interval: dt.timedelta, cancel_event: Optional[asyncio.Event]) -> bool:
    """Sleep for ``interval``; return True if ``cancel_event`` fired meanwhile."""
    seconds = max(interval.total_seconds(), 0.0)
    if cancel_event is None:
        await asyncio.sleep(seconds)
        return False
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return False
    return True


async def acquire_blocking(
    acquire: Callable[[], Awaitable[bool]],
    *,
    time: dt.timedelta,
    interval: dt.timedelta,
    cancel_event: Optional[asyncio.Event] = None,
) -> bool:
    """Poll ``acquire`` every ``interval`` until it succeeds or ``time`` elapses.

    The interval is constant: waiting on a lock must not back off, so the
    worst-case latency after a release stays bounded by one interval. There
    is no ordering between concurrent waiters.

    At least one attempt is always made. Setting ``cancel_event`` ends the wait
    early and reports ``False``; cancelling the task itself propagates
    ``CancelledError`` as usual.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + max(time.total_seconds(), 0.0)
    while True:
        if await acquire():
            return True
        if cancel_event is not None and cancel_event.is_set():
            return False
        left = deadline - loop.time()
        if left <= 0:
            return False
        pause = min(interval, dt.timedelta(seconds=left))
        if await _pause(pause, cancel_event):
            return False
