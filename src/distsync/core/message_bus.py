"""In-memory asynchronous message bus and the fire-and-forget event dispatcher."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Iterable, Optional, Protocol, Set, Union

from distsync.core.models import EventEnvelope, EventType
from distsync.utils.logging import get_logger


EventTypes = Union[EventType, Iterable[EventType]]

_CLOSED_MARKER = "__bus_closed__"


class Publisher(Protocol):
    async def publish(self, envelope: EventEnvelope) -> None:
        ...


def as_event_types(event_types: EventTypes) -> Set[EventType]:
    if isinstance(event_types, EventType):
        return {event_types}
    return set(event_types)


def is_closed_marker(envelope: EventEnvelope) -> bool:
    return bool(envelope.payload.get(_CLOSED_MARKER))


@dataclass(slots=True, eq=False)
class _Subscription:
    queue: "asyncio.Queue[EventEnvelope]"
    key_filter: Optional[str]


class MessageBus:
    """Pub/sub bus with optional per-key filtering."""

    def __init__(self) -> None:
        self._topics: Dict[EventType, Set[_Subscription]] = defaultdict(set)
        self._lock = asyncio.Lock()
        self._closed = False

    async def publish(self, envelope: EventEnvelope) -> None:
        """Publish an event to subscribers."""
        if self._closed:
            raise RuntimeError("MessageBus is closed")

        async with self._lock:
            subscriptions = list(self._topics.get(envelope.type, set()))

        for subscription in subscriptions:
            if subscription.key_filter and subscription.key_filter != envelope.key:
                continue
            _put_dropping_oldest(subscription.queue, envelope)

    async def subscribe(
        self,
        event_types: EventTypes,
        *,
        key: Optional[str] = None,
        max_queue: int = 100,
    ) -> AsyncIterator[EventEnvelope]:
        """Yield events of the given type(s), optionally only for one key.

        The iterator ends when the bus is closed.
        """
        if self._closed:
            raise RuntimeError("MessageBus is closed")

        types = as_event_types(event_types)
        queue: "asyncio.Queue[EventEnvelope]" = asyncio.Queue(max_queue)
        subscription = _Subscription(queue=queue, key_filter=key)
        async with self._lock:
            for event_type in types:
                self._topics[event_type].add(subscription)

        try:
            while True:
                envelope = await queue.get()
                if is_closed_marker(envelope):
                    return
                yield envelope
        finally:
            async with self._lock:
                for event_type in types:
                    self._topics[event_type].discard(subscription)

    async def close(self) -> None:
        """Stop accepting new events and unblock subscribers."""
        self._closed = True
        async with self._lock:
            topics = list(self._topics.items())
            self._topics.clear()
        # A subscription to several types is woken once, on the first of its topics.
        notified: Set[_Subscription] = set()
        for event_type, subscriptions in topics:
            sentinel = EventEnvelope(
                type=event_type,
                key="*",
                payload={"message": "MessageBus closed", _CLOSED_MARKER: True},
            )
            for subscription in subscriptions - notified:
                _put_dropping_oldest(subscription.queue, sentinel)
                notified.add(subscription)


def _put_dropping_oldest(queue: "asyncio.Queue[EventEnvelope]", envelope: EventEnvelope) -> None:
    try:
        queue.put_nowait(envelope)
    except asyncio.QueueFull:
        # Backpressure: drop oldest so the newest event always lands.
        try:
            queue.get_nowait()
        except asyncio.QueueEmpty:
            pass
        queue.put_nowait(envelope)


class EventDispatcher:
    """Publishes envelopes in background tasks; failures are logged, never raised."""

    def __init__(self, bus: Optional[Publisher] = None) -> None:
        self._bus = bus
        self._pending: Set["asyncio.Task[None]"] = set()
        self.logger = get_logger("events")

    @property
    def bus(self) -> Optional[Publisher]:
        return self._bus

    def dispatch(self, envelope: EventEnvelope) -> None:
        if self._bus is None:
            return
        task = asyncio.get_running_loop().create_task(self._publish(envelope))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _publish(self, envelope: EventEnvelope) -> None:
        assert self._bus is not None
        try:
            await self._bus.publish(envelope)
        except Exception:
            self.logger.warning("Dropped %s event for %s", envelope.type.value, envelope.key, exc_info=True)

    async def drain(self) -> None:
        """Wait for in-flight publishes; used on shutdown and in tests."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
