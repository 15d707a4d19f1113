"""Event bus over one Redis Stream, so several processes see the same events."""

from __future__ import annotations

import json
from typing import AsyncIterator, List, Optional, Set, Tuple

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError, ResponseError

from distsync.core.message_bus import EventTypes, as_event_types
from distsync.core.models import EventEnvelope, EventType
from distsync.utils.logging import get_logger


def _group_name(types: Set[EventType], key: Optional[str]) -> str:
    name = "g:" + ",".join(sorted(event_type.value for event_type in types))
    return f"{name}:{key}" if key else name


class RedisMessageBus:
    """Publishes envelopes with XADD and reads them back through consumer groups.

    Subscribers with the same event types and key share a consumer group by
    default, so each entry is delivered to one of them; pass a distinct
    ``group`` to fan out instead. The stream is capped at roughly ``maxlen``
    entries.
    """

    def __init__(
        self,
        url: str,
        *,
        stream: str = "distsync.events",
        maxlen: Optional[int] = 10_000,
        block: int = 1000,
    ) -> None:
        self._redis = Redis.from_url(url, decode_responses=True)
        self._stream = stream
        self._maxlen = maxlen
        self._block = block
        self._closed = False
        self.logger = get_logger("RedisMessageBus")

    @property
    def stream(self) -> str:
        return self._stream

    async def publish(self, envelope: EventEnvelope) -> None:
        if self._closed:
            raise RuntimeError("RedisMessageBus is closed")
        fields = {"type": envelope.type.value, "event": json.dumps(envelope.model_dump(mode="json"))}
        await self._redis.xadd(self._stream, fields, maxlen=self._maxlen, approximate=True)

    async def _ensure_group(self, group: str) -> None:
        try:
            await self._redis.xgroup_create(self._stream, group, id="$", mkstream=True)
        except ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise

    async def _read(self, group: str, consumer: str) -> List[Tuple[str, dict]]:
        response = await self._redis.xreadgroup(
            group, consumer, {self._stream: ">"}, count=10, block=self._block
        )
        if not response:
            return []
        _, entries = response[0]
        return entries

    def _decode(self, entry_id: str, fields: dict) -> Optional[EventEnvelope]:
        raw = fields.get("event")
        if not raw:
            return None
        try:
            return EventEnvelope.model_validate_json(raw)
        except ValidationError as exc:
            self.logger.warning("Skipping malformed stream entry %s: %s", entry_id, exc)
            return None

    async def subscribe(
        self,
        event_types: EventTypes,
        *,
        key: Optional[str] = None,
        group: Optional[str] = None,
        consumer: Optional[str] = None,
    ) -> AsyncIterator[EventEnvelope]:
        """Yield new events of the given type(s); ends once the bus is closed."""
        types = as_event_types(event_types)
        group = group or _group_name(types, key)
        consumer = consumer or f"c:{id(self)}"
        await self._ensure_group(group)

        while not self._closed:
            try:
                entries = await self._read(group, consumer)
            except RedisError:
                if self._closed:
                    return
                raise
            for entry_id, fields in entries:
                try:
                    envelope = self._decode(entry_id, fields)
                    if envelope is None or envelope.type not in types:
                        continue
                    if key and envelope.key != key:
                        continue
                    yield envelope
                finally:
                    if not self._closed:
                        await self._redis.xack(self._stream, group, entry_id)

    async def close(self) -> None:
        self._closed = True
        await self._redis.aclose()
