"""Structured audit logger writing coordination events as JSON Lines."""

from __future__ import annotations

import asyncio
import datetime as dt
import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from distsync.core.message_bus import EventTypes
from distsync.core.models import EventEnvelope, EventType
from distsync.utils.logging import get_logger


class AuditLogger:
    """Persist an audit trail of acquisitions, releases and failures."""

    def __init__(self, path: Optional[Path] = None) -> None:
        target = path or Path(os.getenv("DISTSYNC_AUDIT_LOG", "artifacts/audit.log"))
        target.parent.mkdir(parents=True, exist_ok=True)
        self._path = target
        self._lock = asyncio.Lock()
        self.logger = get_logger("AuditLogger")

    @property
    def path(self) -> Path:
        return self._path

    async def log(self, *, event: str, key: str, payload: Dict[str, Any], handle_id: Optional[str] = None) -> None:
        record = {
            "timestamp": dt.datetime.now(dt.timezone.utc).isoformat(),
            "event": event,
            "key": key,
            "handle_id": handle_id,
            "payload": payload,
        }
        async with self._lock:
            await asyncio.to_thread(self._append_line, record)

    async def record(self, envelope: EventEnvelope) -> None:
        record = {
            "timestamp": envelope.created_at.isoformat(),
            "event": envelope.type.value,
            "key": envelope.key,
            "handle_id": envelope.handle_id,
            "event_id": envelope.id,
            "payload": envelope.payload,
        }
        async with self._lock:
            await asyncio.to_thread(self._append_line, record)

    async def consume(self, bus: Any, event_types: Optional[EventTypes] = None) -> None:
        """Record every matching event until the bus subscription ends."""
        types = event_types if event_types is not None else list(EventType)
        async for envelope in bus.subscribe(types):
            try:
                await self.record(envelope)
            except OSError as exc:
                self.logger.warning("Unable to write audit entry for %s: %s", envelope.key, exc)

    def _append_line(self, record: Dict[str, Any]) -> None:
        with self._path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(record, ensure_ascii=True, default=str))
            fh.write("\n")
