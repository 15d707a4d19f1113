"""Contracts, models and runtime plumbing shared by every backend."""

from .blocking import acquire_blocking
from .locks import (
    DatabaseLockStore,
    DatabaseSemaphoreStore,
    DatabaseSharedLockStore,
    LockAdapter,
    SemaphoreAdapter,
    SharedLockAdapter,
)
from .message_bus import EventDispatcher, MessageBus
from .models import EventEnvelope, EventType
from .runtime import CoordinationRuntime
from .serde import SerdeRegistry
from .settings import CoordinationSettings

__all__ = [
    "CoordinationRuntime",
    "CoordinationSettings",
    "DatabaseLockStore",
    "DatabaseSemaphoreStore",
    "DatabaseSharedLockStore",
    "EventDispatcher",
    "EventEnvelope",
    "EventType",
    "LockAdapter",
    "MessageBus",
    "SemaphoreAdapter",
    "SerdeRegistry",
    "SharedLockAdapter",
    "acquire_blocking",
]
