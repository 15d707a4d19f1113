"""Distributed locks, semaphores and reader-writer locks over pluggable stores."""

from .core.errors import (
    AdapterError,
    CoordinationError,
    DefaultAdapterNotDefinedError,
    FailedAcquireError,
    SerializationError,
    UnownedRefreshError,
    UnownedReleaseError,
    UnregisteredAdapterError,
)
from .core.message_bus import MessageBus
from .core.models import EventEnvelope, EventType, RunResult
from .core.namespace import Namespace
from .core.serde import SerdeRegistry
from .primitives import (
    Lock,
    LockProvider,
    LockProviderFactory,
    Semaphore,
    SemaphoreProvider,
    SemaphoreProviderFactory,
    SharedLock,
    SharedLockProvider,
    SharedLockProviderFactory,
)

__all__ = [
    "AdapterError",
    "CoordinationError",
    "DefaultAdapterNotDefinedError",
    "EventEnvelope",
    "EventType",
    "FailedAcquireError",
    "Lock",
    "LockProvider",
    "LockProviderFactory",
    "MessageBus",
    "Namespace",
    "RunResult",
    "Semaphore",
    "SemaphoreProvider",
    "SemaphoreProviderFactory",
    "SerdeRegistry",
    "SerializationError",
    "SharedLock",
    "SharedLockProvider",
    "SharedLockProviderFactory",
    "UnownedRefreshError",
    "UnownedReleaseError",
    "UnregisteredAdapterError",
    "__version__",
]

__version__ = "0.1.0"
