"""Client-facing handles and the providers that create them."""

from .factory import LockProviderFactory, SemaphoreProviderFactory, SharedLockProviderFactory
from .lock import Lock
from .provider import LockProvider, SemaphoreProvider, SharedLockProvider
from .semaphore import Semaphore
from .shared_lock import SharedLock

__all__ = [
    "Lock",
    "LockProvider",
    "LockProviderFactory",
    "Semaphore",
    "SemaphoreProvider",
    "SemaphoreProviderFactory",
    "SharedLock",
    "SharedLockProvider",
    "SharedLockProviderFactory",
]
