"""Exception hierarchy for coordination primitives."""

from __future__ import annotations


class CoordinationError(Exception):
    """Base class for every error raised by distsync."""


class FailedAcquireError(CoordinationError):
    """The primitive is held elsewhere; expected and recoverable."""


class UnownedReleaseError(CoordinationError):
    """Release attempted with an id that does not own a live record."""


class UnownedRefreshError(CoordinationError):
    """Refresh attempted with an id that does not own a live, expirable record."""


class AdapterError(CoordinationError):
    """The backing store failed. Never reported as a plain ``False``."""


class SerializationError(CoordinationError):
    """A handle could not be serialized or reconstructed."""


class RecordConflictError(CoordinationError):
    """A concurrent writer violated a unique constraint inside a record store."""


class DefaultAdapterNotDefinedError(CoordinationError):
    """A provider factory was asked for its default adapter but has none."""


class UnregisteredAdapterError(CoordinationError):
    """A provider factory has no adapter registered under the requested name."""


# Lock

class FailedAcquireLockError(FailedAcquireError):
    pass


class UnownedReleaseLockError(UnownedReleaseError):
    pass


class UnownedRefreshLockError(UnownedRefreshError):
    pass


# Semaphore

class LimitReachedSemaphoreError(FailedAcquireError):
    pass


class FailedReleaseSemaphoreError(UnownedReleaseError):
    pass


class FailedRefreshSemaphoreError(UnownedRefreshError):
    pass


# Shared lock

class FailedAcquireWriterLockError(FailedAcquireError):
    pass


class FailedReleaseWriterLockError(UnownedReleaseError):
    pass


class FailedRefreshWriterLockError(UnownedRefreshError):
    pass


class LimitReachedReaderSemaphoreError(FailedAcquireError):
    """Raised both for a full reader set and for a live writer blocking readers."""


class FailedReleaseReaderSemaphoreError(UnownedReleaseError):
    pass


class FailedRefreshReaderSemaphoreError(UnownedRefreshError):
    pass
