"""Data models shared across adapters, handles and the message bus."""

from __future__ import annotations

import datetime as dt
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Generic, Literal, Optional, Tuple, TypeVar

from pydantic import BaseModel, Field

from distsync.core.errors import FailedAcquireError


T = TypeVar("T")


class EventType(str, Enum):
    """Domain events published after each handle operation."""

    LOCK_ACQUIRED = "lock.acquired"
    LOCK_NOT_AVAILABLE = "lock.not_available"
    LOCK_RELEASED = "lock.released"
    LOCK_FAILED_RELEASE = "lock.failed_release"
    LOCK_FORCE_RELEASED = "lock.force_released"
    LOCK_REFRESHED = "lock.refreshed"
    LOCK_FAILED_REFRESH = "lock.failed_refresh"
    LOCK_UNEXPECTED_ERROR = "lock.unexpected_error"

    SEMAPHORE_ACQUIRED = "semaphore.acquired"
    SEMAPHORE_LIMIT_REACHED = "semaphore.limit_reached"
    SEMAPHORE_RELEASED = "semaphore.released"
    SEMAPHORE_FAILED_RELEASE = "semaphore.failed_release"
    SEMAPHORE_ALL_FORCE_RELEASED = "semaphore.all_force_released"
    SEMAPHORE_REFRESHED = "semaphore.refreshed"
    SEMAPHORE_FAILED_REFRESH = "semaphore.failed_refresh"
    SEMAPHORE_UNEXPECTED_ERROR = "semaphore.unexpected_error"

    WRITER_ACQUIRED = "shared_lock.writer_acquired"
    WRITER_RELEASED = "shared_lock.writer_released"
    WRITER_FAILED_RELEASE = "shared_lock.writer_failed_release"
    WRITER_FORCE_RELEASED = "shared_lock.writer_force_released"
    WRITER_REFRESHED = "shared_lock.writer_refreshed"
    WRITER_FAILED_REFRESH = "shared_lock.writer_failed_refresh"
    READER_ACQUIRED = "shared_lock.reader_acquired"
    READER_RELEASED = "shared_lock.reader_released"
    READER_FAILED_RELEASE = "shared_lock.reader_failed_release"
    READER_ALL_FORCE_RELEASED = "shared_lock.reader_all_force_released"
    READER_REFRESHED = "shared_lock.reader_refreshed"
    READER_FAILED_REFRESH = "shared_lock.reader_failed_refresh"
    SHARED_LOCK_UNAVAILABLE = "shared_lock.unavailable"
    SHARED_LOCK_FORCE_RELEASED = "shared_lock.force_released"
    SHARED_LOCK_UNEXPECTED_ERROR = "shared_lock.unexpected_error"


class EventEnvelope(BaseModel):
    """Wrapper to transport coordination events through the message bus."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    created_at: dt.datetime = Field(default_factory=lambda: dt.datetime.now(dt.timezone.utc))
    type: EventType
    key: str
    handle_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    trace_id: Optional[str] = None


# Adapter level state, as read from the backing store.

@dataclass(slots=True)
class LockAdapterState:
    owner: str
    expiration: Optional[dt.datetime]


@dataclass(slots=True)
class SemaphoreAdapterState:
    limit: int
    acquired_slots: Dict[str, Optional[dt.datetime]]


@dataclass(slots=True)
class SharedLockAdapterState:
    writer: Optional[LockAdapterState] = None
    reader: Optional[SemaphoreAdapterState] = None


# Handle level state, as seen by one handle id.

class LockStateType(str, Enum):
    EXPIRED = "EXPIRED"
    UNAVAILABLE = "UNAVAILABLE"
    ACQUIRED = "ACQUIRED"


@dataclass(slots=True, frozen=True)
class LockState:
    type: LockStateType
    owner: Optional[str] = None
    remaining_time: Optional[dt.timedelta] = None


class SemaphoreStateType(str, Enum):
    EXPIRED = "EXPIRED"
    ACQUIRED = "ACQUIRED"
    UNACQUIRED = "UNACQUIRED"
    LIMIT_REACHED = "LIMIT_REACHED"


@dataclass(slots=True, frozen=True)
class SemaphoreState:
    type: SemaphoreStateType
    limit: Optional[int] = None
    acquired_slots: Tuple[str, ...] = ()
    remaining_time: Optional[dt.timedelta] = None

    @property
    def acquired_slots_count(self) -> int:
        return len(self.acquired_slots)

    @property
    def free_slots_count(self) -> int:
        if self.limit is None:
            return 0
        return max(self.limit - len(self.acquired_slots), 0)


class SharedLockStateType(str, Enum):
    EXPIRED = "EXPIRED"
    WRITER_ACQUIRED = "WRITER_ACQUIRED"
    WRITER_UNAVAILABLE = "WRITER_UNAVAILABLE"
    READER_ACQUIRED = "READER_ACQUIRED"
    READER_UNACQUIRED = "READER_UNACQUIRED"
    READER_LIMIT_REACHED = "READER_LIMIT_REACHED"


@dataclass(slots=True, frozen=True)
class SharedLockState:
    type: SharedLockStateType
    owner: Optional[str] = None
    limit: Optional[int] = None
    acquired_slots: Tuple[str, ...] = ()
    remaining_time: Optional[dt.timedelta] = None

    @property
    def acquired_slots_count(self) -> int:
        return len(self.acquired_slots)

    @property
    def free_slots_count(self) -> int:
        if self.limit is None:
            return 0
        return max(self.limit - len(self.acquired_slots), 0)


@dataclass(slots=True, frozen=True)
class RunResult(Generic[T]):
    """Outcome of ``run``: either the callback value or the acquire failure."""

    value: Optional[T] = None
    error: Optional[FailedAcquireError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


# Wire formats for handle serialization.

class SerializedLock(BaseModel):
    version: Literal["1"] = "1"
    key: str
    id: str
    ttl_ms: Optional[int] = None
    namespace: str


class SerializedSemaphore(SerializedLock):
    limit: int = Field(ge=1)


class SerializedSharedLock(SerializedLock):
    limit: int = Field(ge=1)


class SerializedEnvelope(BaseModel):
    tag: str
    payload: Dict[str, Any]
