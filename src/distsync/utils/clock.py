"""Time helpers for expirations and TTL values."""

from __future__ import annotations

import datetime as dt
from typing import Optional, Union


TtlLike = Union[dt.timedelta, int, float]


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def as_timedelta(value: TtlLike) -> dt.timedelta:
    """Accept a timedelta or a number of seconds."""
    if isinstance(value, dt.timedelta):
        return value
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"Expected timedelta or seconds, got {type(value).__name__}")
    return dt.timedelta(seconds=value)


def as_optional_timedelta(value: Optional[TtlLike]) -> Optional[dt.timedelta]:
    return None if value is None else as_timedelta(value)


def expiration_from(ttl: Optional[dt.timedelta], *, now: Optional[dt.datetime] = None) -> Optional[dt.datetime]:
    if ttl is None:
        return None
    return (now or utcnow()) + ttl


def is_live(expiration: Optional[dt.datetime], *, now: Optional[dt.datetime] = None) -> bool:
    """A record without expiration never expires; one at or past ``now`` is gone."""
    if expiration is None:
        return True
    return expiration > (now or utcnow())


def remaining(expiration: Optional[dt.datetime], *, now: Optional[dt.datetime] = None) -> Optional[dt.timedelta]:
    if expiration is None:
        return None
    return max(expiration - (now or utcnow()), dt.timedelta(0))


def to_millis(value: dt.datetime) -> int:
    return int(value.timestamp() * 1000)


def from_millis(value: int) -> dt.datetime:
    return dt.datetime.fromtimestamp(value / 1000, tz=dt.timezone.utc)


def ttl_to_millis(ttl: Optional[dt.timedelta]) -> Optional[int]:
    if ttl is None:
        return None
    return int(ttl.total_seconds() * 1000)
