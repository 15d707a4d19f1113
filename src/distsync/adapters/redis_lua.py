"""Redis adapters. Every operation is a single Lua script, hence atomic.

Layout per key:

* lock: hash ``{owner, exp}`` stored under the key itself; ``exp`` is epoch
  ms, 0 for never.
* semaphore: sorted set ``{<key>}:slots`` of slot ids scored by epoch ms
  expiration (0 for never) plus a ``{<key>}:limit`` string.
* shared lock: writer hash ``{<key>}:writer``, reader slots
  ``{<key>}:readers`` and ``{<key>}:readers-limit``.

Multi-key records wrap the resource key in a hash tag and end in a fixed
suffix, so no two resource keys map to the same Redis key and every key of
one record lands on the same Cluster slot.

Records also carry a native Redis expiry so abandoned keys are reclaimed
without a sweeper, but scripts never rely on it: the ``exp`` values are
compared with the caller's clock on every call.
"""

from __future__ import annotations

import datetime as dt
import os
from typing import Any, Dict, List, Optional, Sequence

from redis.asyncio import Redis
from redis.exceptions import RedisError

from distsync.core.errors import AdapterError
from distsync.core.locks import LockAdapter, SemaphoreAdapter, SharedLockAdapter
from distsync.core.models import LockAdapterState, SemaphoreAdapterState, SharedLockAdapterState
from distsync.utils.clock import expiration_from, from_millis, to_millis, utcnow
from distsync.utils.logging import get_logger


_LOCK_HELPERS = """
local function live_owner(key, now)
    local fields = redis.call('HMGET', key, 'owner', 'exp')
    if not fields[1] then
        return false, 0, '0'
    end
    local exp = tonumber(fields[2])
    if exp ~= 0 and exp <= now then
        redis.call('DEL', key)
        return false, 0, '0'
    end
    return fields[1], exp, fields[2]
end

local function write_owner(key, owner, exp)
    redis.call('HSET', key, 'owner', owner, 'exp', exp)
    if tonumber(exp) > 0 then
        redis.call('PEXPIREAT', key, exp)
    else
        redis.call('PERSIST', key)
    end
end
"""

_SLOT_HELPERS = """
local function prune(slots, limit_key, now)
    redis.call('ZREMRANGEBYSCORE', slots, '(0', now)
    local count = redis.call('ZCARD', slots)
    if count == 0 then
        redis.call('DEL', slots, limit_key)
    end
    return count
end

local function touch(slots, limit_key)
    if redis.call('ZCOUNT', slots, 0, 0) > 0 then
        redis.call('PERSIST', slots)
        redis.call('PERSIST', limit_key)
        return
    end
    local last = redis.call('ZRANGE', slots, -1, -1, 'WITHSCORES')
    if last[2] then
        redis.call('PEXPIREAT', slots, last[2])
        redis.call('PEXPIREAT', limit_key, last[2])
    end
end

local function claim(slots, limit_key, slot_id, limit, now, exp)
    local count = prune(slots, limit_key, now)
    local stored = redis.call('GET', limit_key)
    if count == 0 or not stored then
        stored = limit
        redis.call('SET', limit_key, limit)
    end
    if not redis.call('ZSCORE', slots, slot_id) and count >= tonumber(stored) then
        touch(slots, limit_key)
        return 0
    end
    redis.call('ZADD', slots, exp, slot_id)
    touch(slots, limit_key)
    return 1
end
"""

# KEYS: record. ARGV: owner, now, exp.
_LOCK_ACQUIRE = _LOCK_HELPERS + """
local owner = live_owner(KEYS[1], tonumber(ARGV[2]))
if owner and owner ~= ARGV[1] then
    return 0
end
write_owner(KEYS[1], ARGV[1], ARGV[3])
return 1
"""

# KEYS: record. ARGV: owner, now.
_LOCK_RELEASE = _LOCK_HELPERS + """
local owner = live_owner(KEYS[1], tonumber(ARGV[2]))
if owner ~= ARGV[1] then
    return 0
end
redis.call('DEL', KEYS[1])
return 1
"""

# KEYS: record. ARGV: now.
_LOCK_FORCE_RELEASE = _LOCK_HELPERS + """
local owner = live_owner(KEYS[1], tonumber(ARGV[1]))
redis.call('DEL', KEYS[1])
if owner then
    return 1
end
return 0
"""

# KEYS: record. ARGV: owner, now, exp.
_LOCK_REFRESH = _LOCK_HELPERS + """
local owner, exp = live_owner(KEYS[1], tonumber(ARGV[2]))
if owner ~= ARGV[1] or exp == 0 then
    return 0
end
write_owner(KEYS[1], ARGV[1], ARGV[3])
return 1
"""

# KEYS: record. ARGV: now.
_LOCK_STATE = _LOCK_HELPERS + """
local owner, exp, raw_exp = live_owner(KEYS[1], tonumber(ARGV[1]))
if not owner then
    return {}
end
return {owner, raw_exp}
"""

# KEYS: slots, limit. ARGV: slot_id, limit, now, exp.
_SLOT_ACQUIRE = _SLOT_HELPERS + """
return claim(KEYS[1], KEYS[2], ARGV[1], ARGV[2], tonumber(ARGV[3]), ARGV[4])
"""

# KEYS: slots, limit. ARGV: slot_id, now.
_SLOT_RELEASE = _SLOT_HELPERS + """
if prune(KEYS[1], KEYS[2], tonumber(ARGV[2])) == 0 then
    return 0
end
if redis.call('ZREM', KEYS[1], ARGV[1]) == 0 then
    return 0
end
if redis.call('ZCARD', KEYS[1]) == 0 then
    redis.call('DEL', KEYS[1], KEYS[2])
else
    touch(KEYS[1], KEYS[2])
end
return 1
"""

# KEYS: slots, limit. ARGV: now.
_SLOT_FORCE_RELEASE_ALL = _SLOT_HELPERS + """
local count = prune(KEYS[1], KEYS[2], tonumber(ARGV[1]))
redis.call('DEL', KEYS[1], KEYS[2])
if count > 0 then
    return 1
end
return 0
"""

# KEYS: slots, limit. ARGV: slot_id, now, exp.
_SLOT_REFRESH = _SLOT_HELPERS + """
if prune(KEYS[1], KEYS[2], tonumber(ARGV[2])) == 0 then
    return 0
end
local score = redis.call('ZSCORE', KEYS[1], ARGV[1])
if not score or tonumber(score) == 0 then
    return 0
end
redis.call('ZADD', KEYS[1], 'XX', ARGV[3], ARGV[1])
touch(KEYS[1], KEYS[2])
return 1
"""

# KEYS: slots, limit. ARGV: now.
_SLOT_STATE = _SLOT_HELPERS + """
if prune(KEYS[1], KEYS[2], tonumber(ARGV[1])) == 0 then
    return {}
end
local limit = redis.call('GET', KEYS[2]) or tostring(redis.call('ZCARD', KEYS[1]))
return {limit, redis.call('ZRANGE', KEYS[1], 0, -1, 'WITHSCORES')}
"""

# KEYS: writer, readers, readers limit. ARGV: owner, now, exp.
_WRITER_ACQUIRE = _LOCK_HELPERS + _SLOT_HELPERS + """
if prune(KEYS[2], KEYS[3], tonumber(ARGV[2])) > 0 then
    return 0
end
local owner = live_owner(KEYS[1], tonumber(ARGV[2]))
if owner and owner ~= ARGV[1] then
    return 0
end
write_owner(KEYS[1], ARGV[1], ARGV[3])
return 1
"""

# KEYS: writer, readers, readers limit. ARGV: slot_id, limit, now, exp.
_READER_ACQUIRE = _LOCK_HELPERS + _SLOT_HELPERS + """
if live_owner(KEYS[1], tonumber(ARGV[3])) then
    return 0
end
return claim(KEYS[2], KEYS[3], ARGV[1], ARGV[2], tonumber(ARGV[3]), ARGV[4])
"""

# KEYS: writer, readers, readers limit. ARGV: now.
_SHARED_FORCE_RELEASE = _LOCK_HELPERS + _SLOT_HELPERS + """
local now = tonumber(ARGV[1])
local owner = live_owner(KEYS[1], now)
local count = prune(KEYS[2], KEYS[3], now)
redis.call('DEL', KEYS[1], KEYS[2], KEYS[3])
if owner or count > 0 then
    return 1
end
return 0
"""

# KEYS: writer, readers, readers limit. ARGV: now.
# Reply: {writer owner or '', writer exp or '', reader limit or '', reader slots}.
_SHARED_STATE = _LOCK_HELPERS + _SLOT_HELPERS + """
local now = tonumber(ARGV[1])
local owner, exp, raw_exp = live_owner(KEYS[1], now)
local reply = {'', '', '', {}}
if owner then
    reply[1] = owner
    reply[2] = raw_exp
end
if prune(KEYS[2], KEYS[3], now) > 0 then
    reply[3] = redis.call('GET', KEYS[3]) or tostring(redis.call('ZCARD', KEYS[2]))
    reply[4] = redis.call('ZRANGE', KEYS[2], 0, -1, 'WITHSCORES')
end
return reply
"""


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode()
    return str(value)


def _now_ms() -> int:
    return to_millis(utcnow())


def _exp_ms(ttl: Optional[dt.timedelta], now: dt.datetime) -> int:
    expiration = expiration_from(ttl, now=now)
    return 0 if expiration is None else to_millis(expiration)


def _expiration(value: Any) -> Optional[dt.datetime]:
    millis = int(float(_text(value)))
    return None if millis == 0 else from_millis(millis)


def _lock_state(owner: Any, exp: Any) -> LockAdapterState:
    return LockAdapterState(owner=_text(owner), expiration=_expiration(exp))


def _slot_state(limit: Any, flat: Sequence[Any]) -> SemaphoreAdapterState:
    slots: Dict[str, Optional[dt.datetime]] = {}
    for slot_id, score in zip(flat[::2], flat[1::2]):
        slots[_text(slot_id)] = _expiration(score)
    return SemaphoreAdapterState(limit=int(_text(limit)), acquired_slots=slots)


class _RedisAdapterBase:
    def __init__(self, redis: Optional[Redis] = None, *, url: Optional[str] = None) -> None:
        self._owns_client = redis is None
        self._redis = redis or Redis.from_url(url or os.getenv("REDIS_URL", "redis://localhost:6379/0"))
        self.logger = get_logger(type(self).__name__)

    @property
    def redis(self) -> Redis:
        return self._redis

    async def close(self) -> None:
        if self._owns_client:
            await self._redis.aclose()

    async def _call(self, script, keys: List[str], args: List[Any]) -> Any:
        try:
            return await script(keys=keys, args=args)
        except RedisError as exc:
            self.logger.error("Redis script failed on %s: %s", keys[0], exc)
            raise AdapterError(f"Redis operation failed for {keys[0]!r}: {exc}") from exc


class RedisLockAdapter(_RedisAdapterBase, LockAdapter):
    def __init__(self, redis: Optional[Redis] = None, *, url: Optional[str] = None) -> None:
        super().__init__(redis, url=url)
        self._acquire = self._redis.register_script(_LOCK_ACQUIRE)
        self._release = self._redis.register_script(_LOCK_RELEASE)
        self._force_release = self._redis.register_script(_LOCK_FORCE_RELEASE)
        self._refresh = self._redis.register_script(_LOCK_REFRESH)
        self._state = self._redis.register_script(_LOCK_STATE)

    async def acquire(self, key: str, owner: str, ttl: Optional[dt.timedelta]) -> bool:
        now = utcnow()
        return bool(await self._call(self._acquire, [key], [owner, to_millis(now), _exp_ms(ttl, now)]))

    async def release(self, key: str, owner: str) -> bool:
        return bool(await self._call(self._release, [key], [owner, _now_ms()]))

    async def force_release(self, key: str) -> bool:
        return bool(await self._call(self._force_release, [key], [_now_ms()]))

    async def refresh(self, key: str, owner: str, ttl: dt.timedelta) -> bool:
        now = utcnow()
        return bool(await self._call(self._refresh, [key], [owner, to_millis(now), _exp_ms(ttl, now)]))

    async def get_state(self, key: str) -> Optional[LockAdapterState]:
        reply = await self._call(self._state, [key], [_now_ms()])
        if not reply:
            return None
        return _lock_state(reply[0], reply[1])


class RedisSemaphoreAdapter(_RedisAdapterBase, SemaphoreAdapter):
    def __init__(self, redis: Optional[Redis] = None, *, url: Optional[str] = None) -> None:
        super().__init__(redis, url=url)
        self._acquire = self._redis.register_script(_SLOT_ACQUIRE)
        self._release = self._redis.register_script(_SLOT_RELEASE)
        self._force_release_all = self._redis.register_script(_SLOT_FORCE_RELEASE_ALL)
        self._refresh = self._redis.register_script(_SLOT_REFRESH)
        self._state = self._redis.register_script(_SLOT_STATE)

    @staticmethod
    def _keys(key: str) -> List[str]:
        return [f"{{{key}}}:slots", f"{{{key}}}:limit"]

    async def acquire(self, key: str, slot_id: str, limit: int, ttl: Optional[dt.timedelta]) -> bool:
        if limit < 1:
            raise ValueError(f"Semaphore limit must be at least 1, got {limit}")
        now = utcnow()
        args = [slot_id, limit, to_millis(now), _exp_ms(ttl, now)]
        return bool(await self._call(self._acquire, self._keys(key), args))

    async def release(self, key: str, slot_id: str) -> bool:
        return bool(await self._call(self._release, self._keys(key), [slot_id, _now_ms()]))

    async def force_release_all(self, key: str) -> bool:
        return bool(await self._call(self._force_release_all, self._keys(key), [_now_ms()]))

    async def refresh(self, key: str, slot_id: str, ttl: dt.timedelta) -> bool:
        now = utcnow()
        args = [slot_id, to_millis(now), _exp_ms(ttl, now)]
        return bool(await self._call(self._refresh, self._keys(key), args))

    async def get_state(self, key: str) -> Optional[SemaphoreAdapterState]:
        reply = await self._call(self._state, self._keys(key), [_now_ms()])
        if not reply:
            return None
        return _slot_state(reply[0], reply[1])


class RedisSharedLockAdapter(_RedisAdapterBase, SharedLockAdapter):
    """Writer hash at ``{<key>}:writer``; reader slots at ``{<key>}:readers``."""

    def __init__(self, redis: Optional[Redis] = None, *, url: Optional[str] = None) -> None:
        super().__init__(redis, url=url)
        register = self._redis.register_script
        self._acquire_writer = register(_WRITER_ACQUIRE)
        self._release_writer = register(_LOCK_RELEASE)
        self._force_release_writer = register(_LOCK_FORCE_RELEASE)
        self._refresh_writer = register(_LOCK_REFRESH)
        self._acquire_reader = register(_READER_ACQUIRE)
        self._release_reader = register(_SLOT_RELEASE)
        self._force_release_readers = register(_SLOT_FORCE_RELEASE_ALL)
        self._refresh_reader = register(_SLOT_REFRESH)
        self._force_release = register(_SHARED_FORCE_RELEASE)
        self._state = register(_SHARED_STATE)

    @staticmethod
    def _keys(key: str) -> List[str]:
        tagged = f"{{{key}}}"
        return [f"{tagged}:writer", f"{tagged}:readers", f"{tagged}:readers-limit"]

    async def acquire_writer(self, key: str, owner: str, ttl: Optional[dt.timedelta]) -> bool:
        now = utcnow()
        args = [owner, to_millis(now), _exp_ms(ttl, now)]
        return bool(await self._call(self._acquire_writer, self._keys(key), args))

    async def release_writer(self, key: str, owner: str) -> bool:
        return bool(await self._call(self._release_writer, self._keys(key)[:1], [owner, _now_ms()]))

    async def force_release_writer(self, key: str) -> bool:
        return bool(await self._call(self._force_release_writer, self._keys(key)[:1], [_now_ms()]))

    async def refresh_writer(self, key: str, owner: str, ttl: dt.timedelta) -> bool:
        now = utcnow()
        args = [owner, to_millis(now), _exp_ms(ttl, now)]
        return bool(await self._call(self._refresh_writer, self._keys(key)[:1], args))

    async def acquire_reader(self, key: str, slot_id: str, limit: int, ttl: Optional[dt.timedelta]) -> bool:
        if limit < 1:
            raise ValueError(f"Semaphore limit must be at least 1, got {limit}")
        now = utcnow()
        args = [slot_id, limit, to_millis(now), _exp_ms(ttl, now)]
        return bool(await self._call(self._acquire_reader, self._keys(key), args))

    async def release_reader(self, key: str, slot_id: str) -> bool:
        return bool(await self._call(self._release_reader, self._keys(key)[1:], [slot_id, _now_ms()]))

    async def force_release_all_readers(self, key: str) -> bool:
        return bool(await self._call(self._force_release_readers, self._keys(key)[1:], [_now_ms()]))

    async def refresh_reader(self, key: str, slot_id: str, ttl: dt.timedelta) -> bool:
        now = utcnow()
        args = [slot_id, to_millis(now), _exp_ms(ttl, now)]
        return bool(await self._call(self._refresh_reader, self._keys(key)[1:], args))

    async def force_release(self, key: str) -> bool:
        return bool(await self._call(self._force_release, self._keys(key), [_now_ms()]))

    async def get_state(self, key: str) -> Optional[SharedLockAdapterState]:
        owner, exp, limit, slots = await self._call(self._state, self._keys(key), [_now_ms()])
        writer = _lock_state(owner, exp) if _text(owner) else None
        reader = _slot_state(limit, slots) if _text(limit) else None
        if writer is None and reader is None:
            return None
        return SharedLockAdapterState(writer=writer, reader=reader)
