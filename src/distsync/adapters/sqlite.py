"""SQLite record stores for the generic database adapters.

``SqliteDatabase`` owns one aiosqlite connection and hands out the three
store views. Every transaction starts with ``BEGIN IMMEDIATE`` so the write
lock is taken before the first read; concurrent processes sharing the file
are serialized by SQLite itself and coroutines of this process by an
``asyncio.Lock``.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import re
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, TypeVar, Union

import aiosqlite

from distsync.adapters.sweeper import ExpirySweeper
from distsync.core.errors import AdapterError, RecordConflictError
from distsync.core.locks import (
    DatabaseLockStore,
    DatabaseSemaphoreStore,
    DatabaseSharedLockStore,
    LockRow,
    LockTransaction,
    SemaphoreTransaction,
    SharedLockTransaction,
    SlotRow,
)
from distsync.utils.clock import from_millis, to_millis, utcnow
from distsync.utils.logging import get_logger


T = TypeVar("T")

_PREFIX_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS {p}_locks (
    key TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    expiration INTEGER
);
CREATE TABLE IF NOT EXISTS {p}_semaphores (
    key TEXT PRIMARY KEY,
    slot_limit INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS {p}_semaphore_slots (
    key TEXT NOT NULL,
    slot_id TEXT NOT NULL,
    expiration INTEGER,
    PRIMARY KEY (key, slot_id)
);
CREATE TABLE IF NOT EXISTS {p}_shared_writers (
    key TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    expiration INTEGER
);
CREATE TABLE IF NOT EXISTS {p}_shared_readers (
    key TEXT PRIMARY KEY,
    slot_limit INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS {p}_shared_reader_slots (
    key TEXT NOT NULL,
    slot_id TEXT NOT NULL,
    expiration INTEGER,
    PRIMARY KEY (key, slot_id)
);
"""


def _to_ms(expiration: Optional[dt.datetime]) -> Optional[int]:
    return None if expiration is None else to_millis(expiration)


def _from_ms(value: Optional[int]) -> Optional[dt.datetime]:
    return None if value is None else from_millis(value)


class _SqliteLockTransaction(LockTransaction):
    def __init__(self, conn: aiosqlite.Connection, table: str) -> None:
        self._conn = conn
        self._table = table

    async def find(self, key: str) -> Optional[LockRow]:
        async with self._conn.execute(
            f"SELECT owner, expiration FROM {self._table} WHERE key = ?", (key,)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return LockRow(owner=row[0], expiration=_from_ms(row[1]))

    async def insert(self, key: str, owner: str, expiration: Optional[dt.datetime]) -> None:
        await self._conn.execute(
            f"INSERT INTO {self._table} (key, owner, expiration) VALUES (?, ?, ?)",
            (key, owner, _to_ms(expiration)),
        )

    async def update(self, key: str, owner: str, expiration: Optional[dt.datetime]) -> int:
        cursor = await self._conn.execute(
            f"UPDATE {self._table} SET owner = ?, expiration = ? WHERE key = ?",
            (owner, _to_ms(expiration), key),
        )
        return cursor.rowcount

    async def delete(self, key: str) -> Optional[LockRow]:
        row = await self.find(key)
        if row is not None:
            await self._conn.execute(f"DELETE FROM {self._table} WHERE key = ?", (key,))
        return row


class _SqliteSemaphoreTransaction(SemaphoreTransaction):
    def __init__(self, conn: aiosqlite.Connection, limits_table: str, slots_table: str) -> None:
        self._conn = conn
        self._limits = limits_table
        self._slots = slots_table

    async def find_limit(self, key: str) -> Optional[int]:
        async with self._conn.execute(f"SELECT slot_limit FROM {self._limits} WHERE key = ?", (key,)) as cursor:
            row = await cursor.fetchone()
        return None if row is None else int(row[0])

    async def upsert_limit(self, key: str, limit: int) -> None:
        await self._conn.execute(
            f"INSERT INTO {self._limits} (key, slot_limit) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET slot_limit = excluded.slot_limit",
            (key, limit),
        )

    async def delete_limit(self, key: str) -> None:
        await self._conn.execute(f"DELETE FROM {self._limits} WHERE key = ?", (key,))

    async def find_slots(self, key: str) -> List[SlotRow]:
        async with self._conn.execute(
            f"SELECT slot_id, expiration FROM {self._slots} WHERE key = ? ORDER BY slot_id", (key,)
        ) as cursor:
            rows = await cursor.fetchall()
        return [SlotRow(slot_id=row[0], expiration=_from_ms(row[1])) for row in rows]

    async def upsert_slot(self, key: str, slot_id: str, expiration: Optional[dt.datetime]) -> None:
        await self._conn.execute(
            f"INSERT INTO {self._slots} (key, slot_id, expiration) VALUES (?, ?, ?) "
            "ON CONFLICT(key, slot_id) DO UPDATE SET expiration = excluded.expiration",
            (key, slot_id, _to_ms(expiration)),
        )

    async def delete_slot(self, key: str, slot_id: str) -> Optional[SlotRow]:
        async with self._conn.execute(
            f"SELECT slot_id, expiration FROM {self._slots} WHERE key = ? AND slot_id = ?", (key, slot_id)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        await self._conn.execute(f"DELETE FROM {self._slots} WHERE key = ? AND slot_id = ?", (key, slot_id))
        return SlotRow(slot_id=row[0], expiration=_from_ms(row[1]))

    async def delete_slots(self, key: str) -> List[SlotRow]:
        rows = await self.find_slots(key)
        await self._conn.execute(f"DELETE FROM {self._slots} WHERE key = ?", (key,))
        return rows


class _SqliteSharedLockTransaction(SharedLockTransaction):
    def __init__(self, writer: _SqliteLockTransaction, reader: _SqliteSemaphoreTransaction) -> None:
        self._writer = writer
        self._reader = reader

    @property
    def writer(self) -> LockTransaction:
        return self._writer

    @property
    def reader(self) -> SemaphoreTransaction:
        return self._reader


class SqliteDatabase:
    """Connection owner for the SQLite record stores.

    The connection opens lazily on the first transaction, or explicitly via
    ``init``. Pass ``sweep_interval`` to delete expired rows in the
    background; reads never depend on it.
    """

    def __init__(
        self,
        path: Union[str, Path] = ":memory:",
        *,
        table_prefix: str = "distsync",
        sweep_interval: Optional[dt.timedelta] = None,
        busy_timeout: dt.timedelta = dt.timedelta(seconds=5),
    ) -> None:
        if not _PREFIX_RE.match(table_prefix):
            raise ValueError(f"Invalid table prefix {table_prefix!r}")
        self._path = str(path)
        self._prefix = table_prefix
        self._busy_timeout = busy_timeout
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self.logger = get_logger("SqliteDatabase")
        self._sweeper: Optional[ExpirySweeper] = None
        if sweep_interval is not None:
            self._sweeper = ExpirySweeper(self.purge_expired, interval=sweep_interval, name="SqliteDatabase")

    @property
    def path(self) -> str:
        return self._path

    def table(self, name: str) -> str:
        return f"{self._prefix}_{name}"

    async def init(self) -> None:
        if self._conn is None:
            await self._connect()
        if self._sweeper:
            await self._sweeper.start()

    async def _connect(self) -> aiosqlite.Connection:
        if self._path != ":memory:":
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = await aiosqlite.connect(
                self._path,
                timeout=self._busy_timeout.total_seconds(),
                isolation_level=None,
            )
            if self._path != ":memory:":
                await conn.execute("PRAGMA journal_mode=WAL")
            await conn.executescript(_SCHEMA.format(p=self._prefix))
        except aiosqlite.Error as exc:
            raise AdapterError(f"Unable to open SQLite database {self._path!r}: {exc}") from exc
        self._conn = conn
        self.logger.debug("Opened SQLite database %s", self._path)
        return conn

    async def close(self) -> None:
        if self._sweeper:
            await self._sweeper.stop()
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> "SqliteDatabase":
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _rollback(self, conn: aiosqlite.Connection) -> None:
        try:
            await conn.execute("ROLLBACK")
        except aiosqlite.Error as exc:
            self.logger.warning("Rollback failed: %s", exc)

    async def run_transaction(self, fn: Callable[[aiosqlite.Connection], Awaitable[T]]) -> T:
        async with self._lock:
            conn = self._conn or await self._connect()
            try:
                await conn.execute("BEGIN IMMEDIATE")
            except aiosqlite.Error as exc:
                raise AdapterError(f"Unable to begin transaction: {exc}") from exc
            try:
                result = await fn(conn)
            except aiosqlite.IntegrityError as exc:
                await self._rollback(conn)
                raise RecordConflictError(str(exc)) from exc
            except aiosqlite.Error as exc:
                await self._rollback(conn)
                raise AdapterError(f"SQLite transaction failed: {exc}") from exc
            except BaseException:
                await self._rollback(conn)
                raise
            try:
                await conn.execute("COMMIT")
            except aiosqlite.Error as exc:
                await self._rollback(conn)
                raise AdapterError(f"Unable to commit transaction: {exc}") from exc
            return result

    def _lock_trx(self, conn: aiosqlite.Connection) -> _SqliteLockTransaction:
        return _SqliteLockTransaction(conn, self.table("locks"))

    def _semaphore_trx(self, conn: aiosqlite.Connection) -> _SqliteSemaphoreTransaction:
        return _SqliteSemaphoreTransaction(conn, self.table("semaphores"), self.table("semaphore_slots"))

    def _shared_lock_trx(self, conn: aiosqlite.Connection) -> _SqliteSharedLockTransaction:
        return _SqliteSharedLockTransaction(
            _SqliteLockTransaction(conn, self.table("shared_writers")),
            _SqliteSemaphoreTransaction(conn, self.table("shared_readers"), self.table("shared_reader_slots")),
        )

    def lock_store(self) -> "SqliteLockStore":
        return SqliteLockStore(self)

    def semaphore_store(self) -> "SqliteSemaphoreStore":
        return SqliteSemaphoreStore(self)

    def shared_lock_store(self) -> "SqliteSharedLockStore":
        return SqliteSharedLockStore(self)

    async def purge_expired(self) -> int:
        """Delete expired rows and limits left without slots; return rows removed."""
        now = to_millis(utcnow())

        async def purge(conn: aiosqlite.Connection) -> int:
            removed = 0
            for name in ("locks", "semaphore_slots", "shared_writers", "shared_reader_slots"):
                cursor = await conn.execute(
                    f"DELETE FROM {self.table(name)} WHERE expiration IS NOT NULL AND expiration <= ?",
                    (now,),
                )
                removed += max(cursor.rowcount, 0)
            for limits, slots in (("semaphores", "semaphore_slots"), ("shared_readers", "shared_reader_slots")):
                await conn.execute(
                    f"DELETE FROM {self.table(limits)} "
                    f"WHERE key NOT IN (SELECT DISTINCT key FROM {self.table(slots)})"
                )
            return removed

        return await self.run_transaction(purge)


class SqliteLockStore(DatabaseLockStore):
    def __init__(self, database: SqliteDatabase) -> None:
        self._database = database

    async def transaction(self, fn: Callable[[LockTransaction], Awaitable[T]]) -> T:
        return await self._database.run_transaction(lambda conn: fn(self._database._lock_trx(conn)))


class SqliteSemaphoreStore(DatabaseSemaphoreStore):
    def __init__(self, database: SqliteDatabase) -> None:
        self._database = database

    async def transaction(self, fn: Callable[[SemaphoreTransaction], Awaitable[T]]) -> T:
        return await self._database.run_transaction(lambda conn: fn(self._database._semaphore_trx(conn)))


class SqliteSharedLockStore(DatabaseSharedLockStore):
    def __init__(self, database: SqliteDatabase) -> None:
        self._database = database

    async def transaction(self, fn: Callable[[SharedLockTransaction], Awaitable[T]]) -> T:
        return await self._database.run_transaction(lambda conn: fn(self._database._shared_lock_trx(conn)))
