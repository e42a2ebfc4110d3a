"""
local_db.py - SQLite Storage for Queued Mutations and Cached Reads

This module handles all SQLite operations for the offline engine:
the mutation queue, the read cache, dead-lettered mutations and the
activity log. Every write is committed before the call returns.
"""

import asyncio
import json
import logging
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiosqlite

from .config import DB_PATH
from .errors import StorageError, StorageQuotaExceeded
from .models import MutationRecord, SyncStatus

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("LocalDB")

SQLITE_FULL = 13

_SCHEMA = [
    '''
    CREATE TABLE IF NOT EXISTS mutations (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT UNIQUE NOT NULL,
        created_at REAL NOT NULL,
        endpoint TEXT NOT NULL,
        action TEXT NOT NULL,
        payload TEXT NOT NULL,
        priority TEXT NOT NULL DEFAULT 'normal',
        priority_rank INTEGER NOT NULL DEFAULT 1,
        retry_count INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL DEFAULT 'pending',
        next_attempt_at REAL NOT NULL DEFAULT 0,
        last_error TEXT DEFAULT NULL
    )
    ''',
    '''
    DROP INDEX IF EXISTS idx_mutations_order
    ''',
    '''
    CREATE INDEX IF NOT EXISTS idx_mutations_fifo
    ON mutations (status, priority_rank, seq)
    ''',
    '''
    CREATE TABLE IF NOT EXISTS cache (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        stored_at REAL NOT NULL,
        expires_at REAL NOT NULL
    )
    ''',
    '''
    CREATE INDEX IF NOT EXISTS idx_cache_expiry ON cache (expires_at)
    ''',
    '''
    CREATE TABLE IF NOT EXISTS dead_letters (
        id TEXT PRIMARY KEY,
        created_at REAL NOT NULL,
        failed_at REAL NOT NULL,
        endpoint TEXT NOT NULL,
        action TEXT NOT NULL,
        payload TEXT NOT NULL,
        priority TEXT NOT NULL,
        retry_count INTEGER NOT NULL,
        last_error TEXT
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS activity_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_type TEXT NOT NULL,
        status TEXT DEFAULT 'pending',
        details TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    ''',
]


class LocalDatabase:
    """Async SQLite manager for offline engine storage."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = str(db_path or DB_PATH)
        self._conn: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    async def open(self):
        """Open the connection and create the schema if needed."""
        if self._conn is not None:
            return
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        async with self._guard("open"):
            self._conn = await aiosqlite.connect(self.db_path)
            self._conn.row_factory = aiosqlite.Row
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.execute("PRAGMA synchronous=FULL")
            for statement in _SCHEMA:
                await self._conn.execute(statement)
            await self._conn.commit()
        logger.info(f"SQLite database initialized at: {self.db_path}")

    async def close(self):
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StorageError("Database is not open")
        return self._conn

    @asynccontextmanager
    async def _guard(self, operation: str):
        """Translate sqlite failures into the engine's storage errors."""
        try:
            yield
        except aiosqlite.Error as e:
            if _is_disk_full(e):
                logger.error(f"Storage full during {operation}: {e}")
                raise StorageQuotaExceeded(f"Storage full during {operation}") from e
            logger.error(f"Storage failure during {operation}: {e}")
            raise StorageError(f"Storage failure during {operation}: {e}") from e

    @asynccontextmanager
    async def _transaction(self, operation: str):
        """Serialize a multi-statement write and commit or roll it back as a unit."""
        async with self._write_lock:
            async with self._guard(operation):
                try:
                    yield self.conn
                    await self.conn.commit()
                except BaseException:
                    await self.conn.rollback()
                    raise

    async def _fetchall(self, operation: str, sql: str, params=()) -> List[aiosqlite.Row]:
        async with self._guard(operation):
            async with self.conn.execute(sql, params) as cursor:
                return list(await cursor.fetchall())

    async def _fetchone(self, operation: str, sql: str, params=()) -> Optional[aiosqlite.Row]:
        async with self._guard(operation):
            async with self.conn.execute(sql, params) as cursor:
                return await cursor.fetchone()

    # ==================== Mutations ====================

    async def insert_mutation(self, record: MutationRecord, max_pending: Optional[int] = None):
        """
        Persist a new mutation.

        Args:
            record: The record to store
            max_pending: Queue capacity; raises StorageQuotaExceeded when reached
        """
        async with self._transaction("insert_mutation") as conn:
            if max_pending is not None:
                async with conn.execute("SELECT COUNT(*) FROM mutations") as cursor:
                    (count,) = await cursor.fetchone()
                if count >= max_pending:
                    raise StorageQuotaExceeded(
                        f"Mutation queue is full ({count}/{max_pending} records)"
                    )
            await conn.execute('''
                INSERT INTO mutations
                (id, created_at, endpoint, action, payload, priority, priority_rank,
                 retry_count, status, next_attempt_at, last_error)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (
                record.id,
                record.created_at,
                record.endpoint,
                record.action,
                json.dumps(record.payload),
                record.priority.value,
                record.priority.rank,
                record.retry_count,
                record.status.value,
                record.next_attempt_at,
                record.last_error,
            ))

    async def get_mutation(self, record_id: str) -> Optional[MutationRecord]:
        row = await self._fetchone(
            "get_mutation", "SELECT * FROM mutations WHERE id = ?", (record_id,)
        )
        return MutationRecord.from_row(row) if row else None

    async def update_mutation(self, record: MutationRecord, expected_status: SyncStatus) -> bool:
        """
        Write back status, retry bookkeeping and error of a record.

        The update only applies if the stored row is still in expected_status.
        Returns True when a row was changed.
        """
        async with self._transaction("update_mutation") as conn:
            cursor = await conn.execute('''
                UPDATE mutations
                SET status = ?, retry_count = ?, next_attempt_at = ?, last_error = ?
                WHERE id = ? AND status = ?
            ''', (
                record.status.value,
                record.retry_count,
                record.next_attempt_at,
                record.last_error,
                record.id,
                expected_status.value,
            ))
            return cursor.rowcount == 1

    async def delete_mutation(self, record_id: str) -> bool:
        async with self._transaction("delete_mutation") as conn:
            cursor = await conn.execute("DELETE FROM mutations WHERE id = ?", (record_id,))
            return cursor.rowcount == 1

    async def archive_failed_mutation(self, record: MutationRecord, failed_at: float):
        """Move a terminally failed mutation into dead_letters."""
        async with self._transaction("archive_failed_mutation") as conn:
            await conn.execute('''
                INSERT OR REPLACE INTO dead_letters
                (id, created_at, failed_at, endpoint, action, payload, priority,
                 retry_count, last_error)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (
                record.id,
                record.created_at,
                failed_at,
                record.endpoint,
                record.action,
                json.dumps(record.payload),
                record.priority.value,
                record.retry_count,
                record.last_error,
            ))
            await conn.execute("DELETE FROM mutations WHERE id = ?", (record.id,))

    async def get_mutations(self, status: Optional[SyncStatus] = None,
                            limit: Optional[int] = None) -> List[MutationRecord]:
        """Mutations in transmission order: priority tier, then insertion order."""
        sql = "SELECT * FROM mutations"
        params: list = []
        if status is not None:
            sql += " WHERE status = ?"
            params.append(status.value)
        sql += " ORDER BY priority_rank ASC, seq ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        rows = await self._fetchall("get_mutations", sql, params)
        return [MutationRecord.from_row(row) for row in rows]

    async def count_mutations(self, status: Optional[SyncStatus] = None) -> int:
        if status is None:
            row = await self._fetchone("count_mutations", "SELECT COUNT(*) FROM mutations")
        else:
            row = await self._fetchone(
                "count_mutations",
                "SELECT COUNT(*) FROM mutations WHERE status = ?",
                (status.value,),
            )
        return row[0]

    async def reset_syncing_mutations(self) -> int:
        """Return interrupted 'syncing' rows to 'pending'."""
        async with self._transaction("reset_syncing_mutations") as conn:
            cursor = await conn.execute(
                "UPDATE mutations SET status = 'pending' WHERE status = 'syncing'"
            )
            return cursor.rowcount

    async def clear_mutations(self) -> int:
        async with self._transaction("clear_mutations") as conn:
            cursor = await conn.execute("DELETE FROM mutations")
            return cursor.rowcount

    async def get_dead_letters(self, limit: int = 100) -> List[Dict[str, Any]]:
        rows = await self._fetchall(
            "get_dead_letters",
            "SELECT * FROM dead_letters ORDER BY failed_at DESC LIMIT ?",
            (limit,),
        )
        letters = []
        for row in rows:
            letter = dict(row)
            letter["payload"] = json.loads(letter["payload"])
            letters.append(letter)
        return letters

    # ==================== Cache ====================

    async def put_cache(self, key: str, value: Any, stored_at: float, expires_at: float):
        try:
            encoded = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Cache value for '{key}' is not JSON serializable: {e}") from e
        async with self._transaction("put_cache") as conn:
            await conn.execute('''
                INSERT INTO cache (key, value, stored_at, expires_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    stored_at = excluded.stored_at,
                    expires_at = excluded.expires_at
            ''', (key, encoded, stored_at, expires_at))

    async def get_cache(self, key: str) -> Optional[Dict[str, Any]]:
        row = await self._fetchone("get_cache", "SELECT * FROM cache WHERE key = ?", (key,))
        if row is None:
            return None
        entry = dict(row)
        entry["value"] = json.loads(entry["value"])
        return entry

    async def delete_cache(self, key: str) -> bool:
        async with self._transaction("delete_cache") as conn:
            cursor = await conn.execute("DELETE FROM cache WHERE key = ?", (key,))
            return cursor.rowcount == 1

    async def clear_cache(self, key_prefix: str = "") -> int:
        async with self._transaction("clear_cache") as conn:
            if key_prefix:
                cursor = await conn.execute(
                    "DELETE FROM cache WHERE substr(key, 1, ?) = ?",
                    (len(key_prefix), key_prefix),
                )
            else:
                cursor = await conn.execute("DELETE FROM cache")
            return cursor.rowcount

    async def delete_expired_cache(self, now: float) -> int:
        async with self._transaction("delete_expired_cache") as conn:
            cursor = await conn.execute("DELETE FROM cache WHERE expires_at <= ?", (now,))
            return cursor.rowcount

    async def get_cache_keys(self, key_prefix: str = "") -> List[Dict[str, Any]]:
        rows = await self._fetchall(
            "get_cache_keys",
            "SELECT key, stored_at, expires_at FROM cache WHERE substr(key, 1, ?) = ? ORDER BY key",
            (len(key_prefix), key_prefix),
        )
        return [dict(row) for row in rows]

    # ==================== Activity Logging ====================

    async def log_activity(self, event_type: str, status: str = 'pending', details: str = None):
        """Log an engine activity event."""
        async with self._transaction("log_activity") as conn:
            await conn.execute('''
                INSERT INTO activity_logs (event_type, status, details)
                VALUES (?, ?, ?)
            ''', (event_type, status, details))

    async def get_recent_logs(self, limit: int = 50) -> List[Dict]:
        """Get recent activity logs, newest first."""
        rows = await self._fetchall(
            "get_recent_logs",
            "SELECT * FROM activity_logs ORDER BY id DESC LIMIT ?",
            (limit,),
        )
        return [dict(row) for row in rows]


def _is_disk_full(error: Exception) -> bool:
    code = getattr(error, "sqlite_errorcode", None)
    if code is not None and code & 0xFF == SQLITE_FULL:
        return True
    return isinstance(error, sqlite3.OperationalError) and "full" in str(error).lower()
