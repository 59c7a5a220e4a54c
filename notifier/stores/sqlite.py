"""SQLite-backed stores for single-host deployments and tests. One database file holds all three."""

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite

from notifier.stores.contract import (
    CURSOR_START,
    GroupAlreadyExistsError,
    LogEntry,
    PendingSummary,
    StoreError,
)

logger = logging.getLogger(__name__)

__all__ = ["SqliteDatabase", "SqliteDelayStore", "SqliteLockStore", "SqliteLogStore"]

_SCHEMA = """
CREATE TABLE IF NOT EXISTS streams (
    name        TEXT PRIMARY KEY,
    created_at  REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS stream_entries (
    seq         INTEGER PRIMARY KEY AUTOINCREMENT,
    stream      TEXT    NOT NULL,
    fields      TEXT    NOT NULL,
    created_at  REAL    NOT NULL
);

CREATE TABLE IF NOT EXISTS stream_groups (
    stream          TEXT    NOT NULL,
    group_name      TEXT    NOT NULL,
    last_delivered  INTEGER NOT NULL DEFAULT 0,
    created_at      REAL    NOT NULL,
    PRIMARY KEY (stream, group_name)
);

CREATE TABLE IF NOT EXISTS stream_pending (
    stream          TEXT    NOT NULL,
    group_name      TEXT    NOT NULL,
    seq             INTEGER NOT NULL,
    consumer        TEXT    NOT NULL,
    delivered_at    REAL    NOT NULL,
    delivery_count  INTEGER NOT NULL DEFAULT 1,
    PRIMARY KEY (stream, group_name, seq)
);

CREATE TABLE IF NOT EXISTS delay_queue (
    queue   TEXT NOT NULL,
    value   TEXT NOT NULL,
    score   REAL NOT NULL,
    PRIMARY KEY (queue, value)
);

CREATE TABLE IF NOT EXISTS lock_keys (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    expires_at  REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_se_stream_seq ON stream_entries(stream, seq);
CREATE INDEX IF NOT EXISTS idx_sp_delivered ON stream_pending(stream, group_name, delivered_at);
CREATE INDEX IF NOT EXISTS idx_dq_score ON delay_queue(queue, score);
"""


def _cursor_seq(cursor: str) -> int:
    """Entry ids are sequence numbers; accept Redis-style '0-0' as the scan start."""
    if not cursor or cursor == CURSOR_START:
        return 0
    return int(cursor.split("-", 1)[0])


class SqliteDatabase:
    """Shared aiosqlite connection. Every store operation runs inside transaction()."""

    def __init__(
        self, db_path: Path, busy_timeout: int = 5000, poll_interval: float = 0.05
    ) -> None:
        self._db_path = db_path
        self._busy_timeout = busy_timeout
        self.poll_interval = poll_interval
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def _ensure_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = await aiosqlite.connect(str(self._db_path))
            await self._conn.execute(f"PRAGMA busy_timeout={self._busy_timeout}")
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.execute("PRAGMA synchronous=NORMAL")
            await self._conn.executescript(_SCHEMA)
            await self._conn.commit()
        return self._conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Serialize coroutines on this connection and hold a write lock across processes."""
        async with self._lock:
            conn = await self._ensure_conn()
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            await conn.commit()

    async def close(self) -> None:
        """Close the database connection."""
        async with self._lock:
            if self._conn:
                await self._conn.close()
                self._conn = None


class SqliteLogStore:
    """Ordered log with consumer groups. Entry id is the row sequence number."""

    def __init__(self, db: SqliteDatabase) -> None:
        self._db = db

    async def append(self, stream: str, fields: dict[str, str]) -> str:
        now = time.time()
        async with self._db.transaction() as conn:
            await conn.execute(
                "INSERT OR IGNORE INTO streams (name, created_at) VALUES (?, ?)",
                (stream, now),
            )
            cursor = await conn.execute(
                "INSERT INTO stream_entries (stream, fields, created_at) VALUES (?, ?, ?)",
                (stream, json.dumps(fields, ensure_ascii=False), now),
            )
            return str(cursor.lastrowid)

    async def create_group(
        self, stream: str, group: str, start_id: str = "0", mkstream: bool = True
    ) -> None:
        now = time.time()
        async with self._db.transaction() as conn:
            cursor = await conn.execute("SELECT 1 FROM streams WHERE name = ?", (stream,))
            if await cursor.fetchone() is None:
                if not mkstream:
                    raise StoreError(f"stream {stream!r} does not exist")
                await conn.execute(
                    "INSERT INTO streams (name, created_at) VALUES (?, ?)", (stream, now)
                )
            cursor = await conn.execute(
                "SELECT 1 FROM stream_groups WHERE stream = ? AND group_name = ?",
                (stream, group),
            )
            if await cursor.fetchone() is not None:
                raise GroupAlreadyExistsError(
                    f"consumer group {group!r} already exists on {stream!r}"
                )
            if start_id == "$":
                cursor = await conn.execute(
                    "SELECT COALESCE(MAX(seq), 0) FROM stream_entries WHERE stream = ?",
                    (stream,),
                )
                row = await cursor.fetchone()
                last_delivered = row[0] if row else 0
            else:
                last_delivered = _cursor_seq(start_id)
            await conn.execute(
                """
                INSERT INTO stream_groups (stream, group_name, last_delivered, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (stream, group, last_delivered, now),
            )

    async def _claim_new(
        self, group: str, consumer: str, stream: str, count: int
    ) -> list[LogEntry]:
        """Deliver up to count never-delivered entries to consumer in one transaction."""
        now = time.time()
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                "SELECT last_delivered FROM stream_groups WHERE stream = ? AND group_name = ?",
                (stream, group),
            )
            row = await cursor.fetchone()
            if row is None:
                raise StoreError(f"NOGROUP no consumer group {group!r} on {stream!r}")
            cursor = await conn.execute(
                """
                SELECT seq, fields FROM stream_entries
                WHERE stream = ? AND seq > ?
                ORDER BY seq
                LIMIT ?
                """,
                (stream, row[0], count),
            )
            rows = await cursor.fetchall()
            if not rows:
                return []
            await conn.executemany(
                """
                INSERT INTO stream_pending (stream, group_name, seq, consumer, delivered_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                [(stream, group, seq, consumer, now) for seq, _ in rows],
            )
            await conn.execute(
                "UPDATE stream_groups SET last_delivered = ? WHERE stream = ? AND group_name = ?",
                (rows[-1][0], stream, group),
            )
        return [LogEntry(entry_id=str(seq), fields=json.loads(raw)) for seq, raw in rows]

    async def read_group(
        self, group: str, consumer: str, stream: str, count: int, block_ms: int
    ) -> list[LogEntry]:
        deadline = time.monotonic() + max(block_ms, 0) / 1000
        while True:
            entries = await self._claim_new(group, consumer, stream, count)
            remaining = deadline - time.monotonic()
            if entries or remaining <= 0:
                return entries
            await asyncio.sleep(min(self._db.poll_interval, remaining))

    async def ack(self, stream: str, group: str, *entry_ids: str) -> int:
        if not entry_ids:
            return 0
        async with self._db.transaction() as conn:
            acked = 0
            for entry_id in entry_ids:
                cursor = await conn.execute(
                    "DELETE FROM stream_pending WHERE stream = ? AND group_name = ? AND seq = ?",
                    (stream, group, _cursor_seq(entry_id)),
                )
                acked += cursor.rowcount or 0
            return acked

    async def autoclaim(
        self,
        stream: str,
        group: str,
        consumer: str,
        min_idle_ms: int,
        cursor: str = CURSOR_START,
        count: int = 10,
    ) -> tuple[str, list[LogEntry]]:
        now = time.time()
        async with self._db.transaction() as conn:
            rows_cursor = await conn.execute(
                """
                SELECT p.seq, e.fields
                FROM stream_pending p
                JOIN stream_entries e ON e.seq = p.seq
                WHERE p.stream = ? AND p.group_name = ? AND p.seq >= ? AND p.delivered_at <= ?
                ORDER BY p.seq
                LIMIT ?
                """,
                (stream, group, _cursor_seq(cursor), now - min_idle_ms / 1000, count + 1),
            )
            rows = list(await rows_cursor.fetchall())
            next_cursor = CURSOR_START
            if len(rows) > count:
                next_cursor = str(rows[count][0])
                rows = rows[:count]
            if rows:
                await conn.executemany(
                    """
                    UPDATE stream_pending
                    SET consumer = ?, delivered_at = ?, delivery_count = delivery_count + 1
                    WHERE stream = ? AND group_name = ? AND seq = ?
                    """,
                    [(consumer, now, stream, group, seq) for seq, _ in rows],
                )
        entries = [LogEntry(entry_id=str(seq), fields=json.loads(raw)) for seq, raw in rows]
        return next_cursor, entries

    async def pending_summary(self, stream: str, group: str) -> PendingSummary:
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                """
                SELECT COUNT(*), MIN(seq), MAX(seq) FROM stream_pending
                WHERE stream = ? AND group_name = ?
                """,
                (stream, group),
            )
            count, min_seq, max_seq = await cursor.fetchone() or (0, None, None)
            cursor = await conn.execute(
                """
                SELECT consumer, COUNT(*) FROM stream_pending
                WHERE stream = ? AND group_name = ?
                GROUP BY consumer
                """,
                (stream, group),
            )
            consumers = {name: n for name, n in await cursor.fetchall()}
        return PendingSummary(
            count=count or 0,
            min_id=str(min_seq) if min_seq is not None else None,
            max_id=str(max_seq) if max_seq is not None else None,
            consumers=consumers,
        )


class SqliteDelayStore:
    """Score-ordered queue. Inserting an existing value only moves its score."""

    def __init__(self, db: SqliteDatabase) -> None:
        self._db = db

    async def insert(self, queue: str, score: float, value: str) -> None:
        async with self._db.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO delay_queue (queue, value, score) VALUES (?, ?, ?)
                ON CONFLICT(queue, value) DO UPDATE SET score = excluded.score
                """,
                (queue, value, score),
            )

    async def range_by_score(
        self, queue: str, max_score: float, limit: int | None = None
    ) -> list[str]:
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                """
                SELECT value FROM delay_queue
                WHERE queue = ? AND score <= ?
                ORDER BY score, value
                LIMIT ?
                """,
                (queue, max_score, -1 if limit is None else limit),
            )
            rows = await cursor.fetchall()
        return [row[0] for row in rows]

    async def remove(self, queue: str, value: str) -> bool:
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                "DELETE FROM delay_queue WHERE queue = ? AND value = ?", (queue, value)
            )
            return (cursor.rowcount or 0) > 0


class SqliteLockStore:
    """Expiring keys. Expired rows are treated as absent and overwritten in place."""

    def __init__(self, db: SqliteDatabase) -> None:
        self._db = db

    async def set_if_absent(self, key: str, value: str, ttl: int) -> bool:
        now = time.time()
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO lock_keys (key, value, expires_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE
                SET value = excluded.value, expires_at = excluded.expires_at
                WHERE lock_keys.expires_at <= ?
                """,
                (key, value, now + ttl, now),
            )
            return (cursor.rowcount or 0) > 0

    async def exists(self, key: str) -> bool:
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                "SELECT 1 FROM lock_keys WHERE key = ? AND expires_at > ?",
                (key, time.time()),
            )
            return await cursor.fetchone() is not None

    async def delete(self, key: str) -> None:
        async with self._db.transaction() as conn:
            await conn.execute("DELETE FROM lock_keys WHERE key = ?", (key,))

    async def set(self, key: str, value: str, ttl: int) -> None:
        async with self._db.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO lock_keys (key, value, expires_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE
                SET value = excluded.value, expires_at = excluded.expires_at
                """,
                (key, value, time.time() + ttl),
            )
