"""Store backends for the notification pipeline: log, delay queue and lock keys."""

from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable

from notifier.stores.contract import (
    DelayStore,
    GroupAlreadyExistsError,
    LockStore,
    LogEntry,
    LogStore,
    PendingSummary,
    StoreError,
)

__all__ = [
    "DelayStore",
    "GroupAlreadyExistsError",
    "LockStore",
    "LogEntry",
    "LogStore",
    "PendingSummary",
    "StoreError",
    "Stores",
    "open_redis_stores",
    "open_sqlite_stores",
]


@dataclass
class Stores:
    """The three stores of one backend plus the callable that releases their connection."""

    log: LogStore
    delay: DelayStore
    lock: LockStore
    close: Callable[[], Awaitable[None]]


async def open_redis_stores(url: str) -> Stores:
    """Connect to Redis (ping included) and wrap the client in all three stores."""
    from notifier.stores.redis import (
        RedisDelayStore,
        RedisLockStore,
        RedisLogStore,
        connect_redis,
    )

    client = await connect_redis(url)
    return Stores(
        log=RedisLogStore(client),
        delay=RedisDelayStore(client),
        lock=RedisLockStore(client),
        close=client.aclose,
    )


def open_sqlite_stores(
    db_path: Path, busy_timeout: int = 5000, poll_interval: float = 0.05
) -> Stores:
    """Open all three stores on one SQLite file. The connection is created lazily."""
    from notifier.stores.sqlite import (
        SqliteDatabase,
        SqliteDelayStore,
        SqliteLockStore,
        SqliteLogStore,
    )

    db = SqliteDatabase(db_path, busy_timeout=busy_timeout, poll_interval=poll_interval)
    return Stores(
        log=SqliteLogStore(db),
        delay=SqliteDelayStore(db),
        lock=SqliteLockStore(db),
        close=db.close,
    )
