"""Store contracts consumed by the delivery layer. Backends: notifier.stores.redis, notifier.stores.sqlite."""

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

__all__ = [
    "DelayStore",
    "GroupAlreadyExistsError",
    "LockStore",
    "LogEntry",
    "LogStore",
    "PendingSummary",
    "StoreError",
]

CURSOR_START = "0-0"


class StoreError(Exception):
    """Backend failure raised by this package's store adapters."""


class GroupAlreadyExistsError(StoreError):
    """Consumer group creation found the group already present."""


@dataclass(frozen=True)
class LogEntry:
    """One record of an ordered log, as delivered to a consumer."""

    entry_id: str
    fields: dict[str, str]


@dataclass(frozen=True)
class PendingSummary:
    """Delivered-but-unacknowledged entries of a consumer group."""

    count: int
    min_id: str | None = None
    max_id: str | None = None
    consumers: dict[str, int] = field(default_factory=dict)


@runtime_checkable
class LogStore(Protocol):
    """Append-only ordered log with consumer groups."""

    async def append(self, stream: str, fields: dict[str, str]) -> str: ...

    async def create_group(
        self, stream: str, group: str, start_id: str = "0", mkstream: bool = True
    ) -> None: ...

    async def read_group(
        self, group: str, consumer: str, stream: str, count: int, block_ms: int
    ) -> list[LogEntry]: ...

    async def ack(self, stream: str, group: str, *entry_ids: str) -> int: ...

    async def autoclaim(
        self,
        stream: str,
        group: str,
        consumer: str,
        min_idle_ms: int,
        cursor: str = CURSOR_START,
        count: int = 10,
    ) -> tuple[str, list[LogEntry]]: ...

    async def pending_summary(self, stream: str, group: str) -> PendingSummary: ...


@runtime_checkable
class DelayStore(Protocol):
    """Score-ordered queue of opaque string values."""

    async def insert(self, queue: str, score: float, value: str) -> None: ...

    async def range_by_score(
        self, queue: str, max_score: float, limit: int | None = None
    ) -> list[str]: ...

    async def remove(self, queue: str, value: str) -> bool: ...


@runtime_checkable
class LockStore(Protocol):
    """Key-value store with expiring keys and atomic set-if-absent."""

    async def set_if_absent(self, key: str, value: str, ttl: int) -> bool: ...

    async def exists(self, key: str) -> bool: ...

    async def delete(self, key: str) -> None: ...

    async def set(self, key: str, value: str, ttl: int) -> None: ...
