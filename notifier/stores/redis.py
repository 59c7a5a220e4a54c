"""Redis-backed stores: streams for the log, sorted sets for delays, plain keys for locks."""

import logging
from typing import Any, cast

import redis.asyncio as aioredis
from redis.exceptions import ResponseError

from notifier.stores.contract import (
    CURSOR_START,
    GroupAlreadyExistsError,
    LogEntry,
    PendingSummary,
)

logger = logging.getLogger(__name__)

__all__ = ["RedisDelayStore", "RedisLockStore", "RedisLogStore", "connect_redis"]


async def connect_redis(url: str) -> Any:
    """Create a ``redis.asyncio.Redis`` client and ping it. Raises if Redis is unreachable."""
    client = aioredis.from_url(url, decode_responses=True)
    try:
        await client.ping()
    except Exception:
        await client.aclose()
        raise
    logger.info("Redis connected: %s", url)
    return client


def _to_entries(raw: Any) -> list[LogEntry]:
    """Convert redis-py (entry_id, fields) pairs. Entries trimmed from the stream come back without fields."""
    entries: list[LogEntry] = []
    for entry_id, fields in raw or []:
        if fields is None:
            logger.debug("Skipping trimmed stream entry %s", entry_id)
            continue
        entries.append(LogEntry(entry_id=entry_id, fields=dict(fields)))
    return entries


class RedisLogStore:
    """Log store over Redis Streams and consumer groups."""

    def __init__(self, client: Any) -> None:
        self._client = client

    async def append(self, stream: str, fields: dict[str, str]) -> str:
        return cast(str, await self._client.xadd(stream, fields))

    async def create_group(
        self, stream: str, group: str, start_id: str = "0", mkstream: bool = True
    ) -> None:
        try:
            await self._client.xgroup_create(stream, group, id=start_id, mkstream=mkstream)
        except ResponseError as e:
            if "BUSYGROUP" in str(e):
                raise GroupAlreadyExistsError(
                    f"consumer group {group!r} already exists on {stream!r}"
                ) from e
            raise

    async def read_group(
        self, group: str, consumer: str, stream: str, count: int, block_ms: int
    ) -> list[LogEntry]:
        response = await self._client.xreadgroup(
            group,
            consumer,
            {stream: ">"},
            count=count,
            block=block_ms if block_ms > 0 else None,
        )
        if not response:
            return []
        result: list[LogEntry] = []
        for _name, batch in response:
            result.extend(_to_entries(batch))
        return result

    async def ack(self, stream: str, group: str, *entry_ids: str) -> int:
        if not entry_ids:
            return 0
        return cast(int, await self._client.xack(stream, group, *entry_ids))

    async def autoclaim(
        self,
        stream: str,
        group: str,
        consumer: str,
        min_idle_ms: int,
        cursor: str = CURSOR_START,
        count: int = 10,
    ) -> tuple[str, list[LogEntry]]:
        result = await self._client.xautoclaim(
            stream,
            group,
            consumer,
            min_idle_ms,
            start_id=cursor,
            count=count,
        )
        next_cursor = result[0] or CURSOR_START
        return next_cursor, _to_entries(result[1])

    async def pending_summary(self, stream: str, group: str) -> PendingSummary:
        info = await self._client.xpending(stream, group)
        consumers = {
            c["name"]: int(c["pending"]) for c in info.get("consumers") or []
        }
        return PendingSummary(
            count=int(info.get("pending") or 0),
            min_id=info.get("min"),
            max_id=info.get("max"),
            consumers=consumers,
        )


class RedisDelayStore:
    """Delay queue over a Redis sorted set (score = due time)."""

    def __init__(self, client: Any) -> None:
        self._client = client

    async def insert(self, queue: str, score: float, value: str) -> None:
        await self._client.zadd(queue, {value: score})

    async def range_by_score(
        self, queue: str, max_score: float, limit: int | None = None
    ) -> list[str]:
        if limit is None:
            return list(await self._client.zrangebyscore(queue, "-inf", max_score))
        return list(
            await self._client.zrangebyscore(queue, "-inf", max_score, start=0, num=limit)
        )

    async def remove(self, queue: str, value: str) -> bool:
        return cast(int, await self._client.zrem(queue, value)) > 0


class RedisLockStore:
    """Expiring keys. SET NX EX is the mutual-exclusion primitive."""

    def __init__(self, client: Any) -> None:
        self._client = client

    async def set_if_absent(self, key: str, value: str, ttl: int) -> bool:
        return bool(await self._client.set(key, value, nx=True, ex=ttl))

    async def exists(self, key: str) -> bool:
        return cast(int, await self._client.exists(key)) > 0

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def set(self, key: str, value: str, ttl: int) -> None:
        await self._client.set(key, value, ex=ttl)
