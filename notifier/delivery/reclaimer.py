"""Reclaimer: take over entries another consumer left unacknowledged for too long."""

import logging

from notifier.stores.contract import CURSOR_START, LogEntry, LogStore

logger = logging.getLogger(__name__)

DEFAULT_MIN_IDLE_MS = 10000
DEFAULT_BATCH_SIZE = 10


class Reclaimer:
    """Autoclaims idle pending entries of one consumer group.

    The scan cursor survives between calls and wraps to the start once the
    pending list has been walked, so entries that stay pending do not hide
    the ones behind them.
    """

    def __init__(
        self,
        log: LogStore,
        stream: str,
        group: str,
        min_idle_ms: int = DEFAULT_MIN_IDLE_MS,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        self._log = log
        self._stream = stream
        self._group = group
        self._min_idle_ms = min_idle_ms
        self._batch_size = batch_size
        self._cursor = CURSOR_START

    async def reclaim(self, consumer: str) -> list[LogEntry]:
        """Transfer up to batch_size entries idle >= min_idle_ms to consumer. Usually returns []."""
        next_cursor, entries = await self._log.autoclaim(
            self._stream,
            self._group,
            consumer,
            self._min_idle_ms,
            cursor=self._cursor,
            count=self._batch_size,
        )
        self._cursor = next_cursor or CURSOR_START
        if entries:
            logger.info(
                "Reclaimed %d stuck entries on %s for %s", len(entries), self._stream, consumer
            )
        return entries
