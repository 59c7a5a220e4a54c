"""Retry path: schedule failed events into the delay queue, promote due ones back onto the log."""

import asyncio
import json
import logging
from typing import Callable

from notifier.delivery.backoff import BackoffPolicy
from notifier.events.models import Event, MalformedEventError, now_ms
from notifier.stores.contract import DelayStore, LogStore

logger = logging.getLogger(__name__)

__all__ = ["RetryPromoter", "RetryScheduler", "decode_retry", "encode_retry"]


def encode_retry(event: Event) -> str:
    """Canonical delay-queue value. Identical retries of one event encode to the same string."""
    return json.dumps(event.to_fields(), sort_keys=True, ensure_ascii=False)


def decode_retry(value: str) -> Event:
    try:
        fields = json.loads(value)
    except json.JSONDecodeError as e:
        raise MalformedEventError(f"retry entry is not JSON: {value[:80]!r}") from e
    if not isinstance(fields, dict):
        raise MalformedEventError(f"retry entry is not an object: {value[:80]!r}")
    return Event.from_fields({str(k): str(v) for k, v in fields.items()})


class RetryScheduler:
    """Stores the next attempt of a failed event in the delay queue. Never touches the log."""

    def __init__(
        self,
        delay: DelayStore,
        queue: str,
        max_retries: int = 3,
        backoff: BackoffPolicy | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._delay = delay
        self._queue = queue
        self._max_retries = max_retries
        self._backoff = backoff or BackoffPolicy()
        self._clock = clock

    @property
    def max_retries(self) -> int:
        return self._max_retries

    async def schedule(self, event: Event) -> int:
        """Queue event with retry_count + 1. Returns the due time in epoch ms."""
        if event.retry_count >= self._max_retries:
            raise ValueError(
                f"event {event.event_id} has used {event.retry_count}/{self._max_retries} retries"
            )
        delay = self._backoff.delay_ms(event.retry_count)
        retried = event.with_retry()
        due_at = self._clock() + delay
        await self._delay.insert(self._queue, due_at, encode_retry(retried))
        logger.warning(
            "Retry %d/%d for event %s scheduled in %dms",
            retried.retry_count,
            self._max_retries,
            event.event_id,
            delay,
        )
        return due_at


class RetryPromoter:
    """Polls the delay queue and re-appends due events to the notification stream.

    Append happens before the exact-value remove. Losing the remove race to
    another promoter leaves a duplicate on the log, never a lost retry.
    """

    def __init__(
        self,
        log: LogStore,
        delay: DelayStore,
        stream: str,
        queue: str,
        poll_interval: float = 1.0,
        batch_size: int = 100,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._log = log
        self._delay = delay
        self._stream = stream
        self._queue = queue
        self._poll_interval = poll_interval
        self._batch_size = batch_size
        self._clock = clock
        self._stop = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    async def promote_due(self, now: int | None = None) -> int:
        """Move every entry due at `now` (default: current time). Returns how many this call removed."""
        due = await self._delay.range_by_score(
            self._queue, self._clock() if now is None else now, limit=self._batch_size
        )
        promoted = 0
        for value in due:
            try:
                event = decode_retry(value)
            except MalformedEventError as e:
                logger.error("Dropping undecodable retry entry: %s", e)
                await self._delay.remove(self._queue, value)
                continue
            entry_id = await self._log.append(self._stream, event.to_fields())
            if await self._delay.remove(self._queue, value):
                promoted += 1
                logger.info(
                    "Promoted retry %d of event %s -> %s",
                    event.retry_count,
                    event.event_id,
                    entry_id,
                )
            else:
                logger.warning(
                    "Retry of event %s was promoted concurrently; duplicate entry %s left for the idempotency guard",
                    event.event_id,
                    entry_id,
                )
        return promoted

    async def run(self, stop: asyncio.Event | None = None) -> None:
        """Poll until stop is set."""
        if stop is not None:
            self._stop = stop
        logger.info("Retry promoter started on %s -> %s", self._queue, self._stream)
        while not self._stop.is_set():
            try:
                await self.promote_due()
            except Exception as e:
                logger.exception("Retry promoter iteration failed: %s", e)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Retry promoter stopped")

    async def start(self) -> None:
        """Run the poll loop as an asyncio Task."""
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        """Signal the loop and wait for the current batch to finish."""
        self._stop.set()
        if self._task:
            await self._task
            self._task = None
