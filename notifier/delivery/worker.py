"""Notification worker: reclaim stuck entries, consume new ones, hand failures to retry or DLQ."""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from notifier.delivery.dlq import DeadLetterEscalator
from notifier.delivery.idempotency import GuardDecision, IdempotencyGuard
from notifier.delivery.reclaimer import Reclaimer
from notifier.delivery.retry import RetryScheduler
from notifier.events.models import Event
from notifier.stores.contract import LogEntry, LogStore

logger = logging.getLogger(__name__)

__all__ = [
    "IterationReport",
    "NotificationWorker",
    "ProcessOutcome",
    "Processor",
    "WorkerState",
]

# Business processing. Raising or returning False is a failure; anything else is success.
Processor = Callable[[Event], Awaitable[Any]]


class WorkerState(str, Enum):
    IDLE = "idle"
    RECLAIMING = "reclaiming"
    CONSUMING_NEW = "consuming_new"
    STOPPED = "stopped"


class ProcessOutcome(str, Enum):
    PROCESSED = "processed"
    SKIPPED_PROCESSED = "skipped_processed"
    SKIPPED_IN_FLIGHT = "skipped_in_flight"
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD_LETTERED = "dead_lettered"
    LEFT_PENDING = "left_pending"
    ABORTED = "aborted"


_SKIPS = {
    GuardDecision.ALREADY_PROCESSED: ProcessOutcome.SKIPPED_PROCESSED,
    GuardDecision.IN_FLIGHT: ProcessOutcome.SKIPPED_IN_FLIGHT,
}


@dataclass
class IterationReport:
    """Per-entry outcomes of one worker iteration, in handling order."""

    reclaimed: list[ProcessOutcome] = field(default_factory=list)
    consumed: list[ProcessOutcome] = field(default_factory=list)

    @property
    def outcomes(self) -> list[ProcessOutcome]:
        return self.reclaimed + self.consumed


class NotificationWorker:
    """One consumer of the notification group.

    Every iteration first handles entries reclaimed from stalled consumers,
    then blocks for new ones. The original log entry is acked only after its
    terminal handling (processed, skipped, retry scheduled or dead-lettered).
    An infrastructure error, or a reclaimed entry whose event is still
    locked, leaves the entry unacked for a later reclaim.
    """

    def __init__(
        self,
        log: LogStore,
        guard: IdempotencyGuard,
        scheduler: RetryScheduler,
        escalator: DeadLetterEscalator,
        reclaimer: Reclaimer,
        processor: Processor,
        stream: str,
        group: str,
        consumer: str,
        read_batch_size: int = 1,
        block_ms: int = 5000,
        error_backoff: float = 1.0,
    ) -> None:
        self._log = log
        self._guard = guard
        self._scheduler = scheduler
        self._escalator = escalator
        self._reclaimer = reclaimer
        self._processor = processor
        self._stream = stream
        self._group = group
        self._consumer = consumer
        self._read_batch_size = read_batch_size
        self._block_ms = block_ms
        self._error_backoff = error_backoff
        self._state = WorkerState.IDLE
        self._stop = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def consumer(self) -> str:
        return self._consumer

    @property
    def state(self) -> WorkerState:
        return self._state

    async def handle_entry(self, entry: LogEntry, reclaimed: bool = False) -> ProcessOutcome:
        """Run one delivered entry through guard, processor and retry/DLQ handoff.

        A reclaimed entry whose processing lock is still held is left pending:
        its previous owner may have died holding the lock, and this entry is
        then the only copy of the event. It comes back through the reclaimer
        until the owner acks it or the lock expires.
        """
        try:
            return await self._handle(entry, reclaimed)
        except Exception as e:
            logger.exception(
                "Aborted entry %s on %s without ack: %s", entry.entry_id, self._stream, e
            )
            return ProcessOutcome.ABORTED

    async def _handle(self, entry: LogEntry, reclaimed: bool) -> ProcessOutcome:
        event = Event.from_fields(entry.fields)
        decision = await self._guard.check(event.event_id)
        if reclaimed and decision is GuardDecision.IN_FLIGHT:
            logger.info(
                "Reclaimed entry %s: event %s is still locked, leaving it pending",
                entry.entry_id,
                event.event_id,
            )
            return ProcessOutcome.LEFT_PENDING
        if decision is not GuardDecision.PROCEED:
            logger.info(
                "Skipping event %s from entry %s: %s",
                event.event_id,
                entry.entry_id,
                decision.value,
            )
            await self._ack(entry)
            return _SKIPS[decision]

        if await self._process(event):
            await self._guard.complete(event.event_id)
            await self._ack(entry)
            logger.info("Processed event %s (%s)", event.event_id, event.event_type)
            return ProcessOutcome.PROCESSED

        await self._guard.release(event.event_id)
        if event.retry_count < self._scheduler.max_retries:
            await self._scheduler.schedule(event)
            outcome = ProcessOutcome.RETRY_SCHEDULED
        else:
            await self._escalator.escalate(event)
            outcome = ProcessOutcome.DEAD_LETTERED
        await self._ack(entry)
        return outcome

    async def _process(self, event: Event) -> bool:
        try:
            result = await self._processor(event)
        except Exception as e:
            logger.warning(
                "Processing failed for event %s (retry %d): %s",
                event.event_id,
                event.retry_count,
                e,
            )
            return False
        if result is False:
            logger.warning(
                "Processing reported failure for event %s (retry %d)",
                event.event_id,
                event.retry_count,
            )
            return False
        return True

    async def _ack(self, entry: LogEntry) -> None:
        await self._log.ack(self._stream, self._group, entry.entry_id)

    async def run_once(self) -> IterationReport:
        """One Reclaiming -> ConsumingNew pass. Store errors outside a single entry propagate."""
        report = IterationReport()
        try:
            self._state = WorkerState.RECLAIMING
            for entry in await self._reclaimer.reclaim(self._consumer):
                report.reclaimed.append(await self.handle_entry(entry, reclaimed=True))

            self._state = WorkerState.CONSUMING_NEW
            entries = await self._log.read_group(
                self._group,
                self._consumer,
                self._stream,
                self._read_batch_size,
                self._block_ms,
            )
            for entry in entries:
                report.consumed.append(await self.handle_entry(entry))
        finally:
            self._state = WorkerState.IDLE
        return report

    async def run(self, stop: asyncio.Event | None = None) -> None:
        """Loop until stop is set. No store failure ends the loop."""
        if stop is not None:
            self._stop = stop
        logger.info(
            "Notification worker %s started on %s/%s", self._consumer, self._stream, self._group
        )
        while not self._stop.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.exception("Worker %s iteration failed: %s", self._consumer, e)
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self._error_backoff)
                except asyncio.TimeoutError:
                    pass
        self._state = WorkerState.STOPPED
        logger.info("Notification worker %s stopped", self._consumer)

    async def start(self) -> None:
        """Run the consumption loop as an asyncio Task."""
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        """Signal the loop and wait for the entry in hand to finish."""
        self._stop.set()
        if self._task:
            await self._task
            self._task = None
