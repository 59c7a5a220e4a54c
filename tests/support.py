"""Test helpers: names and builders for workers and promoters over a store set."""

from typing import Any

from notifier.delivery import (
    BackoffPolicy,
    DeadLetterEscalator,
    IdempotencyGuard,
    NotificationWorker,
    Reclaimer,
    RetryPromoter,
    RetryScheduler,
    ensure_group,
)
from notifier.delivery.worker import Processor
from notifier.events import StreamNames
from notifier.stores import LogEntry, Stores

STREAM = StreamNames.NOTIFICATIONS
GROUP = StreamNames.GROUP
DLQ = StreamNames.DEAD_LETTER
QUEUE = StreamNames.RETRY_QUEUE
FAR_FUTURE_MS = 10**15
DLQ_READER = "dlq-inspect"


def make_worker(
    stores: Stores,
    processor: Processor,
    consumer: str = "worker-1",
    max_retries: int = 3,
    min_idle_ms: int = 10000,
    guard: IdempotencyGuard | None = None,
    **kwargs: Any,
) -> NotificationWorker:
    """Worker over the given stores with non-blocking reads."""
    return NotificationWorker(
        log=stores.log,
        guard=guard or IdempotencyGuard(stores.lock),
        scheduler=RetryScheduler(
            stores.delay,
            QUEUE,
            max_retries=max_retries,
            backoff=BackoffPolicy(base_ms=100, cap_ms=10000),
        ),
        escalator=DeadLetterEscalator(stores.log, DLQ),
        reclaimer=Reclaimer(stores.log, STREAM, GROUP, min_idle_ms=min_idle_ms),
        processor=processor,
        stream=STREAM,
        group=GROUP,
        consumer=consumer,
        **{"block_ms": 0, **kwargs},
    )


def make_promoter(stores: Stores, **kwargs: Any) -> RetryPromoter:
    return RetryPromoter(stores.log, stores.delay, STREAM, QUEUE, **kwargs)


async def dead_letters(stores: Stores) -> list[LogEntry]:
    """Dead-letter entries not yet seen by this helper, read through a group of its own."""
    await ensure_group(stores.log, DLQ, DLQ_READER)
    return await stores.log.read_group(DLQ_READER, "inspector", DLQ, 100, 0)
