"""Delivery-reliability layer: idempotency, reclaim, retry with backoff, dead-letter escalation."""

from notifier.delivery.backoff import BackoffPolicy
from notifier.delivery.bootstrap import ensure_group
from notifier.delivery.dlq import DeadLetterEscalator
from notifier.delivery.idempotency import GuardDecision, IdempotencyGuard
from notifier.delivery.reclaimer import Reclaimer
from notifier.delivery.retry import RetryPromoter, RetryScheduler
from notifier.delivery.worker import (
    IterationReport,
    NotificationWorker,
    ProcessOutcome,
    WorkerState,
)

__all__ = [
    "BackoffPolicy",
    "DeadLetterEscalator",
    "GuardDecision",
    "IdempotencyGuard",
    "IterationReport",
    "NotificationWorker",
    "ProcessOutcome",
    "Reclaimer",
    "RetryPromoter",
    "RetryScheduler",
    "WorkerState",
    "ensure_group",
]
