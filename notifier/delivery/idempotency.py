"""Idempotency guard: processed markers plus a short-lived processing lock per event id."""

import logging
from enum import Enum

from notifier.events.streams import processed_key, processing_key
from notifier.stores.contract import LockStore

logger = logging.getLogger(__name__)

__all__ = ["GuardDecision", "IdempotencyGuard"]

DEFAULT_TTL = 86400


class GuardDecision(str, Enum):
    PROCEED = "proceed"
    ALREADY_PROCESSED = "already_processed"
    IN_FLIGHT = "in_flight"


class IdempotencyGuard:
    """Decides whether this worker may run business logic for an event id.

    A PROCEED decision hands the caller the processing lock. The caller must
    then call exactly one of complete() (success) or release() (failure).
    """

    def __init__(
        self,
        locks: LockStore,
        lock_ttl: int = DEFAULT_TTL,
        processed_ttl: int = DEFAULT_TTL,
    ) -> None:
        self._locks = locks
        self._lock_ttl = lock_ttl
        self._processed_ttl = processed_ttl

    async def check(self, event_id: str) -> GuardDecision:
        if await self._locks.exists(processed_key(event_id)):
            return GuardDecision.ALREADY_PROCESSED
        acquired = await self._locks.set_if_absent(
            processing_key(event_id), "1", self._lock_ttl
        )
        if not acquired:
            return GuardDecision.IN_FLIGHT
        return GuardDecision.PROCEED

    async def should_process(self, event_id: str) -> bool:
        """True only when the processing lock was acquired by this call."""
        return await self.check(event_id) is GuardDecision.PROCEED

    async def complete(self, event_id: str) -> None:
        """Drop the lock, then write the processed marker. Must run before the entry is acked."""
        await self._locks.delete(processing_key(event_id))
        await self._locks.set(processed_key(event_id), "1", self._processed_ttl)

    async def release(self, event_id: str) -> None:
        """Drop the lock without marking the event processed."""
        await self._locks.delete(processing_key(event_id))

    async def is_processed(self, event_id: str) -> bool:
        return await self._locks.exists(processed_key(event_id))
