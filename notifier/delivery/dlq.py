"""Dead-letter escalation for events that used up their retries."""

import logging

from notifier.events.models import Event
from notifier.stores.contract import LogStore

logger = logging.getLogger(__name__)


class DeadLetterEscalator:
    """Appends failed events, unmodified, to the dead-letter stream. Nothing in this package reads it back."""

    def __init__(self, log: LogStore, dead_letter_stream: str) -> None:
        self._log = log
        self._stream = dead_letter_stream

    async def escalate(self, event: Event) -> str:
        entry_id = await self._log.append(self._stream, event.to_fields())
        logger.error(
            "Dead-lettered event %s (%s) after %d retries -> %s:%s",
            event.event_id,
            event.event_type,
            event.retry_count,
            self._stream,
            entry_id,
        )
        return entry_id
