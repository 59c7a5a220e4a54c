"""Publish notification events onto the log."""

import logging

from notifier.events.models import Event
from notifier.stores.contract import LogStore

logger = logging.getLogger(__name__)


async def publish(
    log: LogStore, stream: str, event_type: str, payload: dict[str, str] | None = None
) -> tuple[str, Event]:
    """Append a fresh event (new UUID, retryCount 0). Returns (entry_id, event)."""
    event = Event(event_type=event_type, payload=dict(payload or {}))
    entry_id = await log.append(stream, event.to_fields())
    logger.info("Published event %s (%s) -> %s:%s", event.event_id, event_type, stream, entry_id)
    return entry_id, event
