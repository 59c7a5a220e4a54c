"""Notification events: model, wire fields and well-known names."""

from notifier.events.models import Event, MalformedEventError, now_ms
from notifier.events.streams import StreamNames, processed_key, processing_key

__all__ = [
    "Event",
    "MalformedEventError",
    "StreamNames",
    "now_ms",
    "processed_key",
    "processing_key",
]
