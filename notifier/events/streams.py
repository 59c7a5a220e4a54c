"""Well-known stream, queue and key names used by the notification pipeline."""


class StreamNames:
    """Default names. Every one of them can be overridden in settings.yaml under `stream`."""

    # Notification log consumed by the worker pool
    NOTIFICATIONS = "notifications"

    # Consumer group shared by all workers
    GROUP = "notification-group"

    # Terminal log for events that exhausted their retries
    DEAD_LETTER = "notifications:dlq"

    # Score-ordered queue of retries waiting for their due time
    RETRY_QUEUE = "notifications:retry"


PROCESSING_PREFIX = "processing:"
PROCESSED_PREFIX = "processed:"


def processing_key(event_id: str) -> str:
    """Lock key held while one worker runs business logic for event_id."""
    return f"{PROCESSING_PREFIX}{event_id}"


def processed_key(event_id: str) -> str:
    """Marker key written once event_id has been processed successfully."""
    return f"{PROCESSED_PREFIX}{event_id}"
