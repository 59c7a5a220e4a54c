"""Event model and its flat string-field wire form."""

import time
import uuid
from dataclasses import dataclass, field, replace

__all__ = ["Event", "MalformedEventError", "RESERVED_FIELDS", "now_ms"]

EVENT_ID = "eventId"
EVENT_TYPE = "eventType"
RETRY_COUNT = "retryCount"
CREATED_AT = "createdAt"

RESERVED_FIELDS = frozenset({EVENT_ID, EVENT_TYPE, RETRY_COUNT, CREATED_AT})


class MalformedEventError(ValueError):
    """Log entry fields cannot be turned into an Event."""


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Event:
    """Immutable notification event. Identity is event_id; only retry_count changes between attempts."""

    event_type: str
    payload: dict[str, str] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    retry_count: int = 0
    created_at: int = field(default_factory=now_ms)

    def __post_init__(self) -> None:
        clash = RESERVED_FIELDS.intersection(self.payload)
        if clash:
            raise ValueError(f"payload uses reserved field names: {sorted(clash)}")
        if self.retry_count < 0:
            raise ValueError("retry_count must be >= 0")

    def with_retry(self) -> "Event":
        """Copy of this event for the next attempt."""
        return replace(self, retry_count=self.retry_count + 1)

    def to_fields(self) -> dict[str, str]:
        """Flatten into log entry fields. Payload keys sit next to the reserved ones."""
        fields = {str(k): str(v) for k, v in self.payload.items()}
        fields[EVENT_ID] = self.event_id
        fields[EVENT_TYPE] = self.event_type
        fields[RETRY_COUNT] = str(self.retry_count)
        fields[CREATED_AT] = str(self.created_at)
        return fields

    @classmethod
    def from_fields(cls, fields: dict[str, str]) -> "Event":
        """Parse log entry fields. Raises MalformedEventError on missing or invalid reserved fields.

        A missing retryCount reads as 0 (first attempt); eventId, eventType and
        createdAt are required.
        """
        if not fields:
            raise MalformedEventError("entry has no fields")
        event_id = fields.get(EVENT_ID)
        event_type = fields.get(EVENT_TYPE)
        if not event_id:
            raise MalformedEventError("entry is missing eventId")
        if not event_type:
            raise MalformedEventError(f"entry {event_id} is missing eventType")
        try:
            retry_count = int(fields.get(RETRY_COUNT) or 0)
        except ValueError as e:
            raise MalformedEventError(
                f"entry {event_id} has invalid retryCount {fields.get(RETRY_COUNT)!r}"
            ) from e
        if retry_count < 0:
            raise MalformedEventError(f"entry {event_id} has negative retryCount")
        if not fields.get(CREATED_AT):
            raise MalformedEventError(f"entry {event_id} is missing createdAt")
        try:
            created_at = int(fields[CREATED_AT])
        except ValueError as e:
            raise MalformedEventError(
                f"entry {event_id} has invalid createdAt {fields.get(CREATED_AT)!r}"
            ) from e
        payload = {k: v for k, v in fields.items() if k not in RESERVED_FIELDS}
        return cls(
            event_type=event_type,
            payload=payload,
            event_id=event_id,
            retry_count=retry_count,
            created_at=created_at,
        )
