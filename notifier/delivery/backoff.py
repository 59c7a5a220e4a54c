"""Retry backoff policy."""

import random
from dataclasses import dataclass

__all__ = ["BackoffPolicy", "compute_backoff_ms"]


def compute_backoff_ms(
    retry_count: int, base_ms: int = 1000, cap_ms: int = 60000, jitter: float = 0.0
) -> int:
    """Exponential backoff with jitter, capped after jitter so the curve never decreases."""
    delay = base_ms * (2**retry_count)
    if jitter > 0:
        delay += random.uniform(0, delay * jitter)
    return int(min(delay, cap_ms))


@dataclass(frozen=True)
class BackoffPolicy:
    """base_ms * 2**retry_count plus up to `jitter` of that, never above cap_ms.

    jitter must stay below 1.0: with it the delay for attempt n+1 is always
    strictly larger than any delay drawn for attempt n until the cap is hit.
    """

    base_ms: int = 1000
    cap_ms: int = 60000
    jitter: float = 0.0

    def __post_init__(self) -> None:
        if self.base_ms < 0 or self.cap_ms < 0:
            raise ValueError("backoff base_ms and cap_ms must be >= 0")
        if not 0.0 <= self.jitter < 1.0:
            raise ValueError("backoff jitter must be in [0, 1)")

    def delay_ms(self, retry_count: int) -> int:
        return compute_backoff_ms(retry_count, self.base_ms, self.cap_ms, self.jitter)
