"""
Value types shared by the token bucket limiter and its stores.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class BucketState:
    """Persisted bucket for one identity key."""

    tokens: float
    last_refill_at: int  # epoch milliseconds


@dataclass(frozen=True)
class RateLimitPolicy:
    """Burst capacity plus the window over which a full bucket regenerates."""

    capacity: int
    window_ms: int

    def __post_init__(self):
        if self.capacity <= 0 or self.window_ms <= 0:
            raise ValueError("capacity and window_ms must be positive")

    @property
    def refill_per_ms(self) -> float:
        return self.capacity / self.window_ms


@dataclass(frozen=True)
class Decision:
    """Outcome of one admission check."""

    allowed: bool
    retry_after_ms: int
    limit: int
    remaining: int
