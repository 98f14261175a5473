"""
Token bucket rate limiter for Gateway service.

The limiter owns the clock and the policy; the bucket store owns atomicity.
Each check is a single store call that refills and debits one bucket.
"""

from typing import Callable

from shared.logging import get_logger
from .bucket import now_ms, refill
from .models import BucketState, Decision, RateLimitPolicy
from .store import BucketStore


class TokenBucketRateLimiter:
    """Distributed token bucket rate limiter over a shared bucket store.

    Store faults propagate to the caller unchanged.
    """

    def __init__(self, store: BucketStore, clock: Callable[[], int] = now_ms):
        self.store = store
        self.clock = clock
        self.logger = get_logger("gateway.rate_limiter")

    async def check_and_consume(self, identity_key: str, policy: RateLimitPolicy) -> Decision:
        """Admit or deny one request for ``identity_key``."""
        new_state, decision = await self.store.consume(identity_key, policy, self.clock())

        if not decision.allowed:
            self.logger.info(
                "Rate limit exceeded",
                identity_key=identity_key,
                tokens=round(new_state.tokens, 4),
                capacity=policy.capacity,
                retry_after_ms=decision.retry_after_ms
            )
        return decision

    async def status(self, identity_key: str, policy: RateLimitPolicy) -> BucketState:
        """Report the refilled bucket without consuming or writing anything."""
        state = await self.store.peek(identity_key)
        return refill(state, policy, self.clock())
