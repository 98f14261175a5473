"""
Token bucket arithmetic.

Buckets refill continuously: a policy of ``capacity`` tokens per
``window_ms`` adds ``capacity / window_ms`` tokens every millisecond, up to
``capacity``. Each admitted request removes exactly one token. Token counts
are real numbers; only the admission test and the debit are integral.

The Redis store runs the same arithmetic server-side (see
``store.CONSUME_SCRIPT``); the two must stay in step.
"""

import math
import time
from typing import Optional, Tuple

from .models import BucketState, Decision, RateLimitPolicy


def now_ms() -> int:
    """Wall clock in epoch milliseconds, comparable across processes."""
    return int(time.time() * 1000)


def refill(state: Optional[BucketState], policy: RateLimitPolicy, now: int) -> BucketState:
    """Bring a bucket forward to ``now``.

    A missing bucket starts full. A writer whose clock lags the stored
    ``last_refill_at`` adds no tokens and leaves ``last_refill_at`` where it
    was, so it never moves backwards.
    """
    if state is None:
        return BucketState(tokens=float(policy.capacity), last_refill_at=now)

    elapsed = max(0, now - state.last_refill_at)
    tokens = state.tokens + elapsed * policy.capacity / policy.window_ms
    tokens = max(0.0, min(float(policy.capacity), tokens))
    return BucketState(tokens=tokens, last_refill_at=max(now, state.last_refill_at))


def decision_for(state: BucketState, allowed: bool, policy: RateLimitPolicy) -> Decision:
    """Describe the outcome of a check that left the bucket at ``state``."""
    if allowed:
        return Decision(allowed=True, retry_after_ms=0, limit=policy.capacity, remaining=int(state.tokens))

    retry_after_ms = math.ceil((1 - state.tokens) * policy.window_ms / policy.capacity)
    return Decision(allowed=False, retry_after_ms=max(1, retry_after_ms), limit=policy.capacity, remaining=0)


def consume_token(state: Optional[BucketState], policy: RateLimitPolicy, now: int) -> Tuple[BucketState, Decision]:
    """Refill, then try to take one token.

    The refilled state is returned on both paths and must be persisted
    either way, since the refill already advanced ``last_refill_at``.
    """
    current = refill(state, policy, now)

    if current.tokens >= 1:
        updated = BucketState(tokens=current.tokens - 1, last_refill_at=current.last_refill_at)
        return updated, decision_for(updated, True, policy)

    return current, decision_for(current, False, policy)
