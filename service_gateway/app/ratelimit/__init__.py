"""
Rate limiting package for the Gateway.

Holds the continuous-refill token bucket and the shared stores that keep
one bucket per identity key with atomic per-key updates.
"""

from .bucket import consume_token, now_ms, refill
from .models import BucketState, Decision, RateLimitPolicy
from .store import BucketStore, InMemoryBucketStore, RedisBucketStore, create_bucket_store
from .token_bucket import TokenBucketRateLimiter

__all__ = [
    "BucketState",
    "BucketStore",
    "Decision",
    "InMemoryBucketStore",
    "RateLimitPolicy",
    "RedisBucketStore",
    "TokenBucketRateLimiter",
    "consume_token",
    "create_bucket_store",
    "now_ms",
    "refill",
]
