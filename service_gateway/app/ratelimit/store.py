"""
Shared bucket stores.

A store holds one bucket per identity key and runs the refill-and-debit
step on it atomically: two callers racing on the same key never both see
the same token count. No operation ever spans more than one key.
"""

import asyncio
import math
from typing import Dict, Mapping, Optional, Tuple

import redis.asyncio as redis
from redis.commands.core import AsyncScript
from redis.exceptions import RedisError

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.errors import StoreUnavailableError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from .bucket import consume_token, decision_for
from .models import BucketState, Decision, RateLimitPolicy

MEMORY_URL_SCHEME = "memory://"

# KEYS[1] bucket hash; ARGV capacity, window_ms, now_ms, ttl_ms (0 = no expiry).
# Returns {allowed, tokens, last, discarded}; numbers travel as strings because
# Lua numbers come back from Redis truncated to integers.
CONSUME_SCRIPT = """
local capacity = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local ttl_ms = tonumber(ARGV[4])

local raw = redis.call('HMGET', KEYS[1], 'tokens', 'last')
local tokens = tonumber(raw[1])
local last = tonumber(raw[2])
local discarded = 0

if raw[1] or raw[2] then
    if tokens == nil or last == nil or tokens ~= tokens
        or tokens == math.huge or tokens == -math.huge
        or last ~= math.floor(last)
        or last == math.huge or last == -math.huge then
        tokens = nil
        discarded = 1
    end
end

if tokens == nil then
    tokens = capacity
    last = now
else
    local elapsed = math.max(0, now - last)
    tokens = math.max(0, math.min(capacity, tokens + elapsed * capacity / window_ms))
    last = math.max(now, last)
end

local allowed = 0
if tokens >= 1 then
    tokens = tokens - 1
    allowed = 1
end

local tokens_str = string.format('%.17g', tokens)
local last_str = string.format('%d', last)
redis.call('HSET', KEYS[1], 'tokens', tokens_str, 'last', last_str)
if ttl_ms > 0 then
    redis.call('PEXPIRE', KEYS[1], ttl_ms)
end
return {allowed, tokens_str, last_str, discarded}
"""


class BucketStore:
    """Interface shared by the bucket store backends."""

    async def consume(
        self, identity_key: str, policy: RateLimitPolicy, now: int
    ) -> Tuple[BucketState, Decision]:
        """Refill and try to debit the bucket for ``identity_key`` as one atomic step.

        The resulting bucket is persisted whether or not a token was taken.
        """
        raise NotImplementedError

    async def peek(self, identity_key: str) -> Optional[BucketState]:
        """Return the stored bucket without modifying it."""
        raise NotImplementedError

    async def check_health(self) -> str:
        return "ok"

    async def close(self) -> None:
        pass


class InMemoryBucketStore(BucketStore):
    """Process-local store; only correct while a single process serves traffic.

    Nothing awaits between reading and writing a bucket, so every update is
    atomic on the event loop. Buckets untouched for ``key_ttl_ms`` are
    dropped; by then they have refilled completely, so this never changes a
    decision.
    """

    def __init__(self, key_ttl_ms: Optional[int] = None):
        self.key_ttl_ms = key_ttl_ms
        self._buckets: Dict[str, BucketState] = {}
        self._expires_at: Dict[str, int] = {}
        self._next_sweep_at = 0

    async def consume(
        self, identity_key: str, policy: RateLimitPolicy, now: int
    ) -> Tuple[BucketState, Decision]:
        new_state, decision = consume_token(self._buckets.get(identity_key), policy, now)
        self._buckets[identity_key] = new_state
        if self.key_ttl_ms:
            self._expires_at[identity_key] = now + self.key_ttl_ms
            self._evict_idle(now)
        return new_state, decision

    async def peek(self, identity_key: str) -> Optional[BucketState]:
        return self._buckets.get(identity_key)

    def __len__(self) -> int:
        return len(self._buckets)

    def _evict_idle(self, now: int) -> None:
        # At most one sweep per TTL period keeps the cost amortised.
        if now < self._next_sweep_at:
            return
        self._next_sweep_at = now + self.key_ttl_ms

        expired = [key for key, expires_at in self._expires_at.items() if expires_at <= now]
        for key in expired:
            del self._expires_at[key]
            del self._buckets[key]


class RedisBucketStore(BucketStore):
    """Bucket store backed by Redis hashes.

    Each bucket is a hash ``<prefix>:<identity_key>`` with fields ``tokens``
    (float) and ``last`` (epoch ms). A check is one EVALSHA of
    ``CONSUME_SCRIPT``, which Redis runs atomically, so contention on a hot
    key costs no retries. Each call is bounded by ``timeout_ms``; only
    timeouts and Redis errors count towards opening the circuit.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        key_prefix: str = "rate_limit",
        timeout_ms: int = 250,
        key_ttl_ms: Optional[int] = None,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.timeout_ms = timeout_ms
        self.key_ttl_ms = key_ttl_ms
        self.metrics = metrics
        self.logger = get_logger("gateway.bucket_store")
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
            expected_exception=StoreUnavailableError,
            name="bucket_store",
        )
        self._redis: Optional[redis.Redis] = None
        self._consume_script: Optional[AsyncScript] = None

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            timeout = self.timeout_ms / 1000
            self._redis = redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=timeout,
                socket_timeout=timeout,
            )
        return self._redis

    async def _get_consume_script(self) -> AsyncScript:
        if self._consume_script is None:
            redis_client = await self._get_redis()
            self._consume_script = redis_client.register_script(CONSUME_SCRIPT)
        return self._consume_script

    def _make_key(self, identity_key: str) -> str:
        """Generate rate limit key."""
        return f"{self.key_prefix}:{identity_key}"

    async def consume(
        self, identity_key: str, policy: RateLimitPolicy, now: int
    ) -> Tuple[BucketState, Decision]:
        try:
            return await self.circuit_breaker.call(self._bounded, self._run_consume, identity_key, policy, now)
        except CircuitBreakerOpenException as exc:
            raise StoreUnavailableError("Bucket store circuit open", details={"key": identity_key}) from exc

    async def peek(self, identity_key: str) -> Optional[BucketState]:
        try:
            return await self.circuit_breaker.call(self._bounded, self._read, identity_key)
        except CircuitBreakerOpenException as exc:
            raise StoreUnavailableError("Bucket store circuit open", details={"key": identity_key}) from exc

    async def _bounded(self, operation, *args):
        """Run a store call under the call timeout, mapping faults to StoreUnavailableError."""
        try:
            if self.metrics is not None:
                with self.metrics.time_operation("bucket_store_latency_seconds"):
                    return await asyncio.wait_for(operation(*args), timeout=self.timeout_ms / 1000)
            return await asyncio.wait_for(operation(*args), timeout=self.timeout_ms / 1000)
        except asyncio.TimeoutError as exc:
            raise StoreUnavailableError(
                "Bucket store call timed out", details={"timeout_ms": self.timeout_ms}
            ) from exc
        except RedisError as exc:
            raise StoreUnavailableError(str(exc) or type(exc).__name__) from exc

    async def _run_consume(
        self, identity_key: str, policy: RateLimitPolicy, now: int
    ) -> Tuple[BucketState, Decision]:
        script = await self._get_consume_script()
        key = self._make_key(identity_key)

        allowed, tokens, last, discarded = await script(
            keys=[key],
            args=[policy.capacity, policy.window_ms, now, self.key_ttl_ms or 0],
        )
        if int(discarded):
            self.logger.warning("Discarded malformed bucket record", key=key)

        state = BucketState(tokens=float(tokens), last_refill_at=int(last))
        return state, decision_for(state, bool(int(allowed)), policy)

    async def _read(self, identity_key: str) -> Optional[BucketState]:
        redis_client = await self._get_redis()
        key = self._make_key(identity_key)
        return self._decode(key, await redis_client.hgetall(key))

    def _decode(self, key: str, raw: Optional[Mapping]) -> Optional[BucketState]:
        """Parse a stored hash; anything unusable counts as no bucket at all."""
        if not raw:
            return None

        fields = {
            (k.decode("utf-8") if isinstance(k, bytes) else k): (v.decode("utf-8") if isinstance(v, bytes) else v)
            for k, v in raw.items()
        }
        try:
            tokens = float(fields["tokens"])
            last = int(fields["last"])
        except (KeyError, TypeError, ValueError):
            self.logger.warning("Discarding malformed bucket record", key=key, record=fields)
            return None

        if not math.isfinite(tokens):
            self.logger.warning("Discarding malformed bucket record", key=key, record=fields)
            return None
        return BucketState(tokens=tokens, last_refill_at=last)

    async def check_health(self) -> str:
        try:
            redis_client = await self._get_redis()
            await asyncio.wait_for(redis_client.ping(), timeout=self.timeout_ms / 1000)
            return "ok"
        except (RedisError, asyncio.TimeoutError, OSError) as exc:
            self.logger.error("Bucket store health check failed", error=str(exc))
            return "error"

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self._consume_script = None


def create_bucket_store(config, metrics: Optional[MetricsCollector] = None) -> BucketStore:
    """Pick the store backend named by ``config.redis_url``."""
    if config.redis_url.startswith(MEMORY_URL_SCHEME):
        return InMemoryBucketStore(key_ttl_ms=config.rate_limit_window_ms)
    return RedisBucketStore(
        config.redis_url,
        key_prefix=config.rate_limit_key_prefix,
        timeout_ms=config.store_timeout_ms,
        key_ttl_ms=config.rate_limit_window_ms,
        failure_threshold=config.store_failure_threshold,
        recovery_timeout=config.store_recovery_seconds,
        metrics=metrics,
    )
