"""
Admission gate for Gateway.

Every inbound request passes through here before any route handler runs:
resolve the caller, pick the policy for its identity kind, and spend one
token from its bucket. Bucket store faults fail open in this module and
nowhere else.
"""

import math
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from shared.errors import AccessLayerException, PolicyConfigurationError, RateLimitError, StoreUnavailableError
from shared.logging import clear_context, get_logger, set_identity_context, set_request_id
from shared.metrics import MetricsCollector
from ..auth.identity import ANONYMOUS_KIND, USER_KIND, Identity, IdentityResolver, RequestCredential
from ..ratelimit.models import Decision, RateLimitPolicy
from ..ratelimit.token_bucket import TokenBucketRateLimiter


@dataclass(frozen=True)
class AdmissionResult:
    identity: Identity
    decision: Decision
    degraded: bool = False


def build_policies(config) -> Mapping[str, RateLimitPolicy]:
    """Policies per identity kind from service configuration."""
    return {
        USER_KIND: RateLimitPolicy(
            capacity=config.rate_limit_capacity_user,
            window_ms=config.rate_limit_window_ms,
        ),
        ANONYMOUS_KIND: RateLimitPolicy(
            capacity=config.rate_limit_capacity_ip,
            window_ms=config.rate_limit_window_ms,
        ),
    }


class AdmissionGate:
    """Wire identity resolution into the rate limiter."""

    def __init__(
        self,
        resolver: IdentityResolver,
        rate_limiter: TokenBucketRateLimiter,
        policies: Mapping[str, RateLimitPolicy],
        *,
        trust_forwarded_for: bool = False,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.resolver = resolver
        self.rate_limiter = rate_limiter
        self.policies = dict(policies)
        self.trust_forwarded_for = trust_forwarded_for
        self.metrics = metrics
        self.logger = get_logger("gateway.admission")

    def policy_for(self, identity: Identity) -> RateLimitPolicy:
        try:
            return self.policies[identity.kind]
        except KeyError:
            raise PolicyConfigurationError(identity.kind) from None

    async def admit(self, request: Request) -> AdmissionResult:
        credential = RequestCredential.from_request(request, trust_forwarded_for=self.trust_forwarded_for)
        return await self.check(credential)

    async def check(self, credential: RequestCredential) -> AdmissionResult:
        identity = await self.resolver.resolve(credential)
        policy = self.policy_for(identity)

        try:
            decision = await self.rate_limiter.check_and_consume(identity.key, policy)
        except StoreUnavailableError as e:
            self.logger.warning(
                "Bucket store unavailable, admitting request",
                identity_key=identity.key,
                error=e.message
            )
            self._record(identity, "fail_open")
            return AdmissionResult(
                identity=identity,
                decision=Decision(allowed=True, retry_after_ms=0, limit=policy.capacity, remaining=policy.capacity),
                degraded=True,
            )

        self._record(identity, "allowed" if decision.allowed else "denied")
        return AdmissionResult(identity=identity, decision=decision)

    def _record(self, identity: Identity, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.record_admission(identity.kind, outcome)


def rate_limit_headers(decision: Decision) -> dict:
    """Standard rate limit headers for a decision."""
    headers = {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
    }
    if not decision.allowed:
        headers["Retry-After"] = str(math.ceil(decision.retry_after_ms / 1000))
        headers["X-RateLimit-Retry-After-Ms"] = str(decision.retry_after_ms)
    return headers


class AdmissionMiddleware(BaseHTTPMiddleware):
    """Short-circuit over-limit requests with 429 before they reach any route."""

    def __init__(self, app, gate: AdmissionGate, exempt_paths: Iterable[str] = ()):
        super().__init__(app)
        self.gate = gate
        self.exempt_paths = frozenset(exempt_paths)
        self.logger = get_logger("gateway.admission_middleware")

    async def dispatch(self, request: Request, call_next):
        # CORS preflights carry no credentials and must not spend tokens.
        if request.method == "OPTIONS" or request.url.path in self.exempt_paths:
            return await call_next(request)

        set_request_id(request.headers.get("X-Request-ID"))
        try:
            try:
                result = await self.gate.admit(request)
            except AccessLayerException as e:
                self.logger.error("Admission check failed", code=e.code, message=e.message, details=e.details)
                return JSONResponse(status_code=500, content={"error": "Server error.  Please try again later."})

            request.state.identity = result.identity
            set_identity_context(
                result.identity.key,
                result.identity.user_id if result.identity.is_authenticated else None,
            )

            decision = result.decision
            if not decision.allowed:
                denial = RateLimitError(retry_after_ms=decision.retry_after_ms)
                return JSONResponse(
                    status_code=429,
                    content={"error": denial.message},
                    headers=rate_limit_headers(decision),
                )

            response = await call_next(request)
            if not result.degraded:
                response.headers.update(rate_limit_headers(decision))
            return response
        finally:
            clear_context()
