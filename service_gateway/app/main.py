"""
API Gateway service for the Access Layer.
"""

from typing import Callable, Dict, Optional

from fastapi import Request

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import StoreUnavailableError
from .adapters.user_directory_client import UserDirectoryClient
from .auth.identity import IdentityResolver, UserDirectory
from .domain.admission import AdmissionGate, AdmissionMiddleware, build_policies
from .ratelimit.bucket import now_ms
from .ratelimit.store import BucketStore, create_bucket_store
from .ratelimit.token_bucket import TokenBucketRateLimiter


class GatewayService(BaseService):
    """API Gateway service implementation."""

    cors_expose_headers = [
        "Retry-After",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Retry-After-Ms",
    ]

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        *,
        bucket_store: Optional[BucketStore] = None,
        user_directory: Optional[UserDirectory] = None,
        clock: Callable[[], int] = now_ms,
    ):
        super().__init__("gateway", 8000, config=config)

        self.bucket_store = bucket_store or create_bucket_store(self.config, metrics=self.metrics)
        self.user_directory = user_directory or UserDirectoryClient(
            self.config.user_service_url,
            timeout=self.config.user_lookup_timeout_seconds,
        )
        self.identity_resolver = IdentityResolver(
            self.user_directory,
            self.config.jwt_secret,
            algorithm=self.config.jwt_algorithm,
        )
        self.rate_limiter = TokenBucketRateLimiter(self.bucket_store, clock=clock)
        self.admission_gate = AdmissionGate(
            self.identity_resolver,
            self.rate_limiter,
            build_policies(self.config),
            trust_forwarded_for=self.config.trust_forwarded_for,
            metrics=self.metrics,
        )

        self.add_service_middleware(
            AdmissionMiddleware,
            gate=self.admission_gate,
            exempt_paths=self.config.admission_exempt_paths,
        )

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.bucket_store.close()
            close = getattr(self.user_directory, "close", None)
            if close is not None:
                await close()

        self._setup_gateway_routes()

        # Expose service instance via app state for introspection/testing
        self.app.state.gateway_service = self

    async def _check_dependencies(self) -> Dict[str, str]:
        return {"bucket_store": await self.bucket_store.check_health()}

    def _setup_gateway_routes(self):
        """Set up gateway-specific routes."""

        @self.app.get("/")
        async def root():
            return {
                "service": "gateway",
                "message": "Access Layer - API Gateway",
                "version": "1.0.0",
            }

        @self.app.get("/api/v1/whoami")
        async def whoami(request: Request):
            """Describe the identity the gateway resolved for this caller."""
            identity = request.state.identity
            body = {
                "kind": identity.kind,
                "identity_key": identity.key,
                "authenticated": identity.is_authenticated,
                "role": identity.role,
                "capabilities": {
                    "admin": identity.is_admin,
                    "instructor": identity.is_instructor,
                    "student": identity.is_student,
                },
            }
            if identity.is_authenticated and identity.user is not None:
                body["name"] = identity.user.name
                body["email"] = identity.user.email
            return body

        @self.app.get("/api/v1/rate-limit")
        async def rate_limit_status(request: Request):
            """Current bucket for the caller, after this request's own token."""
            identity = request.state.identity
            policy = self.admission_gate.policy_for(identity)
            try:
                state = await self.rate_limiter.status(identity.key, policy)
            except StoreUnavailableError as e:
                return {
                    "identity_key": identity.key,
                    "limit": policy.capacity,
                    "window_ms": policy.window_ms,
                    "available": False,
                    "error": e.message,
                }
            return {
                "identity_key": identity.key,
                "limit": policy.capacity,
                "window_ms": policy.window_ms,
                "available": True,
                "tokens": round(state.tokens, 3),
                "remaining": int(state.tokens),
            }


def create_app(config: Optional[ServiceConfig] = None, **collaborators):
    """Create FastAPI application."""
    service = GatewayService(config, **collaborators)
    return service.app


if __name__ == "__main__":
    service = GatewayService()
    service.run()
