"""
Unit tests for Gateway main service.
"""

from datetime import datetime, timedelta, timezone

import pytest
from unittest.mock import AsyncMock, MagicMock
from fastapi.testclient import TestClient
from jose import jwt

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_gateway.app.adapters.user_directory_client import UserRecord
from service_gateway.app.main import GatewayService, create_app
from service_gateway.app.ratelimit.store import InMemoryBucketStore
from shared.config import ServiceConfig
from shared.errors import StoreUnavailableError


SECRET = "test-secret"
ORIGIN = "https://app.example.com"
START_MS = 1_700_000_000_000


def make_config(**overrides):
    settings = {
        "env": "local",
        "redis_url": "memory://",
        "jwt_secret": SECRET,
        "rate_limit_capacity_ip": 10,
        "rate_limit_capacity_user": 30,
        "rate_limit_window_ms": 60000,
    }
    settings.update(overrides)
    return ServiceConfig(service_name="gateway", port=8000, **settings)


def auth_headers(user_id="user-123"):
    token = jwt.encode(
        {"sub": user_id, "exp": datetime.now(timezone.utc) + timedelta(hours=1)},
        SECRET,
        algorithm="HS256",
    )
    return {"Authorization": f"Bearer {token}"}


class FakeClock:
    def __init__(self, now: int = START_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now


class TestGatewayService:
    """Test cases for GatewayService."""

    @pytest.fixture
    def user_directory(self):
        directory = MagicMock()
        directory.lookup_user_by_id = AsyncMock(
            return_value=UserRecord.model_validate(
                {"_id": "user-123", "role": "admin", "name": "Grace", "email": "grace@example.com"}
            )
        )
        return directory

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def gateway_service(self, user_directory, clock):
        """Create GatewayService instance."""
        return GatewayService(make_config(), user_directory=user_directory, clock=clock)

    @pytest.fixture
    def client(self, gateway_service):
        """Create test client."""
        return TestClient(gateway_service.app)

    def test_root_endpoint(self, client):
        """Test root endpoint."""
        response = client.get("/")
        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "gateway"
        assert response.headers["X-RateLimit-Limit"] == "10"
        assert response.headers["X-RateLimit-Remaining"] == "9"

    def test_anonymous_burst_then_429(self, client):
        for _ in range(10):
            assert client.get("/").status_code == 200

        response = client.get("/")

        assert response.status_code == 429
        assert response.json() == {"error": "Too many requests per minute"}
        assert response.headers["Retry-After"] == "6"
        assert response.headers["X-RateLimit-Retry-After-Ms"] == "6000"

    def test_refill_admits_one_more(self, client, clock):
        for _ in range(11):
            client.get("/")

        clock.now += 6000

        assert client.get("/").status_code == 200
        assert client.get("/").status_code == 429

    def test_authenticated_caller_gets_user_capacity(self, client):
        headers = auth_headers()

        statuses = [client.get("/", headers=headers).status_code for _ in range(31)]

        assert statuses == [200] * 30 + [429]

    def test_user_and_anonymous_buckets_are_independent(self, client):
        for _ in range(11):
            client.get("/")
        assert client.get("/").status_code == 429

        assert client.get("/", headers=auth_headers()).status_code == 200

    def test_invalid_token_counts_against_origin(self, client):
        headers = {"Authorization": "Bearer garbage"}
        statuses = [client.get("/", headers=headers).status_code for _ in range(11)]

        assert statuses == [200] * 10 + [429]

    def test_health_endpoint_is_not_rate_limited(self, client):
        """Test health endpoint."""
        for _ in range(20):
            response = client.get("/health")
            assert response.status_code == 200

        data = response.json()
        assert data["service"] == "gateway"
        assert data["status"] == "ok"
        assert data["dependencies"] == {"bucket_store": "ok"}

    def test_metrics_endpoint(self, client):
        client.get("/")
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "admission_decisions_total" in response.text

    def test_whoami_authenticated(self, client):
        response = client.get("/api/v1/whoami", headers=auth_headers())

        assert response.status_code == 200
        data = response.json()
        assert data["kind"] == "user"
        assert data["identity_key"] == "user:user-123"
        assert data["capabilities"] == {"admin": True, "instructor": False, "student": False}
        assert data["email"] == "grace@example.com"

    def test_whoami_anonymous(self, client):
        data = client.get("/api/v1/whoami").json()

        assert data["kind"] == "anonymous"
        assert data["identity_key"] == "ip:testclient"
        assert data["authenticated"] is False

    def test_rate_limit_status(self, client):
        client.get("/")
        data = client.get("/api/v1/rate-limit").json()

        assert data["limit"] == 10
        assert data["window_ms"] == 60000
        assert data["remaining"] == 8
        assert data["available"] is True

    def test_store_outage_fails_open(self, user_directory):
        store = InMemoryBucketStore()
        store.consume = AsyncMock(side_effect=StoreUnavailableError("Connection refused"))
        store.check_health = AsyncMock(return_value="error")
        client = TestClient(create_app(make_config(), bucket_store=store, user_directory=user_directory))

        statuses = [client.get("/").status_code for _ in range(25)]

        assert statuses == [200] * 25
        health = client.get("/health").json()
        assert health["status"] == "degraded"

    def test_missing_policy_is_server_error(self, gateway_service, client):
        del gateway_service.admission_gate.policies["anonymous"]

        response = client.get("/", headers={"Origin": ORIGIN})

        assert response.status_code == 500
        assert response.json() == {"error": "Server error.  Please try again later."}
        assert "access-control-allow-origin" in response.headers

    def test_unexpected_gate_error_is_json(self, user_directory):
        store = InMemoryBucketStore()
        store.consume = AsyncMock(side_effect=RuntimeError("bug"))
        app = create_app(make_config(), bucket_store=store, user_directory=user_directory)
        client = TestClient(app, raise_server_exceptions=False)

        response = client.get("/")

        assert response.status_code == 500
        assert response.json() == {"error": "Server error.  Please try again later."}

    def test_cors_preflight_does_not_spend_tokens(self, client):
        preflight = {"Origin": ORIGIN, "Access-Control-Request-Method": "GET"}

        for _ in range(15):
            assert client.options("/api/v1/whoami", headers=preflight).status_code == 200
            client.options("/")

        response = client.get("/", headers={"Origin": ORIGIN})
        assert response.status_code == 200
        assert response.headers["X-RateLimit-Remaining"] == "9"

    def test_denial_is_readable_cross_origin(self, client):
        for _ in range(10):
            client.get("/", headers={"Origin": ORIGIN})

        response = client.get("/", headers={"Origin": ORIGIN})

        assert response.status_code == 429
        assert response.headers["access-control-allow-origin"] in ("*", ORIGIN)
        exposed = response.headers["access-control-expose-headers"]
        assert "Retry-After" in exposed
        assert "X-RateLimit-Retry-After-Ms" in exposed

    def test_denials_are_timed(self, gateway_service, client):
        for _ in range(11):
            client.get("/")

        assert gateway_service.metrics.registry.get_sample_value(
            "http_requests_total", {"method": "GET", "endpoint": "/", "status_code": "429"}
        ) == 1
