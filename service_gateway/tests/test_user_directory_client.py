"""
Unit tests for the user directory client.
"""

import httpx
import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_gateway.app.adapters.user_directory_client import UserDirectoryClient
from shared.errors import ExternalServiceError


def client_for(handler):
    return UserDirectoryClient("http://users.internal/", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_lookup_returns_user_record():
    def handler(request):
        assert request.url.path == "/users/64b7f0c2"
        return httpx.Response(200, json={
            "_id": "64b7f0c2",
            "name": "Grace",
            "email": "grace@example.com",
            "role": "admin",
            "password": "$2a$08$hash",
        })

    client = client_for(handler)
    user = await client.lookup_user_by_id("64b7f0c2")
    await client.close()

    assert user.id == "64b7f0c2"
    assert user.role == "admin"
    assert user.email == "grace@example.com"


@pytest.mark.asyncio
async def test_lookup_missing_user_returns_none():
    client = client_for(lambda request: httpx.Response(404, json={"error": "not found"}))
    assert await client.lookup_user_by_id("nobody") is None
    await client.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("user_id,raw_path", [
    ("../admin", b"/users/..%2Fadmin"),
    ("a?role=admin", b"/users/a%3Frole%3Dadmin"),
    ("x/y#z", b"/users/x%2Fy%23z"),
])
async def test_lookup_escapes_user_id(user_id, raw_path):
    seen = []

    def handler(request):
        seen.append(request.url.raw_path)
        return httpx.Response(404)

    client = client_for(handler)
    assert await client.lookup_user_by_id(user_id) is None
    assert seen == [raw_path]
    await client.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("user_id", ["", ".", ".."])
async def test_dot_segment_ids_are_never_looked_up(user_id):
    def handler(request):
        raise AssertionError(f"unexpected request to {request.url}")

    client = client_for(handler)
    assert await client.lookup_user_by_id(user_id) is None
    await client.close()


@pytest.mark.asyncio
async def test_lookup_server_error_raises():
    client = client_for(lambda request: httpx.Response(503))

    with pytest.raises(ExternalServiceError) as exc_info:
        await client.lookup_user_by_id("64b7f0c2")
    await client.close()

    assert exc_info.value.details == {"status_code": 503}


@pytest.mark.asyncio
async def test_lookup_transport_error_raises():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = client_for(handler)
    with pytest.raises(ExternalServiceError):
        await client.lookup_user_by_id("64b7f0c2")
    await client.close()


@pytest.mark.asyncio
async def test_lookup_malformed_record_raises():
    client = client_for(lambda request: httpx.Response(200, json={"name": "no id or role"}))

    with pytest.raises(ExternalServiceError):
        await client.lookup_user_by_id("64b7f0c2")
    await client.close()
