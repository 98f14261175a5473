"""
User directory client for Gateway.
"""

from typing import Optional
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field

from shared.errors import ExternalServiceError
from shared.logging import get_logger


class UserRecord(BaseModel):
    """Durable user record as served by the user-management service."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(alias="_id")
    role: str
    name: Optional[str] = None
    email: Optional[str] = None


class UserDirectoryClient:
    """Client for looking up users in the user-management service."""

    def __init__(self, user_service_url: str, timeout: float = 2.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.user_service_url = user_service_url.rstrip("/")
        self.logger = get_logger("gateway.user_directory_client")
        self._client = httpx.AsyncClient(
            base_url=self.user_service_url,
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def lookup_user_by_id(self, user_id: str) -> Optional[UserRecord]:
        """Return the user record, or ``None`` if no such user exists."""
        # Dot segments would be normalised away by the URL parser.
        if user_id in ("", ".", ".."):
            return None

        try:
            response = await self._client.get(f"/users/{quote(user_id, safe='')}")
        except httpx.HTTPError as e:
            self.logger.error("User service HTTP error", error=str(e))
            raise ExternalServiceError(
                "user_service",
                "User service unavailable",
                details={"http_error": str(e)}
            ) from e

        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise ExternalServiceError(
                "user_service",
                f"Unexpected status {response.status_code}",
                details={"status_code": response.status_code}
            )

        try:
            return UserRecord.model_validate(response.json())
        except ValueError as e:
            raise ExternalServiceError(
                "user_service",
                "Malformed user record",
                details={"error": str(e)}
            ) from e
