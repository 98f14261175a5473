"""
Shared error handling for the Access Layer.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    error: str
    code: str
    details: Dict[str, Any] = {}


class AccessLayerException(Exception):
    """Base exception for Access Layer services."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            error=self.message,
            code=self.code,
            details=self.details
        )


class ExternalServiceError(AccessLayerException):
    """External service errors."""

    def __init__(self, service: str, message: str = "External service error", details: Optional[Dict[str, Any]] = None):
        self.service = service
        super().__init__("EXTERNAL_SERVICE_ERROR", f"{service}: {message}", details)


class StoreUnavailableError(ExternalServiceError):
    """The shared bucket store could not complete a call."""

    def __init__(self, message: str = "Bucket store unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("bucket_store", message, details)
        self.code = "STORE_UNAVAILABLE"


class RateLimitError(AccessLayerException):
    """Rate limiting errors."""

    def __init__(self, message: str = "Too many requests per minute", retry_after_ms: int = 0,
                 details: Optional[Dict[str, Any]] = None):
        self.retry_after_ms = retry_after_ms
        super().__init__("RATE_LIMIT_ERROR", message, {"retry_after_ms": retry_after_ms, **(details or {})})


class PolicyConfigurationError(AccessLayerException):
    """No rate limit policy is configured for an identity kind."""

    def __init__(self, identity_kind: str):
        super().__init__(
            "POLICY_CONFIGURATION_ERROR",
            f"No rate limit policy configured for identity kind '{identity_kind}'",
            {"identity_kind": identity_kind}
        )
