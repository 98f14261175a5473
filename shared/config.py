"""
Shared configuration management for the Access Layer admission subsystem.
"""

from typing import List

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACCESS_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Shared bucket store ("memory://" keeps buckets in-process)
    redis_url: str = Field(default="redis://localhost:6379/0")
    store_timeout_ms: int = Field(default=250)
    store_failure_threshold: int = Field(default=5)
    store_recovery_seconds: float = Field(default=30.0)

    # Rate limiting
    rate_limit_key_prefix: str = Field(default="rate_limit")
    rate_limit_capacity_ip: int = Field(default=10)
    rate_limit_capacity_user: int = Field(default=30)
    rate_limit_window_ms: int = Field(default=60000)
    admission_exempt_paths: List[str] = Field(default_factory=lambda: ["/health", "/metrics"])

    # Security
    jwt_secret: str = Field(default="change-me")
    jwt_algorithm: str = Field(default="HS256")
    trust_forwarded_for: bool = Field(default=False)

    # Internal services
    user_service_url: str = Field(default="http://localhost:8020")
    user_lookup_timeout_seconds: float = Field(default=2.0)

    @model_validator(mode="after")
    def _check_rate_limits(self):
        """Refuse to start with a policy that cannot be enforced."""
        for name in ("rate_limit_capacity_ip", "rate_limit_capacity_user", "rate_limit_window_ms", "store_timeout_ms"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.rate_limit_capacity_user <= self.rate_limit_capacity_ip:
            raise ValueError(
                "rate_limit_capacity_user must be greater than rate_limit_capacity_ip"
            )
        return self


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
