"""
Shared configuration management for the Policy Decision Point.
"""

from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="PDP_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # External services
    redis_url: str = Field(default="redis://localhost:6379/0")

    # Observability
    enable_tracing: bool = Field(default=False)


class PolicyServiceConfig(BaseConfig):
    """Policy service configuration."""

    service_name: str = "policy"
    port: int = 8020
    host: str = "0.0.0.0"

    # Decision cache
    cache_enabled: bool = Field(default=True)
    cache_prefix: str = Field(default="policy:")
    cache_positive_ttl: int = Field(default=300, ge=1)
    cache_negative_ttl: int = Field(default=60, ge=1)
    local_cache_size: int = Field(default=1000, ge=1)
    local_cache_ttl: int = Field(default=60, ge=1)
    redis_retry_interval: float = Field(default=30.0, ge=0)

    # Evaluation
    evaluation_timeout_seconds: float = Field(default=3.0, gt=0)
    batch_max_size: int = Field(default=50, ge=1)
    authorization_bypass: bool = Field(default=False)
    policy_version: str = Field(default="1.0.0")

    # Catalog
    catalog_path: Optional[str] = Field(default=None)
    catalog_url: Optional[str] = Field(default=None)
    catalog_token: Optional[str] = Field(default=None)
    catalog_refresh_seconds: int = Field(default=300, ge=1)

    # Identity
    jwt_secret: Optional[str] = Field(default=None)
    jwt_algorithms: List[str] = Field(default_factory=lambda: ["HS256"])
    gateway_auth_source: str = Field(default="gateway")


def get_config(**overrides) -> PolicyServiceConfig:
    """Get configuration for the policy service."""
    return PolicyServiceConfig(**overrides)
