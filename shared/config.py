"""
Shared configuration management for the coordination layer.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


TEST_ENVIRONMENTS = ("test", "ci", "e2e")


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="COORD_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Shared store ("redis", "memory" or "none")
    store_backend: str = Field(default="redis")
    redis_url: str = Field(default="redis://localhost:6379/0")
    store_socket_timeout: float = Field(default=1.0)

    # Mutex defaults
    lock_acquire_timeout_ms: int = Field(default=15 * 1000)
    lock_unlock_timeout_ms: int = Field(default=10 * 60 * 1000)
    lock_retry_delay_ms: int = Field(default=100)

    # Rate limiting
    rate_limit_enabled: bool = Field(default=True)
    rate_limit_path_prefix: str = Field(default="/graphql")
    rate_limit_anonymous_total: int = Field(default=10)
    rate_limit_authenticated_total: int = Field(default=100)
    rate_limit_window_ms: int = Field(default=60 * 1000)
    internal_api_key: Optional[str] = Field(default=None)

    # GraphQL response caching
    graphql_cache_enabled: bool = Field(default=True)
    graphql_cache_ttl_seconds: int = Field(default=300)
    graphql_cache_min_execution_time_ms: int = Field(default=1000)
    graphql_cache_operations: List[str] = Field(default_factory=list)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port)


@lru_cache()
def get_settings() -> BaseConfig:
    """Get settings not bound to a service (library callers). Read once per process."""
    return BaseConfig()


def is_test_environment(env: str) -> bool:
    """Whether `env` names a test/ephemeral environment."""
    return env.lower() in TEST_ENVIRONMENTS
