"""
Shared configuration management for the Edge Cache Layer.
"""

from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Durable key prefixes owned by caller documents and update counters
RESERVED_DATA_PREFIXES = ("doc:", "updates:")


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="EDGE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = "local"
    log_level: str = "info"

    # Durable tier
    durable_backend: Literal["redis", "memory"] = "redis"
    redis_url: str = "redis://localhost:6379/0"
    store_failure_threshold: int = Field(default=5, ge=1)
    store_recovery_timeout: float = Field(default=30.0, gt=0)

    # Cache
    cache_prefix: str = "cache:"
    cache_default_ttl: int = Field(default=60, ge=1)
    local_refresh_window_seconds: int = Field(default=10, ge=1)
    cache_sweep_interval_seconds: float = Field(default=30.0, gt=0)
    fetch_timeout_seconds: float = Field(default=5.0, gt=0)
    local_tier_shards: int = Field(default=16, ge=1)
    max_payload_bytes: int = 10 * 1024 * 1024

    # Rate limiting
    rate_limit_max_requests: int = Field(default=1000, ge=1)
    rate_limit_window_ms: int = Field(default=60000, ge=1)
    rate_limit_gc_interval_seconds: float = Field(default=300.0, gt=0)

    # Performance monitor
    perf_max_samples: int = Field(default=100, ge=1)

    @field_validator("cache_prefix")
    @classmethod
    def _cache_prefix_is_disjoint(cls, value: str) -> str:
        for reserved in RESERVED_DATA_PREFIXES:
            if value.startswith(reserved) or reserved.startswith(value):
                raise ValueError(f"cache_prefix {value!r} overlaps reserved prefix {reserved!r}")
        return value


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
