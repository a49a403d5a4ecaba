"""
Shared configuration management for the marketplace cache layer.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


CONCURRENT_LIMIT = 5


class CacheSettings(BaseSettings):
    """Connection and warming settings for the cache service."""

    model_config = SettingsConfigDict(
        env_prefix="CACHE_",
        env_file=".env",
        case_sensitive=False,
        extra="allow",
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Backing store
    redis_url: str = Field(default="redis://localhost:6379/0")
    socket_timeout: float = Field(default=5.0)
    socket_connect_timeout: float = Field(default=5.0)
    health_check_interval: int = Field(default=30)

    # Warming
    warming_enabled: bool = Field(default=True)
    warm_concurrency: int = Field(default=CONCURRENT_LIMIT, ge=1)
    warm_fetch_timeout: Optional[float] = Field(default=None, gt=0)


def get_settings(**overrides) -> CacheSettings:
    """Get cache settings, with explicit overrides taking precedence over env."""
    return CacheSettings(**overrides)
