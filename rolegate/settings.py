"""
Configuration settings for rolegate.

This module defines the configuration schema using Pydantic settings,
supporting environment variables, .env files, and direct configuration.
"""

from typing import Optional

from pydantic import ConfigDict, Field
from pydantic_settings import BaseSettings

VALID_STORE_BACKENDS = ["memory", "redis"]


class Settings(BaseSettings):
    """
    Configuration settings for the permission engine.

    Environment Variable Mapping:
        All settings can be configured via environment variables by prefixing
        with 'ROLEGATE_' (e.g., ROLEGATE_STORE_BACKEND, ROLEGATE_REDIS_URL).

    Example:
        In-memory engine for tests:

        >>> settings = Settings(store_backend="memory")

        Redis-backed engine:

        >>> settings = Settings(
        ...     store_backend="redis",
        ...     redis_url="redis://localhost:6379/0",
        ... )
    """

    store_backend: str = Field(
        default="memory", description="Store backend: 'memory' or 'redis'"
    )

    redis_url: Optional[str] = Field(
        default=None, description="Redis connection URL for the redis backend"
    )
    redis_namespace: str = Field(
        default="rolegate", description="Prefix of every key the redis backend writes"
    )

    strict_resources: bool = False
    """Reject grants and denials of resources missing from the resource registry."""

    debug: bool = False
    """Enable debug logging of permission decisions."""

    model_config = ConfigDict(
        env_file=".env", env_prefix="ROLEGATE_", case_sensitive=False, extra="forbid"
    )

    def validate_configuration(self) -> None:
        """
        Validate the current configuration for common issues.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.store_backend not in VALID_STORE_BACKENDS:
            raise ValueError(
                f"Invalid store_backend '{self.store_backend}'. "
                f"Must be one of: {VALID_STORE_BACKENDS}"
            )

        if self.store_backend == "redis" and not self.redis_url:
            raise ValueError("redis_url must be provided when store_backend is 'redis'")

        if not self.redis_namespace or ":" in self.redis_namespace:
            raise ValueError("redis_namespace must be non-empty and contain no ':'")
