"""Tenancy engine configuration loaded from environment variables."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from tenancy_engine.pool.factory import ConnectionTemplate
    from tenancy_engine.pool.manager import PoolSettings

logger = logging.getLogger(__name__)

# Limits applied by ``QuotaLedger.apply_default_quotas`` and used as the
# fallback limit when a resource is first touched without an explicit one.
DEFAULT_QUOTA_LIMITS: dict[str, int] = {
    "storage_mb": 1000,
    "users": 100,
    "monthly_bandwidth_gb": 100,
    "api_calls_per_day": 10_000,
    "monthly_emails": 1000,
    "cron_jobs": 10,
    "webhooks": 25,
    "database_size_mb": 1000,
    "file_storage_mb": 5000,
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables with TENANCY_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="TENANCY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Connection pool
    max_pool_size: int = 50
    max_idle_time: float = 300.0
    connection_timeout: float = 10.0
    pooling_enabled: bool = True

    # Per-tenant database naming
    database_url_template: str | None = None
    database_name_prefix: str = "tenant"
    database_name_suffix: str = ""

    # Quotas
    default_warning_threshold: float = 80.0
    default_quota_limits: dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_QUOTA_LIMITS))
    ledger_database_url: str | None = None
    summary_cache_ttl: float = 60.0

    # Logging
    structured_logging: bool = False
    log_level: str = "INFO"

    @field_validator("max_pool_size")
    @classmethod
    def _positive_pool_size(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_pool_size must be at least 1")
        return v

    @field_validator("max_idle_time", "connection_timeout")
    @classmethod
    def _positive_seconds(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @field_validator("default_warning_threshold")
    @classmethod
    def _percentage(cls, v: float) -> float:
        if not 0.0 <= v <= 100.0:
            raise ValueError("default_warning_threshold must be between 0 and 100")
        return v

    @field_validator("default_quota_limits")
    @classmethod
    def _non_negative_limits(cls, v: dict[str, int]) -> dict[str, int]:
        negative = sorted(name for name, limit in v.items() if limit < 0)
        if negative:
            raise ValueError(f"quota limits must be >= 0: {', '.join(negative)}")
        return v

    def is_template_configured(self) -> bool:
        return bool(self.database_url_template)

    def pool_settings(self) -> PoolSettings:
        """Project the pool-related fields onto :class:`PoolSettings`."""
        from tenancy_engine.pool.manager import PoolSettings

        return PoolSettings(
            max_pool_size=self.max_pool_size,
            max_idle_time=self.max_idle_time,
            connection_timeout=self.connection_timeout,
            pooling_enabled=self.pooling_enabled,
        )

    def connection_template(self) -> ConnectionTemplate | None:
        """Return the per-tenant connection template, or ``None`` if unset."""
        if not self.database_url_template:
            return None
        from tenancy_engine.pool.factory import ConnectionTemplate

        return ConnectionTemplate(
            url=self.database_url_template,
            database_prefix=self.database_name_prefix,
            database_suffix=self.database_name_suffix,
        )


def load_settings(**overrides: object) -> Settings:
    """Load settings from environment, with optional overrides for testing."""
    settings = Settings(**overrides)  # type: ignore[arg-type]

    logger.debug(
        "Loaded tenancy settings: pool_size=%d idle=%.0fs pooling=%s",
        settings.max_pool_size,
        settings.max_idle_time,
        settings.pooling_enabled,
    )
    return settings
