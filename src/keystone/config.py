"""Configuration management for KEYSTONE.

Loads engine settings from environment variables using Pydantic.
Every field has a default, so the engine starts with no environment at all;
backends are enabled by setting their connection fields.

Usage:
    from keystone.config import settings

    print(settings.request_timeout_ms)
    print(settings.cache_backend)
"""

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """KEYSTONE configuration from environment variables.

    Loads from .env file automatically. Validates on instantiation.

    Attributes:
        agent_id: Identifier stamped on every response envelope
        log_level: Logging verbosity (DEBUG, INFO, WARNING, ERROR)
        request_timeout_ms: Default deadline for one request
        entry_timeout_ms: Default per-PlanEntry timeout
        max_concurrency: Global cap on concurrent adapter calls
        max_retries: Retries per entry for retryable failures
        backoff_base_ms / backoff_cap_ms: Exponential backoff constants
        cache_backend: L2 backend, 'memory' or 'parquet'
        cache_dir: Directory for the Parquet L2 backend
        sql_database: SQLite database path (None = SQL source disabled)
        api_base_url: External metrics API (None = API source disabled)
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore unknown env vars
    )

    # System Settings
    agent_id: str = Field(default="keystone-query-engine", min_length=1)
    log_level: str = Field(default="INFO", description="Logging level")

    # Deadlines & Concurrency
    request_timeout_ms: int = Field(default=10_000, ge=100, description="Request deadline")
    entry_timeout_ms: int = Field(default=5_000, ge=50, description="Per-entry timeout")
    max_concurrency: int = Field(
        default=16, ge=1, le=512, description="Max concurrent adapter calls across requests"
    )

    # Retry / Backoff
    max_retries: int = Field(default=2, ge=0, le=10)
    backoff_base_ms: int = Field(default=100, ge=0)
    backoff_cap_ms: int = Field(default=2_000, ge=0)

    # Cache
    cache_backend: str = Field(default="memory", description="L2 backend: 'memory' or 'parquet'")
    cache_dir: str = Field(default="data/cache", description="Parquet L2 cache directory")
    l1_max_entries: int = Field(default=1_024, ge=1)
    cache_policy_version: str = Field(default="v1", min_length=1)
    ttl_historical_seconds: int = Field(default=3_600, gt=0)
    ttl_daily_seconds: int = Field(default=900, gt=0)
    ttl_near_realtime_seconds: int = Field(default=60, gt=0)
    stale_if_error_seconds: int = Field(default=1_800, ge=0)
    stale_retention_seconds: int = Field(default=86_400, ge=0)
    cache_scope_keys: list[str] = Field(
        default_factory=lambda: ["tenant_id"],
        description="Intent metadata keys that partition the cache",
    )

    # Optimizer
    table_page_size: int = Field(default=100, ge=1)
    chart_series_cap: int = Field(default=500, ge=1)
    complexity_threshold: int = Field(
        default=4, ge=1, description="Filters + series above which an intent is 'complex'"
    )

    # Monitoring
    sla_threshold_ms: float = Field(default=2_000.0, gt=0.0)

    # Sources (optional, a source without a connection is disabled)
    sql_database: str | None = Field(default=None, description="SQLite database path")
    api_base_url: str | None = Field(default=None, description="External metrics API base URL")
    api_key: str | None = Field(default=None, description="External metrics API key")
    api_rate_limit: int = Field(default=10, ge=1, description="API requests/second")

    # Catalog
    catalog_path: str | None = Field(
        default=None, description="JSON metric catalog (None = built-in catalog)"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid:
            raise ValueError(f"log_level must be one of {valid}, got {v}")
        return v_upper

    @field_validator("cache_backend")
    @classmethod
    def validate_cache_backend(cls, v: str) -> str:
        """Ensure cache backend is known."""
        v_lower = v.lower()
        if v_lower not in {"memory", "parquet"}:
            raise ValueError(f"cache_backend must be 'memory' or 'parquet', got '{v}'")
        return v_lower

    @model_validator(mode="after")
    def validate_timeouts(self) -> "Settings":
        """Ensure backoff and timeout constants are consistent."""
        if self.backoff_cap_ms < self.backoff_base_ms:
            raise ValueError("backoff_cap_ms cannot be smaller than backoff_base_ms")
        if self.entry_timeout_ms > self.request_timeout_ms:
            raise ValueError("entry_timeout_ms cannot exceed request_timeout_ms")
        return self

    @property
    def api_enabled(self) -> bool:
        """Whether the external API source is configured."""
        return bool(self.api_base_url)


# Global settings instance, loaded once at import
settings = Settings()
