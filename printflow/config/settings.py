"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./printflow.db",
        description="SQLAlchemy async database URL (postgresql+asyncpg://... in production)",
    )
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_pool_timeout: int = Field(
        default=10, description="Seconds to wait for a pooled connection"
    )
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")

    # Stripe Configuration
    stripe_webhook_secret: Optional[str] = Field(
        default=None, description="Stripe webhook signing secret (signature check disabled if unset)"
    )

    # Application Configuration
    app_name: str = Field(default="printflow", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)",
    )

    # Pricing
    shipping_flat_fee: int = Field(default=800, ge=0, description="Flat shipping fee (minor unit)")
    free_shipping_threshold: int = Field(
        default=8000, ge=0, description="Post-discount subtotal that waives shipping"
    )

    # Render Pipeline
    render_max_attempts: int = Field(
        default=3, ge=1, description="Render attempts before a design is marked failed"
    )
    render_poll_interval_seconds: float = Field(
        default=1.0, description="Render worker polling interval (seconds)"
    )
    render_claim_retries: int = Field(
        default=5, ge=1, description="Candidates tried per claim before giving up"
    )
    render_lease_seconds: int = Field(
        default=600, ge=1, description="Processing time after which a job is reclaimed from its worker"
    )
    render_output_dir: str = Field(
        default="./renders", description="Directory the local renderer writes artifacts to"
    )
    render_worker_id: Optional[str] = Field(
        default=None, description="Worker id recorded on claimed jobs (hostname if unset)"
    )

    # Orders
    order_cas_retries: int = Field(
        default=3, ge=1, description="Compare-and-set retries for order transitions"
    )

    # Rate Limiting
    rate_limit_backend: str = Field(default="database", description="database or redis")
    rate_limit_window_seconds: int = Field(default=60, ge=1, description="Fixed window size")
    rate_limit_order_create: int = Field(default=10, description="Order creations per window")
    rate_limit_design_create: int = Field(default=30, description="Design creations per window")
    rate_limit_render_submit: int = Field(default=30, description="Render submissions per window")
    rate_limit_webhook: int = Field(default=600, description="Webhook deliveries per window")
    rate_limit_gc_interval_seconds: float = Field(
        default=300.0, description="Interval between expired-window purges"
    )

    model_config = SettingsConfigDict(
        env_prefix="PRINTFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("rate_limit_backend")
    @classmethod
    def validate_rate_limit_backend(cls, v: str) -> str:
        """Only the database and redis counter stores exist."""
        if v.lower() not in ("database", "redis"):
            raise ValueError("rate_limit_backend must be 'database' or 'redis'")
        return v.lower()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
