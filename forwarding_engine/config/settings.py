"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(..., description="PostgreSQL connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: str = Field(..., description="Redis connection URL")
    cache_key_prefix: str = Field(default="payment:", description="Hot cache key prefix")

    # Ledger Provider Configuration
    ledger_api_url: str = Field(
        default="https://api.blink.sv/graphql", description="Ledger GraphQL endpoint"
    )
    ledger_api_key: str = Field(..., description="Ledger API key for the funnel account")
    funnel_wallet_id: str = Field(..., description="Wallet receiving all customer payments")
    ledger_request_timeout: float = Field(
        default=15.0, description="HTTP timeout for ledger calls (seconds)"
    )
    ledger_webhook_secret: Optional[str] = Field(
        default=None, description="Webhook signing secret (whsec_...)"
    )
    circuit_breaker_failure_threshold: int = Field(
        default=5, description="Consecutive ledger failures before opening the circuit"
    )
    circuit_breaker_timeout: int = Field(
        default=60, description="Seconds before a half-open probe is allowed"
    )

    # Invoices
    invoice_expiry_seconds: int = Field(
        default=900, description="Invoice validity window (seconds)"
    )
    max_payment_amount: int = Field(
        default=100_000_000, description="Largest accepted invoice total (sats)"
    )
    max_tip_recipients: int = Field(default=10, description="Max tip recipients per payment")

    # Forwarding
    transfer_max_attempts: int = Field(
        default=3, description="Attempts per transfer leg before giving up"
    )
    transfer_retry_base_delay: float = Field(
        default=0.5, description="Base delay for leg retry backoff (seconds)"
    )
    transfer_retry_max_delay: float = Field(
        default=8.0, description="Max delay between leg retries (seconds)"
    )
    transfer_timeout_seconds: float = Field(
        default=10.0, description="Per-call timeout for a single transfer"
    )

    # Settlement Listener
    listener_backoff_base: float = Field(
        default=1.0, description="Base delay for reconnect backoff (seconds)"
    )
    listener_backoff_max: float = Field(
        default=30.0, description="Reconnect backoff ceiling (seconds)"
    )
    listener_dedup_window: int = Field(
        default=1000, description="Number of notification ids remembered for dedup"
    )
    listener_poll_interval: float = Field(
        default=2.0, description="Settlement polling interval (seconds)"
    )
    listener_resync_interval: float = Field(
        default=60.0, description="Interval for re-syncing listeners with the store"
    )

    # Sweeper
    sweeper_interval_seconds: int = Field(default=60, description="Sweeper run interval")
    sweeper_batch_size: int = Field(default=500, description="Max records per sweep query")
    exception_grace_period_seconds: int = Field(
        default=3600,
        description="Age after which completed_with_exceptions records are reported",
    )
    stale_processing_after_seconds: int = Field(
        default=1800, description="Age after which a processing claim is reported as stuck"
    )

    # Webhooks
    webhook_tolerance_seconds: int = Field(
        default=300, description="Accepted webhook timestamp skew (seconds)"
    )
    webhook_dedup_ttl: int = Field(
        default=86400 * 7, description="How long processed webhook ids are remembered"
    )

    # Outbox
    outbox_batch_size: int = Field(default=100, description="Outbox events per batch")
    outbox_poll_interval: float = Field(default=1.0, description="Outbox polling interval")
    completion_channel: str = Field(
        default="payments:completed", description="Redis channel for completion signals"
    )

    # Application Configuration
    app_name: str = Field(default="forwarding-engine", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=1, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("ledger_webhook_secret")
    @classmethod
    def validate_webhook_secret(cls, v: Optional[str]) -> Optional[str]:
        """Validate that the webhook secret uses the whsec_ format."""
        if v is not None and not v.startswith("whsec_"):
            raise ValueError("Invalid webhook secret format. Must start with 'whsec_'")
        return v

    @field_validator("transfer_max_attempts", "listener_dedup_window")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Retry budgets and window sizes must be at least one."""
        if v < 1:
            raise ValueError("Must be at least 1")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
