"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

FEDAPAY_BASE_URLS = {
    "sandbox": "https://sandbox-api.fedapay.com/v1",
    "live": "https://api.fedapay.com/v1",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # FedaPay Configuration
    fedapay_secret_key: str = Field(
        ..., description="FedaPay secret API key (sk_sandbox_... or sk_live_...)"
    )
    fedapay_environment: str = Field(
        default="sandbox", description="FedaPay environment (sandbox/live)"
    )
    fedapay_webhook_secret: Optional[str] = Field(
        default=None, description="Shared secret used to sign FedaPay webhooks"
    )
    fedapay_timeout_seconds: float = Field(
        default=15.0, gt=0, le=60, description="Timeout for every FedaPay API call"
    )
    fedapay_max_retries: int = Field(
        default=3, ge=1, description="Attempts for idempotent FedaPay reads"
    )
    fedapay_payment_mode: str = Field(
        default="mtn_open", description="Mobile-money mode used by automatic deposits"
    )

    # Database Configuration
    database_url: str = Field(..., description="Database connection URL")
    database_pool_size: int = Field(default=10, description="Database connection pool size")
    database_max_overflow: int = Field(default=20, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Application Configuration
    app_name: str = Field(default="deposit-gateway", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=5000, description="API port")
    api_workers: int = Field(default=2, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:5173,http://localhost:3000",
        description="CORS allowed origins (comma-separated)",
    )

    # Deposits
    callback_base_url: str = Field(
        default="http://localhost:5000",
        description="Public base URL the processor redirects back to",
    )
    client_url: str = Field(
        default="http://localhost:5173",
        description="Front-end base URL for payment result pages",
    )
    min_deposit_amount: int = Field(default=100, ge=1, description="Minimum deposit amount")
    currency: str = Field(default="XOF", description="Currency code for every deposit")
    default_country: str = Field(default="BJ", description="Fallback customer country")
    settlement_poll_attempts: int = Field(
        default=5, ge=1, description="Status polls after an automatic deposit"
    )
    settlement_poll_interval_seconds: float = Field(
        default=2.0, ge=0, description="Delay between settlement polls (seconds)"
    )

    # Pending sweeper
    sweeper_interval_seconds: int = Field(
        default=300, ge=1, description="Seconds between pending sweeps"
    )
    sweeper_stale_after_minutes: int = Field(
        default=15, ge=1, description="Age after which a pending deposit is refreshed"
    )
    sweeper_batch_size: int = Field(default=50, ge=1, description="Deposits refreshed per sweep")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("fedapay_secret_key")
    @classmethod
    def validate_fedapay_key(cls, v: str) -> str:
        """Validate that the FedaPay secret key has a known prefix."""
        if not v.startswith("sk_sandbox_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid FedaPay secret key format. Must start with 'sk_sandbox_' or 'sk_live_'"
            )
        return v

    @field_validator("fedapay_environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate FedaPay environment."""
        v = v.lower()
        if v not in FEDAPAY_BASE_URLS:
            raise ValueError(f"Invalid FedaPay environment. Must be one of: {list(FEDAPAY_BASE_URLS)}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("currency", "default_country")
    @classmethod
    def uppercase_codes(cls, v: str) -> str:
        return v.strip().upper()

    @model_validator(mode="after")
    def check_posture(self) -> "Settings":
        """
        Reject configurations that would be unsafe to run.

        A live key must go with the live environment, and a production
        deployment must be able to verify webhook signatures.
        """
        is_live_key = self.fedapay_secret_key.startswith("sk_live_")
        if is_live_key != (self.fedapay_environment == "live"):
            raise ValueError(
                "fedapay_secret_key does not match fedapay_environment "
                f"({self.fedapay_environment})"
            )
        if self.is_production and not self.fedapay_webhook_secret:
            raise ValueError("fedapay_webhook_secret is required in production")
        return self

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_sandbox(self) -> bool:
        """Check if using the FedaPay sandbox."""
        return self.fedapay_environment == "sandbox"

    @property
    def processor_base_url(self) -> str:
        """FedaPay REST base URL for the configured environment."""
        return FEDAPAY_BASE_URLS[self.fedapay_environment]

    @property
    def callback_url(self) -> str:
        """URL the hosted payment page redirects back to."""
        return f"{self.callback_base_url.rstrip('/')}/payments/callback"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
