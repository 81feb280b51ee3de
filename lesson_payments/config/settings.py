"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PAYPAL_BASE_URLS = {
    "sandbox": "https://api-m.sandbox.paypal.com",
    "live": "https://api-m.paypal.com",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # PayPal Configuration
    paypal_client_id: str = Field(..., description="PayPal REST app client id")
    paypal_client_secret: str = Field(..., description="PayPal REST app client secret")
    paypal_environment: str = Field(default="sandbox", description="sandbox or live")
    paypal_base_url: Optional[str] = Field(
        default=None, description="Override for the PayPal API base URL"
    )
    paypal_timeout_seconds: float = Field(
        default=10.0, description="Timeout for a single PayPal HTTP request (seconds)"
    )

    # Checkout Configuration
    checkout_currency: str = Field(default="USD", description="Currency for purchase units")
    checkout_return_url: Optional[str] = Field(
        default=None, description="Buyer return URL after approval (derived if unset)"
    )
    checkout_cancel_url: Optional[str] = Field(
        default=None, description="Buyer return URL after cancelling (derived if unset)"
    )

    # Database Configuration
    database_url: str = Field(..., description="Async SQLAlchemy connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: str = Field(..., description="Redis connection URL")
    escalation_queue_key: str = Field(
        default="purchases:escalations", description="Redis list holding ledger escalations"
    )

    # Authentication
    jwt_secret: str = Field(..., description="Secret used to verify access tokens")
    jwt_algorithm: str = Field(default="HS256", description="Access token signing algorithm")

    # Application Configuration
    app_name: str = Field(default="lesson-payments", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:5000",
        description="CORS allowed origins (comma-separated)"
    )

    # Gateway retries
    payment_retry_max_attempts: int = Field(default=5, description="Max gateway retry attempts")
    payment_retry_base_delay: float = Field(
        default=1.0, description="Base delay for gateway retry backoff (seconds)"
    )

    # Ledger retries after a remote money movement
    ledger_retry_max_attempts: int = Field(
        default=5, description="Max ledger write attempts after a capture or refund"
    )
    ledger_retry_base_delay: float = Field(
        default=0.5, description="Base delay for ledger retry backoff (seconds)"
    )
    ledger_retry_max_delay: float = Field(
        default=8.0, description="Upper bound for a single ledger retry wait (seconds)"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("paypal_environment")
    @classmethod
    def validate_paypal_environment(cls, v: str) -> str:
        """Validate PayPal environment name."""
        value = v.lower()
        if value not in PAYPAL_BASE_URLS:
            raise ValueError(
                f"Invalid PayPal environment. Must be one of: {sorted(PAYPAL_BASE_URLS)}"
            )
        return value

    @field_validator("checkout_currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Validate currency format."""
        if len(v) != 3 or not v.isalpha():
            raise ValueError("Currency must be 3-letter code")
        return v.upper()

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
    def gateway_base_url(self) -> str:
        """PayPal API base URL, honouring an explicit override."""
        if self.paypal_base_url:
            return self.paypal_base_url.rstrip("/")
        return PAYPAL_BASE_URLS[self.paypal_environment]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using the PayPal sandbox."""
        return self.paypal_environment == "sandbox"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
