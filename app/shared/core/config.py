from functools import lru_cache
from typing import Optional
import structlog
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, model_validator

ENV_PRODUCTION = "production"
ENV_STAGING = "staging"
ENV_DEVELOPMENT = "development"
ENV_LOCAL = "local"


@lru_cache
def get_settings() -> "Settings":
    """Returns a singleton instance of the application settings."""
    return Settings()


def reload_settings_from_environment() -> "Settings":
    """Drop the cached settings and rebuild them from the environment."""
    logger = structlog.get_logger()
    get_settings.cache_clear()
    refreshed = get_settings()
    logger.info("settings_reloaded", environment=refreshed.ENVIRONMENT)
    return refreshed


class Settings(BaseSettings):
    """
    Main configuration for the Parley billing core.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """

    APP_NAME: str = "Parley Billing"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    # ENVIRONMENT options: local, development, staging, production
    ENVIRONMENT: str = ENV_DEVELOPMENT
    TESTING: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    DB_SSL_MODE: str = "require"  # disable, require, verify-ca, verify-full
    DB_SSL_CA_CERT_PATH: Optional[str] = None
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 3600
    DB_ECHO: bool = False
    DB_SLOW_QUERY_THRESHOLD_SECONDS: float = 0.2

    # Secrets
    AUTH_JWT_SECRET: Optional[str] = None
    AUTH_JWT_AUDIENCE: str = "authenticated"
    ENCRYPTION_KEY: Optional[str] = None

    # Cache / broker / rate limiting
    REDIS_URL: Optional[str] = None
    RATELIMIT_ENABLED: bool = True
    RATELIMIT_ADMIN: str = "60/minute"
    RATELIMIT_READ: str = "120/minute"

    # Payment gateway
    GATEWAY_API_BASE_URL: str = "https://api.stripe.com/v1"
    GATEWAY_SECRET_KEY: Optional[str] = None
    GATEWAY_WEBHOOK_SECRET: Optional[str] = None
    GATEWAY_TIMEOUT_SECONDS: float = 20.0
    GATEWAY_MAX_RETRIES: int = 3
    GATEWAY_PRICE_STARTER: Optional[str] = None
    GATEWAY_PRICE_PROFESSIONAL: Optional[str] = None
    GATEWAY_PRICE_ENTERPRISE: Optional[str] = None

    # Webhook processing
    WEBHOOK_SIGNATURE_TOLERANCE_SECONDS: int = 300
    WEBHOOK_MAX_ATTEMPTS: int = 5
    WEBHOOK_RETRY_BASE_SECONDS: int = 60
    WEBHOOK_RETRY_MAX_SECONDS: int = 3600
    # Extra attempts an operator may spend after automatic retries are exhausted.
    WEBHOOK_MANUAL_RETRY_ALLOWANCE: int = 3
    WEBHOOK_PROCESSING_LEASE_SECONDS: int = 600
    WEBHOOK_RETRY_BATCH_SIZE: int = 100
    WEBHOOK_EVENT_RETENTION_DAYS: int = 90

    # Subscription lifecycle
    BILLING_CYCLE_DAYS: int = 30
    BILLING_TRIAL_DAYS: int = 14
    BILLING_DUNNING_MAX_FAILURES: int = Field(
        default=3,
        description="Consecutive failed payments before a past_due subscription is canceled",
    )
    BILLING_SWEEP_BATCH_SIZE: int = 200

    # Refunds
    REFUND_MAX_PER_WINDOW: int = 3
    REFUND_WINDOW_DAYS: int = 30

    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True)

    @model_validator(mode="after")
    def validate_all_config(self) -> "Settings":
        """Centralized validation, grouped by concern."""
        if self.TESTING and self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}:
            raise ValueError(
                "TESTING must be false in staging/production runtime environments."
            )
        self._validate_billing_policy()
        if self.TESTING:
            return self

        self._validate_core_secrets()
        self._validate_database_config()
        self._validate_gateway_config()
        return self

    def _validate_core_secrets(self) -> None:
        critical_keys = {
            "ENCRYPTION_KEY": self.ENCRYPTION_KEY,
            "AUTH_JWT_SECRET": self.AUTH_JWT_SECRET,
        }
        for name, value in critical_keys.items():
            if not value or len(value) < 32:
                raise ValueError(f"{name} must be set to a secure value (>= 32 chars).")

    def _validate_database_config(self) -> None:
        if not self.DATABASE_URL:
            raise ValueError("DATABASE_URL is required outside of tests.")
        if self.is_production and self.DB_SSL_MODE == "disable":
            raise ValueError("DB_SSL_MODE=disable is not allowed in production.")

    def _validate_gateway_config(self) -> None:
        if not self.GATEWAY_SECRET_KEY:
            raise ValueError("GATEWAY_SECRET_KEY is required.")
        if not self.GATEWAY_WEBHOOK_SECRET:
            raise ValueError("GATEWAY_WEBHOOK_SECRET is required.")
        if self.is_production and not self.GATEWAY_API_BASE_URL.startswith("https://"):
            raise ValueError("GATEWAY_API_BASE_URL must use HTTPS in production.")

    def _validate_billing_policy(self) -> None:
        if self.BILLING_DUNNING_MAX_FAILURES < 1:
            raise ValueError("BILLING_DUNNING_MAX_FAILURES must be at least 1.")
        if self.WEBHOOK_MAX_ATTEMPTS < 1:
            raise ValueError("WEBHOOK_MAX_ATTEMPTS must be at least 1.")
        if self.WEBHOOK_RETRY_BASE_SECONDS <= 0:
            raise ValueError("WEBHOOK_RETRY_BASE_SECONDS must be positive.")
        if self.WEBHOOK_RETRY_MAX_SECONDS < self.WEBHOOK_RETRY_BASE_SECONDS:
            raise ValueError(
                "WEBHOOK_RETRY_MAX_SECONDS must be >= WEBHOOK_RETRY_BASE_SECONDS."
            )
        if self.BILLING_CYCLE_DAYS < 1:
            raise ValueError("BILLING_CYCLE_DAYS must be at least 1.")

    @property
    def is_production(self) -> bool:
        """True only when ENVIRONMENT is explicitly set to 'production'."""
        return self.ENVIRONMENT == ENV_PRODUCTION
