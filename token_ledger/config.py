"""
Application Configuration - Pydantic Settings for type-safe config.

Ledger constants (daily allowance, cache TTL, retry schedule) are read once
at startup, never per request.
FAIL FAST - Critical config is validated at startup.
"""

import sys
from datetime import timedelta

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Token Ledger API"
    api_version: str = "0.1.0"
    api_description: str = "Token balances, deductions and premium-tier resolution"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "token-ledger-api"

    # Token grants
    initial_free_tokens: int = 5000  # Seeded at first sign-in
    daily_allowance_tokens: int = 1000
    daily_refresh_interval_hours: float = 24.0

    # Pricing
    default_model_tokens: int = 1000  # Unknown model ids

    # Premium status resolution
    premium_cache_ttl_seconds: float = 2.0
    provisioning_retry_delays: list[float] = [0.25, 0.5, 0.75]
    self_heal_premium_flags: bool = True

    # Transaction history
    transaction_list_max_limit: int = 100

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if self.daily_allowance_tokens <= 0:
            errors.append("DAILY_ALLOWANCE_TOKENS must be positive")
        if self.initial_free_tokens < 0:
            errors.append("INITIAL_FREE_TOKENS cannot be negative")
        if self.premium_cache_ttl_seconds < 0:
            errors.append("PREMIUM_CACHE_TTL_SECONDS cannot be negative")
        if any(delay < 0 for delay in self.provisioning_retry_delays):
            errors.append("PROVISIONING_RETRY_DELAYS cannot contain negative delays")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url

    @property
    def daily_refresh_interval(self) -> timedelta:
        """Rolling window between two daily allowance grants."""
        return timedelta(hours=self.daily_refresh_interval_hours)


# Global settings instance - validates at import time
settings = Settings()
