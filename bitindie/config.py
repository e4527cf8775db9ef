"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

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
    api_title: str = "BitIndie Purchase API"
    api_version: str = "0.1.0"
    api_description: str = "Purchases, entitlements and developer payouts for BitIndie"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "bitindie-api"

    # Pricing - platform fee in basis points (1000 = 10%)
    platform_fee_bps: int = 1000

    # Invoices (provider is stubbed until real invoicing lands)
    invoice_provider: str = "mock"
    invoice_webhook_secret: str = ""  # Optional shared secret for invoice-paid notifications

    # Payouts - OpenNode withdrawals
    opennode_api_key: str = ""  # Also the HMAC key for withdrawal webhooks
    payout_provider: str = "opennode"
    opennode_withdrawal_callback_url: str = ""
    opennode_base_url: str = ""

    # Guest checkout
    guest_receipt_code_max_attempts: int = 5

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

        if not 0 <= self.platform_fee_bps <= 10_000:
            errors.append(
                f"PLATFORM_FEE_BPS must be between 0 and 10000, got: {self.platform_fee_bps}"
            )

        if self.guest_receipt_code_max_attempts < 1:
            errors.append("GUEST_RECEIPT_CODE_MAX_ATTEMPTS must be at least 1")

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
    def payout_webhook_secret(self) -> str:
        """HMAC key for payout confirmation webhooks (blank means misconfigured)."""
        return self.opennode_api_key.strip()


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
