"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Storage - "memory" keeps everything in-process (local runs only)
    storage_backend: Literal["postgres", "memory"] = "postgres"

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = True

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Credit Engine API"
    api_version: str = "0.1.0"
    api_description: str = "Billing routing and credit metering for AI generation requests"

    # Security - shared secret for the orchestrator, disabled when empty
    api_key: str | None = None

    # Tier catalog - JSON file replacing the built-in catalog
    tier_catalog_path: str | None = None

    # Billing policy
    allow_rollover: bool = False  # Monthly reset adds the allotment instead of setting it
    bill_partial_output: bool = True  # Partial completions with output are billed
    allow_shortfall_overdraft: bool = False  # Reconciliation may push balances negative
    reservation_stale_after_seconds: int = 900

    # Identity / organization service
    identity_service_url: str | None = None
    identity_service_token: str | None = None
    identity_timeout_seconds: float = 2.0

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "credit-engine"

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

        if self.storage_backend == "postgres":
            if not self.database_url:
                errors.append("DATABASE_URL is required but empty or missing")
            elif not self.database_url.startswith(("postgresql", "postgres")):
                errors.append(
                    f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
                )

        if self.reservation_stale_after_seconds <= 0:
            errors.append("RESERVATION_STALE_AFTER_SECONDS must be positive")

        if self.identity_timeout_seconds <= 0:
            errors.append("IDENTITY_TIMEOUT_SECONDS must be positive")

        if self.log_format not in ("json", "console"):
            errors.append(f"LOG_FORMAT must be 'json' or 'console', got: {self.log_format}")

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


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
