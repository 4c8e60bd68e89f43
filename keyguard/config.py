"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
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
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Keyguard API"
    api_version: str = "0.1.0"
    api_description: str = "Credential issuance and access decisions for protected scripts"

    # Admin gate for issuance/revocation endpoints (X-Admin-Key)
    admin_api_key: str = ""

    # Credential lifetimes per plan, in days
    trial_duration_days: int = 30
    standard_duration_days: int = 365
    premium_duration_days: int = 365
    owner_duration_days: int = 3650  # effectively non-expiring

    # Self-serve trial keys allowed per origin fingerprint
    trial_keys_per_origin: int = 1

    # Reverse proxies in front of the API that append to X-Forwarded-For.
    # 0 means the transport peer is the client and X-Forwarded-For is ignored.
    trusted_proxy_hops: int = 0

    # Abuse guard
    abuse_failure_threshold: int = 5
    abuse_tracking_window_seconds: int = 900  # 15 minutes
    abuse_block_duration_seconds: int = 1800  # 30 minutes

    # Audit queries
    audit_max_page_size: int = 200

    # Notification sink - webhook relay for Discord/email collaborators
    notification_webhook_url: str = ""
    notification_timeout_seconds: float = 5.0

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "keyguard-api"

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

        if self.abuse_failure_threshold < 1:
            errors.append("ABUSE_FAILURE_THRESHOLD must be at least 1")
        if self.abuse_block_duration_seconds <= 0:
            errors.append("ABUSE_BLOCK_DURATION_SECONDS must be positive")
        if self.abuse_tracking_window_seconds <= 0:
            errors.append("ABUSE_TRACKING_WINDOW_SECONDS must be positive")
        if self.trusted_proxy_hops < 0:
            errors.append("TRUSTED_PROXY_HOPS must not be negative")

        for plan in ("trial", "standard", "premium", "owner"):
            if getattr(self, f"{plan}_duration_days") <= 0:
                errors.append(f"{plan.upper()}_DURATION_DAYS must be positive")

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
    def abuse_tracking_window(self) -> timedelta:
        return timedelta(seconds=self.abuse_tracking_window_seconds)

    @property
    def abuse_block_duration(self) -> timedelta:
        return timedelta(seconds=self.abuse_block_duration_seconds)


# Global settings instance - validates at import time
settings = Settings()
