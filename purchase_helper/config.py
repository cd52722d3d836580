"""
Purchase Helper Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Invalid config is rejected when settings are constructed.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from purchase_helper.exceptions import ConfigurationError

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_LOG_FORMATS = ("json", "console")


class Settings(BaseSettings):
    """Purchase helper settings loaded from environment variables."""

    # Service identity
    service_name: str = "purchase-helper"
    service_version: str = "0.1.0"

    # Store behaviour
    auto_finish_transactions: bool = True  # Finish verified transactions with the store
    grant_external_entitlements: bool = True  # Grant products from out-of-app updates

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True

    # Observability - Sampling
    trace_sample_rate: float = 1.0  # 1.0 = 100% sampling

    model_config = SettingsConfigDict(
        env_prefix="PURCHASE_HELPER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate configuration when settings are built.

        A coordinator MUST NOT run with a logging or tracing setup that
        cannot be honoured.
        """
        errors: list[str] = []

        if self.log_level.upper() not in _LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {', '.join(_LOG_LEVELS)}, got: {self.log_level}")

        if self.log_format not in _LOG_FORMATS:
            errors.append(f"LOG_FORMAT must be 'json' or 'console', got: {self.log_format}")

        if not 0.0 <= self.trace_sample_rate <= 1.0:
            errors.append(
                f"TRACE_SAMPLE_RATE must be between 0.0 and 1.0, got: {self.trace_sample_rate}"
            )

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "PURCHASE HELPER CONFIGURATION ERROR",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get purchase helper settings instance."""
    return settings
