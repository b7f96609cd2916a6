"""Centralized configuration management using pydantic-settings.

Configuration is loaded from environment variables with sensible defaults.
All settings can be overridden via environment variables or a .env file.
"""

from decimal import Decimal
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    TESTING = "testing"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Log level options."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings have sensible defaults for development. Override via
    environment variables (prefixed with BKL_) or .env file.

    Examples:
        BKL_SQLITE_PATH=/var/lib/ledger/ledger.db
        BKL_LOG_LEVEL=DEBUG
        BKL_INGESTION_WINDOW_SIZE=20
        BKL_COLLABORATOR_URL=http://localhost:9000
    """

    model_config = SettingsConfigDict(
        env_prefix="BKL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Brokerage Ledger"
    app_version: str = "0.1.0"
    environment: Environment = Environment.DEVELOPMENT

    # Storage
    sqlite_path: Path = Field(
        default=Path("brokerage_ledger.db"),
        description="SQLite database file path, or ':memory:'",
    )

    # Logging
    log_level: LogLevel = LogLevel.INFO
    log_format: Literal["json", "console"] = Field(
        default="console",
        description="Log output format: 'json' for production, 'console' for development",
    )
    log_file: Path | None = Field(default=None, description="Optional log file path")

    # Ledger invariants
    balance_tolerance: Decimal = Field(
        default=Decimal("0.01"),
        description="Maximum debit/credit and checkpoint difference treated as equal",
    )
    default_institution: str = Field(
        default="fidelity",
        description="Institution used for settlement grouping when none is given",
    )

    # Windowed categorization
    ingestion_window_size: int = Field(default=30, ge=1, le=500)
    max_rate_limit_retries: int = Field(default=5, ge=0)
    rate_limit_wait_seconds: float = Field(default=120.0, ge=0)

    # Reconciliation
    reconciliation_max_iterations: int = Field(default=3, ge=1)
    fix_acceptance_threshold: float = Field(default=0.95)
    investigation_context_days: int = Field(default=7, ge=0)
    context_max_rows: int = Field(default=20, ge=1)
    context_max_transactions: int = Field(default=10, ge=1)

    # External collaborators
    collaborator_url: str = Field(
        default="http://localhost:9000",
        description="Base URL of the categorization and investigation service",
    )
    collaborator_api_key: str | None = Field(
        default=None, description="API key sent to the collaborator service"
    )
    collaborator_timeout: float = Field(default=120.0, gt=0)

    @field_validator("balance_tolerance")
    @classmethod
    def validate_tolerance(cls, v: Decimal) -> Decimal:
        """Tolerance must be strictly positive."""
        if v <= 0:
            raise ValueError("balance_tolerance must be positive")
        return v

    @field_validator("fix_acceptance_threshold")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        """Confidence threshold lives in the same [0, 1] range as fix confidences."""
        if not 0.0 <= v <= 1.0:
            raise ValueError("fix_acceptance_threshold must be between 0 and 1")
        return v


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload settings.

    Returns:
        Configured Settings instance.
    """
    return Settings()
