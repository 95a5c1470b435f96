"""
Configuration Management for Household Ledger

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
The ledger engine itself needs very little: a database connection,
a few behavioural switches and the cron secret guarding the batch
endpoints. Everything is validated once at startup.
"""

from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Relational store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_DB_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    url: str = Field(
        default="sqlite:///./household_ledger.db",
        description="SQLAlchemy database URL"
    )
    echo: bool = Field(
        default=False,
        description="Log every SQL statement"
    )
    busy_timeout_seconds: float = Field(
        default=5.0,
        ge=0.0,
        le=60.0,
        description="How long SQLite waits on a locked database before failing"
    )

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")


class LedgerSettings(BaseSettings):
    """Behavioural switches of the ledger engine."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    default_currency: str = Field(
        default="USD",
        min_length=3,
        max_length=3,
        description="Currency assigned to accounts created without one"
    )
    strict_transfer_integrity: bool = Field(
        default=False,
        description=(
            "Refuse to delete a transfer whose sibling entry is missing "
            "instead of reversing the counterpart account on its own"
        )
    )
    recurring_expense_immediate: bool = Field(
        default=False,
        description=(
            "Materialize a new recurring expense right away even when this "
            "month's occurrence has not been reached yet"
        )
    )
    max_transaction_amount: Decimal = Field(
        default=Decimal("1000000000"),
        gt=0,
        description="Upper bound for a single ledger entry (sanity check)"
    )
    conflict_retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts for an atomic unit that hits a lock conflict"
    )
    log_level: str = Field(
        default="INFO",
        description="Log level for the household_ledger loggers"
    )
    log_json: bool = Field(
        default=True,
        description="Render logs as JSON (False renders for the console)"
    )

    @field_validator("default_currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        """Currency codes are stored upper-case."""
        if not v.isalpha():
            raise ValueError(f"Currency must be a 3-letter code, got {v!r}")
        return v.upper()

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level


class CronSettings(BaseSettings):
    """Settings for the externally scheduled batch endpoints."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_CRON_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    secret: Optional[str] = Field(
        default=None,
        description="Bearer secret required by the batch endpoints (unset = open)"
    )


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @property
    def database(self) -> DatabaseSettings:
        return DatabaseSettings()

    @property
    def ledger(self) -> LedgerSettings:
        return LedgerSettings()

    @property
    def cron(self) -> CronSettings:
        return CronSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}.
    Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    for name in ("database", "ledger", "cron"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
