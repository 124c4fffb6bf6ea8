"""Billing engine configuration using Pydantic Settings."""

from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from botflow_billing.exceptions import MissingSecretKeyError

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class BillingSettings(BaseSettings):
    """Billing settings loaded from BILLING_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="BILLING_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: Literal["development", "test", "staging", "production"] = "development"

    # Database
    database_url: str = "sqlite+aiosqlite:///./billing.db"
    database_echo: bool = False

    # Paystack
    paystack_secret_key: str = ""
    paystack_api_url: str = "https://api.paystack.co"
    paystack_timeout: float = 30.0

    # Invoicing
    currency: str = "ZAR"
    tax_rate: Decimal = Decimal("0.15")
    tax_label: str = "VAT"
    grace_period_days: int = 7
    invoice_description: str = "BotFlow Invoice"

    # Usage buffer
    buffer_max_size: int = Field(default=100, gt=0)
    buffer_flush_interval: float = Field(default=5.0, gt=0)

    # Trial expiry notices, in days before the trial ends
    trial_reminder_days: list[int] = Field(default_factory=lambda: [7, 3, 1])

    # Logging / error tracking
    log_level: str = "INFO"
    log_json: bool = False
    sentry_dsn: str | None = None

    @field_validator("tax_rate")
    @classmethod
    def validate_tax_rate(cls, v: Decimal) -> Decimal:
        """Tax rate is a fraction, e.g. 0.15 for 15%."""
        if v < 0 or v >= 1:
            raise ValueError("tax_rate must be in [0, 1)")
        return v

    @field_validator("grace_period_days")
    @classmethod
    def validate_grace_period(cls, v: int) -> int:
        if v < 0:
            raise ValueError("grace_period_days must not be negative")
        return v

    @field_validator("trial_reminder_days")
    @classmethod
    def validate_trial_reminder_days(cls, v: list[int]) -> list[int]:
        if any(days <= 0 for days in v):
            raise ValueError("trial_reminder_days must be positive")
        return sorted(set(v), reverse=True)

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        return v.upper()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return level

    @model_validator(mode="after")
    def require_secret_in_production(self) -> "BillingSettings":
        if self.environment == "production" and not self.paystack_secret_key:
            raise MissingSecretKeyError
        return self

    @property
    def tax_percent_label(self) -> str:
        """Human label for the tax line, e.g. 'VAT (15%)'."""
        percent = (self.tax_rate * 100).normalize()
        return f"{self.tax_label} ({percent:f}%)"


@lru_cache
def get_settings() -> BillingSettings:
    """Get cached settings instance."""
    return BillingSettings()
