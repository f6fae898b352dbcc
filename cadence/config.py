"""Configuration loading for the Cadence billing engine.

This module provides centralized configuration management:
- Load settings from environment variables and .env files
- Validate configuration using pydantic
- Provide typed access to all settings
- Hand the core an immutable BillingConfig instead of global state
"""

from decimal import Decimal
from typing import Literal
from urllib.parse import urlsplit

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from cadence.core.models import BillingConfig
from cadence.core.money import Money


class Settings(BaseSettings):
    """Application configuration loaded from environment.

    Uses pydantic-settings for environment variable handling with
    .env file support via python-dotenv.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Currency configuration
    currency: str = Field(
        default="eur",
        description="ISO 4217 currency code used for new plans and owners",
    )
    currency_locale: str = Field(
        default="de_DE",
        description="Locale used to format money amounts",
    )

    # Billing store configuration
    store_backend: Literal["sqlite", "postgresql"] = Field(
        default="sqlite",
        description="Billing store backend type",
    )
    store_sqlite_path: str = Field(
        default="./data/billing.db",
        description="SQLite database file path",
    )
    database_url: str = Field(
        default="",
        description="PostgreSQL connection URL",
    )

    # Catalog configuration
    plans_file: str = Field(
        default="./plans.json",
        description="JSON file defining the plan catalog",
    )
    coupons_file: str = Field(
        default="./coupons.json",
        description="JSON file defining the coupon catalog",
    )

    # Mandate provider configuration
    mandate_backend: Literal["http", "none"] = Field(
        default="http",
        description="Payment mandate provider type",
    )
    mandate_api_url: str = Field(
        default="https://api.mollie.com/v2",
        description="Payment provider API base URL",
    )
    mandate_api_key: str = Field(
        default="",
        description="Payment provider API key",
    )

    # Event sink configuration
    event_sink_backend: Literal["stdout", "log"] = Field(
        default="log",
        description="Event sink backend type",
    )

    # Billing run configuration
    run_interval_seconds: int = Field(
        default=3600,
        description="Interval between billing runs in seconds",
    )
    run_mode: Literal["daemon", "once"] = Field(
        default="daemon",
        description="Run mode",
    )

    # Webhooks and first payments
    webhook_url: str = Field(
        default="webhook",
        description="Path receiving payment status webhooks",
    )
    first_payment_webhook_url: str = Field(
        default="mandate-webhook",
        description="Path receiving first payment webhooks",
    )
    first_payment_amount: Decimal = Field(
        default=Decimal("0.05"),
        description="Amount requested by a first payment when nothing is due yet",
    )
    first_payment_description: str = Field(
        default="First payment",
        description="Description of first payments",
    )

    # Logging configuration
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Log level",
    )
    log_format: Literal["json", "text"] = Field(
        default="text",
        description="Log format",
    )

    # Development
    debug: bool = Field(
        default=False,
        description="Enable debug mode with verbose logging",
    )

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Ensure currency is a three-letter code, stored lower-case."""
        v = v.strip()
        if len(v) != 3 or not v.isalpha():
            raise ValueError("currency must be a three-letter ISO 4217 code")
        return v.lower()

    @field_validator("webhook_url", "first_payment_webhook_url")
    @classmethod
    def validate_webhook_path(cls, v: str) -> str:
        """Keep only the path: https://example.com/webhook/mollie -> webhook/mollie."""
        path = urlsplit(v).path if "://" in v else v
        path = path.strip("/")
        if not path:
            raise ValueError("webhook url must contain a path")
        return path

    @field_validator("run_interval_seconds")
    @classmethod
    def validate_run_interval(cls, v: int) -> int:
        """Ensure run interval is positive."""
        if v <= 0:
            raise ValueError("run_interval_seconds must be positive")
        return v

    @field_validator("first_payment_amount")
    @classmethod
    def validate_first_payment_amount(cls, v: Decimal) -> Decimal:
        """Ensure first payment amount is positive with at most two decimals."""
        if v <= 0:
            raise ValueError("first_payment_amount must be positive")
        if v != v.quantize(Decimal("0.01")):
            raise ValueError("first_payment_amount must have at most two decimals")
        return v

    def billing_config(self) -> BillingConfig:
        """Build the immutable configuration handed to the core services."""
        first_payment = Money.from_payload(
            {"value": str(self.first_payment_amount), "currency": self.currency}
        )
        return BillingConfig(
            currency=self.currency,
            currency_locale=self.currency_locale,
            first_payment_amount=first_payment.amount,
            first_payment_description=self.first_payment_description,
            first_payment_webhook_url=self.first_payment_webhook_url,
            webhook_url=self.webhook_url,
        )


def load_settings(env_file: str | None = None) -> Settings:
    """Load application settings from environment.

    Args:
        env_file: Optional path to .env file. If not provided,
                 uses the default .env in the current directory.

    Returns:
        Validated Settings instance.

    Raises:
        ValidationError: If settings validation fails.
    """
    if env_file:
        return Settings(_env_file=env_file)  # type: ignore[call-arg]
    return Settings()


__all__ = ["Settings", "load_settings"]
