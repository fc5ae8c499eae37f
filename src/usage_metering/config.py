"""
Metering service configuration using Pydantic Settings.
"""

from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or a local .env file."""

    # Storage; an empty URI selects the in-memory backend
    MONGO_URI: str = ""
    MONGO_DB: str = "usage_metering"

    # Audit ledger
    LEDGER_LOG_PATH: str = "logs/credit_ledger.log"

    # Metering
    TICK_INTERVAL_SECONDS: float = 3.0
    STORE_RETRY_ATTEMPTS: int = 1
    AUTOSTART_METERING: bool = True

    # Accounts
    SIGNUP_GRANT_CREDITS: Decimal = Decimal("10.00")

    # Notifications / cache
    LOW_CREDIT_THRESHOLD: Decimal = Decimal("1.00")
    BALANCE_CACHE_TTL_SECONDS: int = 300

    # Shared with the payment processor; empty rejects purchase callbacks
    PAYMENT_WEBHOOK_SECRET: str = ""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)


settings = Settings()
