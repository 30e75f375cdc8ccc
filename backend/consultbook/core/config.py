# backend/consultbook/core/config.py
import logging
import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import List, Literal, Optional

from dotenv import load_dotenv
from pydantic import AliasChoices, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def is_running_tests() -> bool:
    """
    Detect if code is running under pytest.

    PYTEST_CURRENT_TEST is set automatically by pytest during test runs.
    """
    return os.getenv("PYTEST_CURRENT_TEST") is not None


logger = logging.getLogger(__name__)

# Load .env file only if not in CI
if not os.getenv("CI"):
    env_path = Path(__file__).parent.parent.parent / ".env"  # backend/.env
    load_dotenv(env_path)


class Settings(BaseSettings):
    """Runtime configuration, read from the environment and backend/.env."""

    environment: str = Field(default="local", alias="SITE_MODE")
    log_level: str = "INFO"
    cors_allowed_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    # Storage / broker
    database_url: str = Field(
        default="sqlite+pysqlite:///./consultbook.db",
        validation_alias=AliasChoices("database_url", "DATABASE_URL"),
    )
    database_echo: bool = False
    database_pool_size: int = 5
    database_max_overflow: int = 10
    redis_url: str = "redis://localhost:6379"

    # Consumed identity (tokens are issued elsewhere)
    secret_key: SecretStr = SecretStr("change-me-in-production")
    algorithm: str = "HS256"

    # Payment gateway (Razorpay REST API)
    razorpay_key_id: str = ""
    razorpay_key_secret: SecretStr = SecretStr("")
    razorpay_webhook_secret: SecretStr = SecretStr("")
    razorpay_base_url: str = "https://api.razorpay.com/v1"
    gateway_config_timeout_seconds: float = 5.0
    gateway_order_timeout_seconds: float = 10.0
    gateway_verify_timeout_seconds: float = 8.0
    gateway_refund_timeout_seconds: float = 15.0
    gateway_reconcile_timeout_seconds: float = 10.0
    verify_fetches_payment: bool = Field(
        default=True,
        description="Read the authoritative payment status from the gateway after a valid signature",
    )

    # Meeting links
    meeting_provider_base_url: str = "https://api.zoom.us/v2"
    meeting_provider_token: SecretStr = SecretStr("")
    meeting_timeout_seconds: float = 10.0

    # Notifications
    email_provider: Literal["console", "resend"] = "console"
    resend_api_key: Optional[SecretStr] = None
    from_email: str = "Consultbook <hello@consultbook.app>"

    # Booking rules
    default_currency: str = "INR"
    default_timezone: str = "Asia/Kolkata"
    reservation_ttl_minutes: int = 10
    min_booking_lead_minutes: int = 15
    slot_duration_minutes: int = 60
    availability_max_range_days: int = 60
    public_availability_days: int = 14
    slot_generation_max_days: int = 90
    session_completion_grace_minutes: int = 15

    # Payment rules
    payment_min_amount: Decimal = Decimal("1.00")
    payment_max_amount: Decimal = Decimal("500000.00")
    refund_window_days: int = 180
    reconciliation_grace_minutes: int = 5
    reconciliation_escalation_minutes: int = 120
    reconciliation_batch_size: int = 100

    # Outbox
    outbox_max_attempts: int = 5
    outbox_batch_size: int = 200

    model_config = SettingsConfigDict(
        env_file=".env" if not os.getenv("CI") else None,
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("reservation_ttl_minutes")
    @classmethod
    def _validate_reservation_ttl(cls, value: int) -> int:
        if not 10 <= value <= 15:
            raise ValueError("RESERVATION_TTL_MINUTES must be between 10 and 15")
        return value

    @field_validator("slot_duration_minutes")
    @classmethod
    def _validate_slot_duration(cls, value: int) -> int:
        if value <= 0 or 24 * 60 % value != 0:
            raise ValueError("SLOT_DURATION_MINUTES must divide a day evenly")
        return value

    @model_validator(mode="after")
    def _warn_missing_gateway_secrets(self) -> "Settings":
        if is_running_tests():
            return self
        if not self.razorpay_key_secret.get_secret_value():
            logger.warning("RAZORPAY_KEY_SECRET is not set; payment verification will reject all signatures")
        if not self.razorpay_webhook_secret.get_secret_value():
            logger.warning("RAZORPAY_WEBHOOK_SECRET is not set; webhooks will be rejected")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() in {"prod", "production", "live"}


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
