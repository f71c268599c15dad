import os
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


SIGNUP_BONUS = 2500
REFERRAL_BONUS = 2500
PURCHASE_RATE = Decimal("10")  # credits per dollar
CREDIT_VALUE = Decimal("0.01")  # dollars per credit

DEFAULT_REFERRAL_BASE_URL = "http://localhost:5173"


class CreditRates(BaseModel):
    signup_bonus: int = Field(default=SIGNUP_BONUS, gt=0)
    referral_bonus: int = Field(default=REFERRAL_BONUS, gt=0)
    purchase_rate: Decimal = Field(default=PURCHASE_RATE, ge=0)
    credit_value: Decimal = Field(default=CREDIT_VALUE, gt=0)


class Settings(BaseModel):
    rates: CreditRates = Field(default_factory=CreditRates)
    referral_base_url: str = DEFAULT_REFERRAL_BASE_URL
    service_name: str = "credit-ledger"
    log_level: str = "INFO"
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])


def _env(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def load_settings() -> Settings:
    """Build settings from environment variables, falling back to defaults."""
    rates = {}
    for field_name, env_name in (
        ("signup_bonus", "CREDIT_SIGNUP_BONUS"),
        ("referral_bonus", "CREDIT_REFERRAL_BONUS"),
        ("purchase_rate", "CREDIT_PURCHASE_RATE"),
        ("credit_value", "CREDIT_VALUE"),
    ):
        value = _env(env_name)
        if value is not None:
            rates[field_name] = value

    data: dict = {"rates": CreditRates(**rates)}
    if base_url := _env("REFERRAL_BASE_URL"):
        data["referral_base_url"] = base_url
    if service_name := _env("SERVICE_NAME"):
        data["service_name"] = service_name
    if log_level := _env("LOG_LEVEL"):
        data["log_level"] = log_level
    if origins := _env("CORS_ORIGINS"):
        data["cors_origins"] = [o.strip() for o in origins.split(",") if o.strip()]

    return Settings(**data)
