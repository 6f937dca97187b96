from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="LOYALTY_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    service_name: str = "crown-loyalty"
    log_level: str = "INFO"

    # Receipt acceptance policy
    max_receipt_age_days: int = 2
    future_tolerance_days: int = 1
    daily_receipt_limit: int = 3
    fallback_amount: float = 75
    points_per_currency_unit: int = 10
    points_amount_cap: float = 1000
    merchant_keywords: list[str] = ["burger king", "burgerking"]
    merchant_short_codes: list[str] = ["bk"]

    # Rewards
    qr_prefix: str = "reward:"
    custom_reward_name: str = "Free Sundae"
    custom_reward_cost: int = 100

    # Ledger
    ledger_max_retries: int = 8

    # Document extractor
    docint_endpoint: Optional[str] = None
    docint_key: Optional[str] = None
    docint_model: str = "prebuilt-receipt"
    extractor_timeout_seconds: float = 15.0
    extractor_poll_interval_seconds: float = 1.0

    # Identity
    dev_user_id: Optional[str] = None

    @property
    def extractor_configured(self) -> bool:
        return bool(self.docint_endpoint and self.docint_key)


@lru_cache
def get_settings() -> Settings:
    return Settings()
