from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./rewards.db"
    database_echo: bool = False
    secret_key: str = "change-me"

    # Internal API security (operator endpoints)
    operator_api_key: str = ""

    # Redemption policy
    min_redemption_points: int = 100
    payout_paise_per_point: int = 100
    payout_currency: str = "INR"
    redemption_methods_enabled: list[str] = Field(default_factory=lambda: ["upi", "wallet"])

    @field_validator("redemption_methods_enabled", mode="before")
    @classmethod
    def _parse_method_list(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip().lower() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip().lower() for item in value if str(item).strip()]
        return []

    # Payout gateway
    payout_gateway_provider: Literal["razorpay", "sandbox"] = "sandbox"
    payout_gateway_timeout_seconds: float = 15.0
    payout_narration: str = "Survey Rewards Payout"
    razorpay_api_url: str = "https://api.razorpay.com/v1"
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_account_number: str = ""

    # Settlement scheduler (cron, via APScheduler)
    settlement_scheduler_enabled: bool = False
    settlement_schedule_path: str = "config/schedules.toml"

    # Settlement worker (interval loop, used when the cron scheduler is off)
    settlement_worker_enabled: bool = False
    settlement_interval_seconds: int = 60 * 60
    settlement_batch_limit: int = 200
    settlement_max_concurrency: int = 4
    settlement_claim_ttl_seconds: int = 15 * 60
    settlement_trigger_label: str = "scheduler"


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
