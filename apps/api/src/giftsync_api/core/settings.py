from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./giftsync.db"
    tracing_enabled: bool = True

    # Internal API security (cron trigger + operator API)
    admin_api_key: str = ""
    # Shopify app secret used to verify webhook signatures
    shopify_api_secret: str = ""

    # Storefront surface
    cors_allow_origins: list[str] = Field(default_factory=lambda: ["*"])
    gift_page_path: str = "/pages/gift-selection"

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _parse_origin_list(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value if str(item).strip()]
        return []

    # Appstle subscription API
    appstle_default_api_url: str = "https://subscription-admin.appstle.com"
    appstle_timeout_seconds: float = 15.0
    appstle_request_delay_seconds: float = 0.5
    appstle_page_size: int = 100
    appstle_max_pages: int = 1000
    appstle_lookup_max_pages: int = 10

    # Gift defaults applied when a shop first opens its gift configuration
    gift_default_enabled: bool = True
    gift_default_trigger_order_numbers: str = "3,5,10,15,20"
    gift_default_max_products: int = 3
    gift_default_expiry_days: int = 14
    gift_default_email_delay_days: int = 7
    gift_default_email_subject: str = "You've earned a free gift!"

    # Milestone comparison used by the order-paid webhook path
    webhook_milestone_policy: Literal["exact", "cumulative"] = "exact"

    # Email delivery
    email_send_delay_seconds: float = 0.5
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool = True
    smtp_sender_email: str | None = None

    # Gift cycle scheduler
    gift_cycle_scheduler_enabled: bool = False
    gift_cycle_cron: str = "0 */6 * * *"
    gift_cycle_timezone: str = "UTC"
    gift_cycle_startup_delay_seconds: int = 30
    gift_cycle_trigger_label: str = "scheduler"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
