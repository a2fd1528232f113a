from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_path: str = "pixsync.sqlite3"
    database_timeout_seconds: float = 5.0

    http_host: str = "0.0.0.0"
    http_port: int = 8080

    gateway_base_url: str = "https://api.mercadopago.com"
    gateway_access_token: str = ""
    gateway_timeout_seconds: float = 5.0
    gateway_retries: int = 2

    webhook_secret: str = ""
    webhook_max_age_seconds: int = 900

    payment_currency: str = "BRL"
    payment_expiration_minutes: int = 30
    plan_amounts: dict[str, float] = Field(
        default_factory=lambda: {"monthly": 29.90, "annual": 299.00, "bundle": 79.90}
    )
    plan_descriptions: dict[str, str] = Field(
        default_factory=lambda: {
            "monthly": "Premium plan - monthly",
            "annual": "Premium plan - annual",
            "bundle": "Premium plan - bundle",
        }
    )

    identity_header: str = "X-Authenticated-User"
    identity_email_header: str = "X-Authenticated-Email"

    telegram_token: str = ""
    telegram_admin_ids: list[int] = Field(default_factory=list)

    reconcile_interval_seconds: int = 45
    reconcile_max_attempts: int = 5
    reconcile_base_delay: int = 30
    reconcile_max_delay: int = 900

    poll_interval_seconds: float = 3.0
    poll_timeout_seconds: float = 180.0

    debug: bool = False
