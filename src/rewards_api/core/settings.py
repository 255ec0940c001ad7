from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    log_level: str = "INFO"
    database_url: str = "sqlite+aiosqlite:///./rewards.db"
    secret_key: str = "change-me"

    # Unit-of-work guards
    transaction_timeout_seconds: float = 10.0
    transaction_max_attempts: int = 3
    transaction_retry_delay_seconds: float = 0.05

    # Internal API security
    admin_api_key: str = ""

    # CRM connector
    crm_base_url: str | None = None
    crm_api_token: str | None = None
    crm_timeout_seconds: float = 8.0

    # Sync outbox worker
    sync_worker_enabled: bool = False
    sync_worker_id: str | None = None
    sync_worker_interval_seconds: int = 30
    sync_worker_batch_size: int = 10
    sync_worker_lease_seconds: int = 120
    sync_max_attempts: int = 5
    sync_backoff_base_seconds: int = 60
    sync_backoff_cap_seconds: int = 4 * 60 * 60

    # Expiry sweep (referrals, benefits)
    expiry_sweep_enabled: bool = False
    expiry_sweep_interval_seconds: int = 60 * 60

    # Program configuration cache
    program_config_ttl_seconds: int = 300

    # Push notifications
    push_webhook_url: str | None = None
    push_webhook_token: str | None = None
    push_timeout_seconds: float = 5.0
    push_disabled_events: list[str] = Field(default_factory=list)

    @field_validator("push_disabled_events", mode="before")
    @classmethod
    def _parse_event_list(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value if str(item).strip()]
        return []


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
