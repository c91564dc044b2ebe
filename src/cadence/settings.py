from __future__ import annotations

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CADENCE_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
    )

    database_url: str = "sqlite+aiosqlite:///./cadence.db"
    database_echo: bool = False

    # For local development
    auto_create_db: bool = False

    log_level: str = "INFO"
    log_json: bool = False
    log_http_requests: bool = True

    # Series expansion
    expansion_horizon_months: int = 6
    occurrence_ceiling: int = 52
    materialize_batch_size: int = 25
    extension_lookahead_months: int = 3
    backfill_target_months: int = 6
    # Shared secret for the maintenance backfill endpoint. Unset disables it.
    backfill_secret: SecretStr | None = None

    # Calendar feed
    feed_uid_domain: str = "cadence.app"
    feed_product_id: str = "-//Cadence//Service Scheduler 1.0//EN"
    feed_max_events: int = 1000
    feed_text_max_length: int = 200
    feed_description_max_length: int = 1000
    # Advertised refresh window for subscribed clients. 0 omits the hint.
    feed_refresh_minutes: int = 15

    # Cancellation notifications (optional SMTP)
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_username: str | None = None
    smtp_password: SecretStr | None = None
    smtp_from_email: str | None = None
    smtp_use_ssl: bool = False
    smtp_use_starttls: bool = True
    smtp_timeout_seconds: float = 10.0
    cancellation_batch_delay_minutes: int = 5
    notification_worker_poll_seconds: int = 60


def get_settings() -> Settings:
    return Settings()
