# app/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal

DEFAULT_RESPONSE_MINUTES = 10


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    log_level: str = "INFO"

    # Database
    expected_schema_version: str = "001_init.sql"  # Update on deploy when new migrations are added
    store_backend: Literal["postgres", "memory"] = "postgres"
    database_url: str | None = None
    pghost: str = "localhost"
    pgport: int = 5432
    pguser: str = "postgres"
    pgpassword: str = ""
    pgdatabase: str = "postgres"
    pg_pool_min: int = 2
    pg_pool_max: int = 20
    pg_connect_timeout: int = 5
    pg_statement_timeout_ms: int = 30000
    pg_idle_in_tx_timeout_ms: int = 30000

    # Dispatch
    response_minutes: int = DEFAULT_RESPONSE_MINUTES  # Minutes a cleaner has before the offer may time out
    reminder_hours_ahead: int = 24  # Reminder sweep looks this far ahead of window_start

    # Security
    admin_token: str | None = None  # Bearer token for the landlord/admin API
    cron_secret: str | None = None  # Shared secret for /cron/* endpoints
    allowed_origins: list[str] = ["*"]

    # Telegram (notification channel)
    telegram_bot_token: str | None = None  # Bot token from @BotFather
    telegram_webhook_secret: str | None = None  # Secret token for webhook validation (X-Telegram-Bot-Api-Secret-Token)

    # Cleaner job links (mark-done / start)
    public_base_url: str | None = None  # e.g. https://dispatch.example.com
    upload_token_secret: str | None = None  # HMAC key for job links; falls back to admin_token
    upload_token_ttl_seconds: int = 7 * 24 * 3600  # 7 days

    # Feature Flags
    enable_request_logging: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url

        return (
            f"postgresql://{self.pguser}:{self.pgpassword}@{self.pghost}:{self.pgport}/{self.pgdatabase}"
        )

    @property
    def response_window_minutes(self) -> int:
        """Effective response window (non-positive values fall back to the default)"""
        if self.response_minutes > 0:
            return self.response_minutes
        return DEFAULT_RESPONSE_MINUTES

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token)

    @property
    def job_link_secret(self) -> str | None:
        """Effective HMAC key for cleaner job links"""
        return self.upload_token_secret or self.admin_token

    @property
    def base_url(self) -> str:
        """Public base URL without trailing slash ("" if not configured)"""
        return (self.public_base_url or "").rstrip("/")

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        required_fields = [
            ("admin_token", self.admin_token),
            ("cron_secret", self.cron_secret),
            ("telegram_bot_token", self.telegram_bot_token),
        ]
        if self.store_backend == "postgres":
            required_fields.append(("database_url", self.database_url))

        return [name for name, value in required_fields if not value]


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if s.is_production and s.allowed_origins == ["*"]:
        warnings.append("prod: allowed_origins=['*'] (CORS is wide open).")

    if s.is_production and s.store_backend == "memory":
        warnings.append("prod: store_backend=memory (state is lost on restart and not shared between workers).")

    if not s.cron_secret:
        warnings.append("cron_secret is not set (/cron/* endpoints will answer 503, offers never time out).")

    if s.telegram_bot_token and not s.telegram_webhook_secret:
        warnings.append("telegram_webhook_secret is not set (anyone can post updates to /webhooks/telegram).")

    if not s.job_link_secret:
        warnings.append("upload_token_secret and admin_token are both empty: cleaner job links are disabled.")

    if not s.public_base_url:
        warnings.append("public_base_url is not set (messages will not carry job links).")

    if s.response_minutes <= 0:
        warnings.append(f"response_minutes={s.response_minutes} is not positive; using {DEFAULT_RESPONSE_MINUTES}.")

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()

    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    for msg in warn_on_risky_config(s):
        print(f"[WARN][config] {msg}")

settings = Settings()
validate_or_warn(settings)
