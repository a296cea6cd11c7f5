from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    ENVIRONMENT: str = Field(default="local")
    BOT_TOKEN: str = ""

    # Logs
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"

    # Record store
    STORE_BACKEND: str = Field(
        default="redis",
        validation_alias=AliasChoices("STORE_BACKEND", "RECORD_STORE_BACKEND"),
    )
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_KEY_PREFIX: str = "rs"
    CONNECTIVITY_CHECK_INTERVAL: float = Field(default=5.0, gt=0)

    # Local mirror
    MIRROR_DB_URL: str | None = "sqlite+aiosqlite:///./var/mirror.db"
    MIRROR_STALE_AFTER_SECONDS: float = Field(default=600.0, ge=0)
    MIRROR_REFRESH_WORKERS: int = Field(default=2, ge=1)
    MIRROR_SYNC_INTERVAL_SECONDS: float = Field(default=5.0, ge=0)

    # Writes and subscriptions
    WRITE_TIMEOUT_SECONDS: float = Field(default=12.0, gt=0)
    WRITE_CONFLICT_ATTEMPTS: int = Field(default=5, ge=1)
    RECONNECT_BASE_DELAY: float = Field(default=1.0, gt=0)
    RECONNECT_MAX_DELAY: float = Field(default=30.0, gt=0)
    RECONNECT_JITTER: float = Field(default=0.2, ge=0.0, le=1.0)
    BACKGROUND_DEBOUNCE_SECONDS: float = Field(default=4.0, ge=0)

    # Key resolver
    USER_KEY_ROOT: str = "telegram_users"
    MIN_EXTERNAL_ID_LENGTH: int = Field(default=5, ge=1)
    SYNTHETIC_ID_PREFIXES: list[str] | str = Field(
        default_factory=lambda: ["browser_", "anon", "guest", "fallback", "local_", "temp_"]
    )

    # Economy
    FARMING_BASE_REWARD: int = 120
    FARMING_DURATION_HOURS: float = 8.0
    DAILY_BASE_REWARD: int = 150
    DAILY_STREAK_STEP: int = 10
    DAILY_STREAK_CAP: int = 100
    REFERRAL_BASE_REWARD: int = 100
    STARS_TO_COINS: int = 100
    INR_TO_COINS: int = 10
    APPLIED_EVENTS_WARN_THRESHOLD: int = Field(default=5000, ge=1)

    # Web / webhooks
    WEB_HOST: str = "0.0.0.0"
    WEB_PORT: int = 8080
    PAYMENTS_WEBHOOK_PATH: str = "/payments/webhook"
    PAYMENTS_WEBHOOK_SECRET: str = ""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    @field_validator("SYNTHETIC_ID_PREFIXES", mode="before")
    @classmethod
    def _parse_prefixes(cls, v):
        if v in (None, "", []):
            return []
        if isinstance(v, (list, tuple, set)):
            return [str(item).strip().lower() for item in v if str(item).strip()]
        return [part.strip().lower() for part in str(v).split(",") if part.strip()]

    @field_validator("STORE_BACKEND", mode="before")
    @classmethod
    def _normalize_backend(cls, v):
        value = str(v or "redis").strip().lower()
        if value not in {"redis", "memory"}:
            raise ValueError(f"unsupported store backend: {value}")
        return value

    @model_validator(mode="after")
    def _check_backoff(self) -> "Settings":
        if self.RECONNECT_MAX_DELAY < self.RECONNECT_BASE_DELAY:
            self.RECONNECT_MAX_DELAY = self.RECONNECT_BASE_DELAY
        return self

    @property
    def farming_duration_seconds(self) -> float:
        return self.FARMING_DURATION_HOURS * 3600.0


settings = Settings()
