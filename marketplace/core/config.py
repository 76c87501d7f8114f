from functools import lru_cache
from typing import List

import orjson
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LOCAL_ORIGINS = ["http://localhost:3000", "http://localhost:5173"]


def split_origins(raw: str | None) -> List[str]:
    """CORS_ORIGINS as a JSON list or a comma-separated string; empty means local dev origins."""
    text = (raw or "").strip()
    if text.startswith("["):
        try:
            items = orjson.loads(text)
        except orjson.JSONDecodeError:
            items = []
    else:
        items = text.split(",")
    origins = [o.strip() for o in items if isinstance(o, str) and o.strip()]
    return origins or list(LOCAL_ORIGINS)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    secret_key: str = Field(default="change-me-in-production-min-32-chars")

    # Store: "mongo" or "memory"
    store_backend: str = Field(default="mongo", alias="STORE_BACKEND")

    # MongoDB
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="marketplace", alias="MONGODB_DB_NAME")

    # Redis (OTP request throttle); empty disables throttling
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")
    otp_requests_per_hour: int = Field(default=10, alias="OTP_REQUESTS_PER_HOUR")

    # Email: "log" or "smtp"
    email_backend: str = Field(default="log", alias="EMAIL_BACKEND")
    smtp_host: str = Field(default="smtp.gmail.com", alias="SMTP_HOST")
    smtp_port: int = Field(default=587, alias="SMTP_PORT")
    smtp_user: str = Field(default="", alias="SMTP_USER")
    smtp_password: str = Field(default="", alias="SMTP_PASSWORD")
    email_from_name: str = Field(default="KaajKaam", alias="EMAIL_FROM_NAME")
    frontend_url: str = Field(default="http://localhost:5173", alias="FRONTEND_URL")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    @property
    def cors_origins(self) -> List[str]:
        return split_origins(self.cors_origins_raw)

    # Expiry sweeper
    sweeper_enabled: bool = Field(default=True, alias="SWEEPER_ENABLED")
    sweep_interval_seconds: int = Field(default=3600, alias="SWEEP_INTERVAL_SECONDS")
    sweep_batch_size: int = Field(default=200, alias="SWEEP_BATCH_SIZE")
    claim_timeout_minutes: int = Field(default=5, alias="CLAIM_TIMEOUT_MINUTES")


@lru_cache
def get_settings() -> Settings:
    return Settings()
