"""
Core configuration

Settings are read from environment variables (and an optional .env file)
through pydantic-settings.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "chatcore"
    log_level: str = "INFO"

    # MongoDB
    mongo_url: str = "mongodb://localhost:27017"
    mongo_db: str = "chatcore"

    # Redis is optional; without it events are delivered in-process only
    redis_url: Optional[str] = None

    # Security
    jwt_secret_key: str = Field(default="dev-secret-key-change-me-please-0123456789", min_length=32)
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24

    # Comma separated list of origins, "*" for any
    cors_origins: str = "*"

    # Realtime
    typing_timeout_ms: int = Field(default=3000, ge=100)
    presence_offline_grace_seconds: float = Field(default=30.0, ge=0)
    bus_channel: str = "chatcore:events"

    # Unread accounting: decrement the deleter's counter when they hide an unread message
    adjust_unread_on_delete: bool = False

    # Pagination
    default_page_limit: int = 20
    max_page_limit: int = 100

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return v.upper()

    @property
    def cors_origin_list(self) -> List[str]:
        if self.cors_origins.strip() == "*":
            return ["*"]
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


@lru_cache()
def get_settings() -> Settings:
    return Settings()
