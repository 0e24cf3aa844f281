from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # Pydantic v2 settings config
    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./chat.db"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # "structured" stores {alias, content, color}; "plain" stores "alias: text"
    CONTENT_VARIANT: Literal["structured", "plain"] = "structured"

    # Broadcast bus: memory:// for a single worker, redis://host:port/db otherwise
    BROADCAST_URL: str = "memory://"
    BROADCAST_CHANNEL: str = "relay:broadcast"

    # Chat behaviour
    HISTORY_PAGE_SIZE: int = 10
    COUNT_SETTLE_DELAY_MS: int = 50
    RECOVERY_WINDOW_SECONDS: float = 120.0


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
