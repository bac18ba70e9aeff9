from functools import lru_cache
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
        # Ensure environment variables override .env file
        env_ignore_empty=True,
    )

    # Database Configuration - required from .env
    DATABASE_URL: str

    # Logging Configuration - required from .env
    LOG_LEVEL: str

    # Bearer token verification - required from .env
    JWT_SECRET: str
    JWT_ALGORITHM: str = "HS256"

    # Shared secret for signed publisher triggers (cron) - required from .env
    PUBLISHER_SECRET: str

    # Per-call budget for chat store and membership queries
    CHAT_QUERY_TIMEOUT_SECONDS: float = 5.0

    # Scheduled posts worker
    SCHEDULED_POSTS_WORKER_ENABLED: bool = False
    SCHEDULED_POSTS_INTERVAL_SECONDS: float = 30.0
    SCHEDULED_POSTS_INITIAL_DELAY_SECONDS: float = 10.0


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
