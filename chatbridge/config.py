from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required from .env
    DATABASE_URL: str

    # Logging Configuration - required from .env
    LOG_LEVEL: str

    # Shared secret for calls made by the external channel agent
    WEBHOOK_SECRET: str

    # The bot's own address on the external channel
    CHANNEL_ADDRESS: str = ""

    # Base URL of the process holding live sessions; empty means in-process
    FANOUT_URL: str = ""
    FANOUT_TIMEOUT_SECONDS: float = 2.0

    # Upper bound on entries handed out by one batch claim
    CLAIM_BATCH_LIMIT: int = 50


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
