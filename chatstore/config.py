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
        env_ignore_empty=True,
    )

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./chatstore.db"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Simulated counterpart replies
    AUTO_REPLY_ENABLED: bool = False
    AUTO_REPLY_DELAY_SECONDS: float = 1.5

    # Upper bound when walking reply chains for display
    REPLY_CHAIN_MAX_DEPTH: int = 32

    # Pre-populate demo conversations on startup
    SEED_SAMPLE_DATA: bool = False


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every call.
    """
    return Settings()


# Global settings instance
settings = get_settings()
