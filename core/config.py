"""Application settings via pydantic-settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine configuration loaded from environment variables with REWARDS_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="REWARDS_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "referral-rewards-engine"
    app_version: str = "1.0.0"
    environment: str = "development"
    log_level: str = "INFO"
    log_format: str = "json"
    cors_origins: list[str] = ["*"]

    # --- Policy ---
    default_scope: str = "default"
    seed_default_configuration: bool = True

    # --- Profitability ---
    company_share_rate: float = 0.40
    point_value: float = 1.0

    # --- Ingestion ---
    ingest_workers: int = 4
    ingest_queue_size: int = 1000


@lru_cache
def get_settings() -> Settings:
    return Settings()
