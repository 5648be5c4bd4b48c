"""Application configuration."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

_BACKEND_DIR = Path(__file__).resolve().parents[1]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "Record Harvester API"
    database_url: str = "sqlite+pysqlite:///./harvester.db"
    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o-mini"
    openai_timeout_seconds: int = 60
    gmail_access_token: str | None = None
    gmail_base_url: str = "https://gmail.googleapis.com/gmail/v1"
    gmail_search_limit: int = 20
    gmail_timeout_seconds: int = 30
    default_categories: list[str] = ["Marriott"]
    max_attempts_per_category: int = 5
    cache_capacity: int = 200
    search_history_limit: int = 50
    search_freshness_seconds: float | None = None
    fetch_batch_size: int = 5
    max_total_attempts: int | None = None

    model_config = SettingsConfigDict(
        env_file=str(_BACKEND_DIR / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()
