"""Application settings."""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "taskboard"
    app_env: str = "dev"
    app_debug: bool = False
    # memory://, sqlite:///relative/path.db, sqlite:////abs/path.db or postgresql://...
    database_url: str = "sqlite:///data/taskboard.db"
    log_level: str = "INFO"
    # Keep recent notification events for GET /events; 0 disables recording.
    event_buffer_size: int = Field(default=200, ge=0)

    model_config = SettingsConfigDict(
        env_prefix="TASKBOARD_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
