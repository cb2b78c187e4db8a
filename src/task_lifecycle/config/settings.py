"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "task-lifecycle"
    app_env: str = "dev"
    database_url: str = ""
    scheduler_enabled: bool = True
    scheduler_interval_s: float = Field(default=60.0, ge=1.0)
    scheduler_run_on_start: bool = True
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="TASK_LIFECYCLE_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("DATABASE_URL", "")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
