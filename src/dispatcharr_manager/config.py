"""Application configuration using Pydantic Settings."""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables prefixed with DISPATCHARR_MANAGER_."""

    model_config = SettingsConfigDict(
        env_prefix="DISPATCHARR_MANAGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    data_dir: Path = Field(default=Path("/tmp/dispatcharr-manager"))
    database_url: Optional[str] = Field(default=None, description="SQLAlchemy async URL for durable documents")

    # Scheduling
    default_timezone: str = Field(
        default="UTC",
        validation_alias=AliasChoices("DISPATCHARR_MANAGER_DEFAULT_TIMEZONE", "TZ"),
    )

    # Remote API
    request_timeout: float = Field(default=120.0, description="Per-request timeout in seconds")
    page_size: int = Field(default=1000)

    # Job registry
    job_retention_seconds: int = Field(default=3600)
    job_cleanup_interval_seconds: int = Field(default=3600)
    job_history_limit: int = Field(default=100)
    log_flush_every: int = Field(default=5)

    # Schedules
    schedule_history_limit: int = Field(default=100)

    log_level: str = Field(default="INFO")

    @property
    def storage_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite+aiosqlite:///{self.data_dir / 'manager.db'}"

    @property
    def artifacts_dir(self) -> Path:
        return self.data_dir / "artifacts"


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
