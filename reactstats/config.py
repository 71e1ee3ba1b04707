"""Application configuration."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-driven settings validated at startup."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    discord_token: str = Field(..., alias="DISCORD_TOKEN")
    discord_api_base_url: str = Field(
        default="https://discord.com/api/v10",
        alias="DISCORD_API_BASE_URL",
    )
    database_path: Path = Field(default=Path("ReactionStats.db"), alias="DATABASE_PATH")
    scheduler_poll_interval_seconds: float = Field(default=15.0, alias="SCHEDULER_POLL_INTERVAL_SECONDS")
    request_timeout_seconds: float = Field(default=30.0, alias="REQUEST_TIMEOUT_SECONDS")
    # "embeds" posts grouped rich items, "text" posts numbered plain-text parts.
    report_style: Literal["embeds", "text"] = Field(default="embeds", alias="REPORT_STYLE")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")


def load_settings() -> Settings:
    """Load and validate settings."""

    return Settings()
