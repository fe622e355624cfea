"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MEBIBYTE = 1024 * 1024


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="MovieDeck", alias="APP_NAME")
    server_host: str = Field(default="127.0.0.1", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    tmdb_api_key: str | None = Field(default=None, alias="TMDB_API_KEY")
    tmdb_api_url: HttpUrl = Field(
        default="https://api.themoviedb.org/3", alias="TMDB_API_URL"
    )
    watch_region: str = Field(default="US", alias="WATCH_REGION")

    retry_max_attempts: int = Field(default=3, alias="RETRY_MAX_ATTEMPTS", ge=1, le=10)
    retry_base_delay: float = Field(default=1.0, alias="RETRY_BASE_DELAY", ge=0.0)
    retry_max_delay: float = Field(default=30.0, alias="RETRY_MAX_DELAY", ge=0.0)

    cache_directory: Path = Field(default=Path("./cache/tmdb"), alias="CACHE_DIR")
    memory_cache_bytes: int = Field(
        default=50 * MEBIBYTE, alias="MEMORY_CACHE_BYTES", ge=0
    )
    disk_cache_bytes: int = Field(
        default=200 * MEBIBYTE, alias="DISK_CACHE_BYTES", ge=MEBIBYTE
    )
    disk_cache_max_age_days: float = Field(
        default=7.0, alias="DISK_CACHE_MAX_AGE_DAYS", gt=0
    )
    cache_sweep_interval_seconds: int = Field(
        default=3_600, alias="CACHE_SWEEP_INTERVAL", ge=60
    )

    watchlist_save_debounce_seconds: float = Field(
        default=0.5, alias="WATCHLIST_SAVE_DEBOUNCE", ge=0.0, le=10.0
    )
    search_debounce_seconds: float = Field(
        default=0.3, alias="SEARCH_DEBOUNCE", ge=0.0, le=5.0
    )

    recommendation_limit: int = Field(
        default=12, alias="RECOMMENDATION_LIMIT", ge=1, le=100
    )
    recommendation_top_genres: int = Field(
        default=3, alias="RECOMMENDATION_TOP_GENRES", ge=1, le=10
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./moviedeck.db", alias="DATABASE_URL"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("tmdb_api_key", mode="before")
    @classmethod
    def _strip_blank_key(cls, value: object) -> object:
        """Treat blank or unexpanded placeholder keys as missing."""

        if value is None:
            return None
        text = str(value).strip()
        if not text or text.startswith("$"):
            return None
        return text

    @field_validator("watch_region", mode="before")
    @classmethod
    def _normalise_region(cls, value: object) -> str:
        text = str(value or "").strip().upper()
        if len(text) != 2 or not text.isalpha():
            raise ValueError("WATCH_REGION must be a two-letter country code")
        return text

    @property
    def disk_cache_max_age_seconds(self) -> float:
        return self.disk_cache_max_age_days * 86_400

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]
