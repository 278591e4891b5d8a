"""Configuration via pydantic-settings, read once at startup.

Every field can be set through a ``LOGQUEUE_``-prefixed environment variable
or a ``.env`` file. The three knobs operators set most often also accept their
short unprefixed names (``MAX_RETRIES``, ``MAX_CONCURRENT_JOBS``,
``LOG_KEYWORDS``).
"""
from __future__ import annotations

from typing import Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """logqueue configuration, loaded from env vars or a .env file."""

    model_config = SettingsConfigDict(
        env_prefix="LOGQUEUE_",
        env_file=".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )

    max_retries: int = Field(
        default=3,
        ge=1,
        validation_alias=AliasChoices("LOGQUEUE_MAX_RETRIES", "MAX_RETRIES", "max_retries"),
        description="Maximum attempts per job, first attempt included",
    )
    max_concurrent_jobs: int = Field(
        default=4,
        ge=1,
        validation_alias=AliasChoices(
            "LOGQUEUE_MAX_CONCURRENT_JOBS", "MAX_CONCURRENT_JOBS", "max_concurrent_jobs"
        ),
        description="Worker tasks processing jobs in parallel",
    )
    log_keywords: str = Field(
        default="error,warning,critical",
        validation_alias=AliasChoices("LOGQUEUE_LOG_KEYWORDS", "LOG_KEYWORDS", "log_keywords"),
        description="Comma-separated keywords matched against entry levels",
    )
    backend: Literal["memory", "redis"] = Field(
        default="memory", description="Where jobs, stats records and events live"
    )
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis URL for the redis backend")
    progress_every: int = Field(default=1000, ge=1, description="Lines between progress reports")
    bytes_per_line: int = Field(default=100, ge=1, description="Average line size used to estimate progress")
    retry_delay: float = Field(default=0.0, ge=0.0, description="Seconds before a failed job is re-queued")
    keep_completed: int = Field(default=100, ge=0, description="Completed jobs retained for status queries")
    keep_failed: int = Field(default=100, ge=0, description="Failed jobs retained for status queries")
    delete_failed_files: bool = Field(
        default=False, description="Delete the source file once a job has exhausted its attempts"
    )
    log_level: str = Field(default="INFO", description="Root log level")

    @property
    def keywords(self) -> list[str]:
        """Normalised keyword list: lower-cased, stripped, de-duplicated, in order."""
        return normalise_keywords(self.log_keywords.split(","))


def normalise_keywords(raw: list[str] | tuple[str, ...]) -> list[str]:
    seen: dict[str, None] = {}
    for keyword in raw:
        keyword = keyword.strip().lower()
        if keyword:
            seen.setdefault(keyword, None)
    return list(seen)


def load_settings(**overrides: object) -> Settings:
    """Build a Settings instance from the environment, applying explicit overrides."""
    return Settings(**overrides)  # type: ignore[arg-type]
