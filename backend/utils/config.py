"""
WatchRun Configuration Module.

Centralizes all configuration settings using Pydantic Settings.
Requires Python 3.11+.
"""

from functools import lru_cache
from pathlib import Path
from typing import Annotated

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

# Load .env file into os.environ at module import time
# This ensures nested BaseSettings classes can read the values
load_dotenv(Path.cwd() / ".env")


DEFAULT_IGNORE_PATTERNS: list[str] = [
    # Version control metadata
    ".git",
    ".hg",
    ".svn",
    # Build output
    "target",
    "build",
    "dist",
    "node_modules",
    "__pycache__",
    "*.egg-info",
    "*.pyc",
    # Tool caches
    ".pytest_cache",
    ".mypy_cache",
    ".ruff_cache",
    # Editor temporaries
    "*.swp",
    "*.swx",
    "*~",
    ".#*",
]


def _split_csv(v: str | list[str]) -> list[str]:
    if isinstance(v, str):
        return [p.strip() for p in v.split(",") if p.strip()]
    return v


class WatcherSettings(BaseSettings):
    """File watcher configuration settings."""

    model_config = SettingsConfigDict(env_prefix="WATCHER_")

    debounce_delay_ms: int = Field(default=500, ge=0, le=60_000)
    recursive: bool = Field(default=True)
    use_polling: bool = Field(default=False, description="Use stat polling instead of OS events")
    # NoDecode: accept comma-separated values instead of JSON
    ignore_patterns: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_IGNORE_PATTERNS),
        description="Glob patterns to ignore",
    )
    max_watch_retries: int = Field(default=3, ge=0, le=100)
    watch_retry_delay: float = Field(default=0.5, ge=0.0, le=60.0)
    health_check_interval: float = Field(default=0.5, gt=0.0, le=60.0)

    @field_validator("ignore_patterns", mode="before")
    @classmethod
    def parse_ignore_patterns(cls, v: str | list[str]) -> list[str]:
        """Parse ignore patterns from comma-separated string or list."""
        return _split_csv(v)


class RunnerSettings(BaseSettings):
    """Command runner configuration settings."""

    model_config = SettingsConfigDict(env_prefix="RUNNER_")

    continue_on_error: bool = Field(default=False)
    initial_run: bool = Field(default=True)
    clear_screen: bool = Field(default=False)
    terminate_timeout: float = Field(default=2.0, ge=0.0, le=300.0)
    poll_interval: float = Field(default=0.05, gt=0.0, le=5.0)


class LoggingSettings(BaseSettings):
    """Logging configuration settings."""

    model_config = SettingsConfigDict(env_prefix="LOG_")

    level: str = Field(default="INFO")
    format: str = Field(default="console")  # "json" or "console"
    colors: bool | None = Field(default=None)  # None = detect from terminal

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Normalize and check the level name."""
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {v}")
        return level

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Only console and json renderers exist."""
        fmt = v.lower()
        if fmt not in ("console", "json"):
            raise ValueError(f"unknown log format: {v}")
        return fmt


class Settings(BaseSettings):
    """Main application settings aggregating all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application metadata
    app_name: str = Field(default="WatchRun")
    app_version: str = Field(default="0.1.0")

    # Sub-settings
    watcher: WatcherSettings = Field(default_factory=WatcherSettings)
    runner: RunnerSettings = Field(default_factory=RunnerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get cached application settings.

    Returns singleton instance of Settings for performance.
    """
    return Settings()
