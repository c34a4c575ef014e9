"""
Centralized configuration for fctl.

Uses Pydantic BaseSettings for environment variable integration
and validation.

Configuration sources (in order of precedence):
1. Explicit constructor arguments
2. Environment variables (FCTL_*)
3. .env file
4. Default values

Example:
    from fctl.config import get_settings

    settings = get_settings()
    print(settings.home_dir)  # From FCTL_HOME_DIR or ~/.facets
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class FctlSettings(BaseSettings):
    """
    Runtime settings for fctl.

    All settings can be overridden via environment variables
    prefixed with FCTL_.

    Example:
        export FCTL_POLL_INTERVAL_SECONDS=10
        export FCTL_LOG_LEVEL=debug
    """

    model_config = SettingsConfigDict(
        env_prefix="FCTL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    home_dir: Path = Field(
        default=Path("~/.facets"),
        description="Base directory holding profiles, workspaces and state snapshots",
    )
    retention: int = Field(
        default=10,
        ge=1,
        description="Number of workspaces and zip artifacts kept per environment",
    )
    poll_interval_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Fixed interval between remote export status polls",
    )
    display_refresh_seconds: float = Field(
        default=0.5,
        gt=0,
        description="Refresh cadence of the multi-environment progress display",
    )
    display_grace_seconds: float = Field(
        default=0.1,
        ge=0,
        description="Delay before the final progress render",
    )
    http_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Timeout for control plane requests",
    )
    terraform_binary: str = Field(
        default="terraform",
        description="Provisioning tool executable",
    )
    terraform_timeout_seconds: int = Field(
        default=3600,
        gt=0,
        description="Timeout for a single provisioning tool invocation",
    )
    log_level: str = Field(
        default="WARNING",
        description="Root log level",
    )

    @field_validator("home_dir")
    @classmethod
    def expand_home(cls, value: Path) -> Path:
        return value.expanduser()

    @field_validator("log_level")
    @classmethod
    def normalize_level(cls, value: str) -> str:
        return value.upper()


@lru_cache
def get_settings() -> FctlSettings:
    """Return the process-wide settings instance."""
    return FctlSettings()
