"""Application settings using pydantic-settings."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from snaptriage._types import SecurityLevel


class Settings(BaseSettings):
    """Service configuration loaded from SNAPTRIAGE_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SNAPTRIAGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    app_name: str = "snaptriage"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"

    # ==========================================================================
    # Storage
    # ==========================================================================
    data_dir: Path = Field(default=Path(".data"))

    # ==========================================================================
    # Sandbox
    # ==========================================================================
    backend: Literal["local", "docker"] = "local"
    sandbox_root: Path | None = None  # None -> system temp directory
    default_timeout_seconds: float = Field(default=60.0, gt=0)
    max_timeout_seconds: float = Field(default=600.0, gt=0)
    max_output_bytes: int = Field(default=1_048_576, gt=0)
    terminate_grace_seconds: float = Field(default=2.0, ge=0)
    inherit_env: bool = False

    docker_image: str = "python:3.12-slim"
    docker_cpus: float = 1.0
    docker_memory: str = "512m"
    docker_network: str = "none"

    # ==========================================================================
    # Worker pool
    # ==========================================================================
    max_workers: int = Field(default=4, ge=1)
    queue_size: int = Field(default=32, ge=1)

    # ==========================================================================
    # Command policy
    # ==========================================================================
    policy_level: SecurityLevel = SecurityLevel.STANDARD
    policy_file: Path | None = None
    max_command_length: int = Field(default=400, gt=0)
    allowlist_prefixes: list[str] = Field(default_factory=list)

    # ==========================================================================
    # Log analysis
    # ==========================================================================
    frame_lookahead: int = Field(default=50, ge=0)
    max_log_bytes: int = Field(default=2_000_000, gt=0)

    # ==========================================================================
    # API
    # ==========================================================================
    api_host: str = "127.0.0.1"
    api_port: int = 4000
    cors_origins: list[str] = Field(default=["http://localhost:3000"])

    @property
    def runs_dir(self) -> Path:
        return self.data_dir / "runs"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
