"""Application configuration using pydantic-settings."""

from __future__ import annotations

import os
import tempfile
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


def _default_dir() -> str:
    return os.environ.get("INFRAKIT_INSTANCE_TERRAFORM_DIR", tempfile.gettempdir())


class TerraformSettings(BaseSettings):
    """Terraform resource directory and apply loop configuration."""

    dir: str = Field(default_factory=_default_dir, alias="TF_DIR")
    binary: str = Field(default="terraform", alias="TF_BINARY")
    poll_interval: float = Field(default=30.0, alias="TF_POLL_INTERVAL")
    settle_window: float = Field(default=5.0, alias="TF_SETTLE_WINDOW")
    delta_window: float = Field(default=3.0, alias="TF_DELTA_WINDOW")
    max_settle_checks: int = Field(default=30, alias="TF_MAX_SETTLE_CHECKS")
    lock_retry_interval: float = Field(default=0.5, alias="TF_LOCK_RETRY_INTERVAL")
    standalone: bool = Field(default=True, alias="TF_STANDALONE")
    auto_approve: bool = Field(default=True, alias="TF_AUTO_APPROVE")
    prune_orphans: bool = Field(default=True, alias="TF_PRUNE_ORPHANS")
    envs: list[str] = Field(default_factory=list, alias="TF_ENVS")

    @field_validator("envs")
    @classmethod
    def _check_envs(cls, value: list[str]) -> list[str]:
        for entry in value:
            if "=" not in entry:
                raise ValueError(f"Env var is missing '=' character: {entry}")
        return value

    model_config = {"env_prefix": "TF_", "extra": "ignore", "populate_by_name": True}


class ObservabilitySettings(BaseSettings):
    """Observability configuration."""

    service_name: str = Field(default="tfinstance", alias="SERVICE_NAME")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    model_config = {"env_prefix": "OBS_", "extra": "ignore", "populate_by_name": True}


class Settings(BaseSettings):
    """Main application settings."""

    # Forces DEBUG logging regardless of the observability log level
    debug: bool = Field(default=False, alias="DEBUG")

    terraform: TerraformSettings = Field(default_factory=TerraformSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)

    model_config = {"env_prefix": "", "extra": "ignore", "populate_by_name": True}

    @property
    def log_level(self) -> str:
        return "DEBUG" if self.debug else self.observability.log_level


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
