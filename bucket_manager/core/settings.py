"""Runtime settings for Bucket Manager.

Provides centralized tuning knobs using Pydantic BaseSettings
with environment variable support for operational tuning.
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..constants import MAX_CONCURRENT_DISCOVERIES, MAX_CONCURRENT_STATUS_CHECKS


def default_config_path() -> Path:
    """Location of the persisted host registry."""
    return Path.home() / ".config" / "bucket-manager" / "config.yaml"


class BucketManagerSettings(BaseSettings):
    """Process-level settings, read from the environment and `.env`."""

    config_path: Path = Field(
        default_factory=default_config_path,
        alias="BUCKET_MANAGER_CONFIG",
        description="Path of the YAML host registry",
    )

    log_level: str = Field("WARNING", alias="LOG_LEVEL", description="Log level")

    log_dir: Path = Field(
        default_factory=lambda: Path.home() / ".cache" / "bucket-manager" / "logs",
        alias="BUCKET_MANAGER_LOG_DIR",
        description="Directory for rotating log files",
    )

    max_concurrent_status_checks: int = Field(
        MAX_CONCURRENT_STATUS_CHECKS,
        alias="MAX_CONCURRENT_STATUS_CHECKS",
        ge=1,
        description="Process-wide limit on simultaneous status polls",
    )

    max_concurrent_discoveries: int = Field(
        MAX_CONCURRENT_DISCOVERIES,
        alias="MAX_CONCURRENT_DISCOVERIES",
        ge=1,
        description="Limit on simultaneous remote discovery searches",
    )

    status_gate_timeout: float | None = Field(
        None,
        alias="STATUS_GATE_TIMEOUT",
        description="Seconds a poll may wait for a gate slot (unbounded when unset)",
    )

    ssh_connect_timeout: int = Field(
        10, alias="SSH_CONNECT_TIMEOUT", description="SSH connect/auth timeout in seconds"
    )

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)
