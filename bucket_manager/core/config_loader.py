"""Configuration management for Bucket Manager.

The persisted configuration is a single YAML document::

    local_root: ~/stacks        # optional
    runtime: docker             # optional, defaults to podman
    ssh_hosts:
      - name: build1
        hostname: 10.0.0.5
        user: deploy
        key_path: ~/.ssh/id_ed25519
        remote_root: /srv/stacks

Every write replaces the whole file; there is no optimistic concurrency
check, so a concurrent edit by another process between load and save is
overwritten.
"""

import asyncio
import os
from pathlib import Path
from typing import Any, Literal

import structlog
import yaml
from pydantic import BaseModel, Field, ValidationError

from ..constants import DEFAULT_RUNTIME
from ..models.host import SSHHostConfig
from .exceptions import ConfigurationError

logger = structlog.get_logger()


class BucketManagerConfig(BaseModel):
    """Top-level persisted configuration."""

    local_root: str | None = None
    runtime: Literal["podman", "docker"] = DEFAULT_RUNTIME
    ssh_hosts: list[SSHHostConfig] = Field(default_factory=list)

    @property
    def enabled_hosts(self) -> list[SSHHostConfig]:
        return [host for host in self.ssh_hosts if not host.disabled]


def load_config(config_path: str | Path) -> BucketManagerConfig:
    """Load configuration from a YAML file (synchronous interface).

    A missing file yields an empty default configuration.

    Raises:
        ConfigurationError: If the file cannot be read or does not validate
    """
    config_path = Path(config_path)
    if not config_path.exists():
        logger.debug("Config file not found, using defaults", path=str(config_path))
        return BucketManagerConfig()

    yaml_config = _load_yaml_config(config_path)
    try:
        config = BucketManagerConfig.model_validate(yaml_config)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration in {config_path}: {e}") from e

    logger.debug("Configuration loaded", path=str(config_path), hosts=len(config.ssh_hosts))
    return config


async def load_config_async(config_path: str | Path) -> BucketManagerConfig:
    """Load configuration without blocking the event loop."""
    return await asyncio.to_thread(load_config, config_path)


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """Load YAML configuration file."""
    try:
        content = config_path.read_text(encoding="utf-8")
        loaded = yaml.safe_load(content)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to load config from {config_path}: {e}") from e

    # yaml.safe_load can return None, str, list, etc.
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Config file {config_path} must contain a mapping")
    # A bare "ssh_hosts:" key parses as None
    if loaded.get("ssh_hosts") is None:
        loaded["ssh_hosts"] = []
    return loaded


def save_config(config: BucketManagerConfig, config_path: str | Path) -> None:
    """Save configuration to a YAML file.

    Raises:
        ConfigurationError: If unable to save configuration
    """
    config_path = Path(config_path)

    try:
        config_path.parent.mkdir(mode=0o750, parents=True, exist_ok=True)
        content = dump_config(config)
        config_path.write_text(content, encoding="utf-8")
        os.chmod(config_path, 0o640)

        logger.info("Configuration saved", path=str(config_path), hosts=len(config.ssh_hosts))

    except OSError as e:
        logger.error("Failed to save configuration", path=str(config_path), error=str(e))
        raise ConfigurationError(f"Failed to save configuration to {config_path}: {e}") from e


async def save_config_async(config: BucketManagerConfig, config_path: str | Path) -> None:
    await asyncio.to_thread(save_config, config, config_path)


def dump_config(config: BucketManagerConfig) -> str:
    """Serialize configuration to YAML, omitting default values."""
    return yaml.safe_dump(
        _build_yaml_data(config), default_flow_style=False, sort_keys=False, indent=2
    )


def _build_yaml_data(config: BucketManagerConfig) -> dict[str, Any]:
    """Build YAML data structure from configuration."""
    yaml_data: dict[str, Any] = {}

    # Define conditional fields with their conditions
    conditional_fields = [
        ("local_root", config.local_root, bool(config.local_root)),
        ("runtime", config.runtime, config.runtime != DEFAULT_RUNTIME),
    ]
    for field_name, field_value, condition in conditional_fields:
        if condition:
            yaml_data[field_name] = field_value

    yaml_data["ssh_hosts"] = [host.to_yaml_dict() for host in config.ssh_hosts]
    return yaml_data
