"""Shared pytest fixtures for Bucket Manager tests."""

from pathlib import Path

import pytest

from bucket_manager.models.host import SSHHostConfig
from bucket_manager.models.stack import HostTarget, Stack
from bucket_manager.services.registry import HostRegistry


@pytest.fixture
def make_host():
    """Factory for valid host registry entries."""

    def _make(name: str = "build1", **overrides) -> SSHHostConfig:
        values = {"name": name, "hostname": f"{name}.example.com", "user": "deploy"}
        values.update(overrides)
        return SSHHostConfig(**values)

    return _make


@pytest.fixture
def make_stack(make_host):
    """Factory for stacks; ``server=None`` means a local stack."""

    def _make(name: str = "web", server: str | None = None, root: str = "/srv/stacks") -> Stack:
        target = HostTarget.local() if server is None else HostTarget.remote(make_host(server))
        return Stack(name=name, host=target, path=f"{root}/{name}", root=root)

    return _make


@pytest.fixture
def config_file(tmp_path) -> Path:
    """Registry location inside a directory that does not exist yet."""
    return tmp_path / "bucket-manager" / "config.yaml"


@pytest.fixture
def registry(config_file) -> HostRegistry:
    return HostRegistry(config_file)


@pytest.fixture
def events() -> list:
    """Collected events; pass ``events.append`` as the event sink."""
    return []
