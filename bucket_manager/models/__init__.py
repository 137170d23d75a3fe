"""Data models for Bucket Manager."""

from .commands import (  # noqa: F401
    CommandStep,
    StepScope,
    build_sequence,
    down_sequence,
    prune_host_step,
    pull_sequence,
    refresh_sequence,
    render_remote_command,
    up_sequence,
)
from .host import AuthMethod, PotentialHost, SSHHostConfig  # noqa: F401
from .stack import (  # noqa: F401
    ContainerState,
    HostTarget,
    Stack,
    StackRuntimeInfo,
    StackStatus,
)

__all__ = [
    # Command models
    "CommandStep",
    "StepScope",
    "build_sequence",
    "down_sequence",
    "prune_host_step",
    "pull_sequence",
    "refresh_sequence",
    "render_remote_command",
    "up_sequence",
    # Host models
    "AuthMethod",
    "PotentialHost",
    "SSHHostConfig",
    # Stack models
    "ContainerState",
    "HostTarget",
    "Stack",
    "StackRuntimeInfo",
    "StackStatus",
]
