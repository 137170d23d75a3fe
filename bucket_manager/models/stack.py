"""Stack, host target and runtime status models."""

import posixpath
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from ..constants import LOCAL_SERVER_NAME
from .host import SSHHostConfig


class HostTarget(BaseModel):
    """Where a command runs: the local machine or a named remote host."""

    model_config = ConfigDict(frozen=True)

    is_remote: bool = False
    server_name: str = LOCAL_SERVER_NAME
    connection: SSHHostConfig | None = None

    @classmethod
    def local(cls) -> "HostTarget":
        return cls()

    @classmethod
    def remote(cls, host: SSHHostConfig) -> "HostTarget":
        return cls(is_remote=True, server_name=host.name, connection=host)


class Stack(BaseModel):
    """A compose project found on some host.

    Stacks are immutable; a new discovery run produces new values.
    """

    model_config = ConfigDict(frozen=True)

    name: str  # Directory name
    host: HostTarget
    path: str  # Absolute directory on the host
    root: str  # Absolute discovery root the stack was found under

    @property
    def relative_path(self) -> str:
        return posixpath.relpath(self.path, self.root)

    @property
    def identifier(self) -> str:
        """Stable key used for status and loading maps (e.g. "build1:web")."""
        return f"{self.host.server_name}:{self.relative_path}"

    @property
    def server_name(self) -> str:
        return self.host.server_name

    @property
    def is_remote(self) -> bool:
        return self.host.is_remote


class StackStatus(Enum):
    """Aggregated runtime state of a stack."""

    UP = "UP"
    DOWN = "DOWN"
    PARTIAL = "PARTIAL"
    ERROR = "ERROR"
    UNKNOWN = "UNKNOWN"


class ContainerState(BaseModel):
    """One container as reported by `compose ps`."""

    model_config = ConfigDict(frozen=True)

    service: str = ""
    name: str = ""
    status: str = ""

    @property
    def is_running(self) -> bool:
        status = self.status.lower()
        return "running" in status or "healthy" in status or status.startswith("up")


class StackRuntimeInfo(BaseModel):
    """Result of one status poll, replaced wholesale by the next poll."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    stack: Stack
    overall_status: StackStatus = StackStatus.UNKNOWN
    containers: tuple[ContainerState, ...] = Field(default_factory=tuple)
    error: Exception | None = None
