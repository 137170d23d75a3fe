"""Requests accepted by the controller and events emitted back to it.

Both are closed unions of frozen dataclasses. Workers only ever hand events
to the controller's queue; the controller dispatches on them with ``match``.
"""

from collections.abc import Callable
from dataclasses import dataclass, field

from .commands import CommandStep
from .host import PotentialHost, SSHHostConfig
from .stack import Stack, StackRuntimeInfo

# --- Requests ---


@dataclass(frozen=True)
class StartDiscovery:
    pass


@dataclass(frozen=True)
class PollStatus:
    stack: Stack


@dataclass(frozen=True)
class RunSequence:
    steps: tuple[CommandStep, ...]
    stacks: tuple[Stack, ...] = ()  # Stacks to re-poll once the sequence completes


@dataclass(frozen=True)
class RunStep:
    step: CommandStep


@dataclass(frozen=True)
class LoadHosts:
    pass


@dataclass(frozen=True)
class AddHost:
    host: SSHHostConfig


@dataclass(frozen=True)
class EditHost:
    original_name: str
    host: SSHHostConfig


@dataclass(frozen=True)
class RemoveHost:
    name: str


@dataclass(frozen=True)
class ParseImport:
    path: str | None = None  # Defaults to ~/.ssh/config


@dataclass(frozen=True)
class ImportHosts:
    candidates: tuple[SSHHostConfig, ...]


Request = (
    StartDiscovery
    | PollStatus
    | RunSequence
    | RunStep
    | LoadHosts
    | AddHost
    | EditHost
    | RemoveHost
    | ParseImport
    | ImportHosts
)

# --- Events ---


@dataclass(frozen=True)
class StackDiscovered:
    stack: Stack
    run_id: int = 0


@dataclass(frozen=True)
class DiscoveryError:
    error: Exception
    server_name: str = ""
    run_id: int = 0


@dataclass(frozen=True)
class DiscoveryFinished:
    run_id: int = 0


@dataclass(frozen=True)
class StatusLoaded:
    identifier: str
    info: StackRuntimeInfo


@dataclass(frozen=True)
class OutputLine:
    text: str
    is_error: bool = False


@dataclass(frozen=True)
class StepFinished:
    error: Exception | None = None


@dataclass(frozen=True)
class HostsLoaded:
    hosts: tuple[SSHHostConfig, ...] = ()
    error: Exception | None = None


@dataclass(frozen=True)
class HostMutated:
    error: Exception | None = None


@dataclass(frozen=True)
class ImportParsed:
    potential_hosts: tuple[PotentialHost, ...] = field(default_factory=tuple)
    error: Exception | None = None


@dataclass(frozen=True)
class ImportSaved:
    imported_count: int = 0
    skipped_count: int = 0
    error: Exception | None = None


Event = (
    StackDiscovered
    | DiscoveryError
    | DiscoveryFinished
    | StatusLoaded
    | OutputLine
    | StepFinished
    | HostsLoaded
    | HostMutated
    | ImportParsed
    | ImportSaved
)

# Sink handed to every worker at construction or call time
EventSink = Callable[[Event], None]
