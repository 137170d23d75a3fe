"""
Bucket Manager Services

Workers that perform discovery, status polling, command execution and
host registry updates, reporting back to the controller through events.
"""

from .discovery import DiscoveryEngine  # noqa: F401
from .registry import HostRegistry, ImportResult  # noqa: F401
from .sequencer import CommandSequencer  # noqa: F401
from .status import StatusPoller  # noqa: F401

__all__ = [
    "DiscoveryEngine",
    "HostRegistry",
    "ImportResult",
    "CommandSequencer",
    "StatusPoller",
]
