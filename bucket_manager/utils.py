"""Utility functions for Bucket Manager.

Shell quoting and path helpers shared by discovery, status polling and
command execution.
"""

import shlex
from pathlib import Path


def quote_remote_path(path: str) -> str:
    """Quote a path for a remote POSIX shell, keeping a leading ``~/`` expandable.

    Examples:
        >>> quote_remote_path("/srv/my stacks")
        "'/srv/my stacks'"
        >>> quote_remote_path("~/bucket")
        '~/bucket'
    """
    if path == "~":
        return path
    if path.startswith("~/"):
        return "~/" + shlex.quote(path[2:])
    return shlex.quote(path)


def resolve_path(path: str | Path) -> Path:
    """Expand a leading ``~`` against the local home directory."""
    return Path(path).expanduser()


def format_host_address(user: str, hostname: str, port: int) -> str:
    """Human readable ``user@host[:port]`` for logs and listings."""
    if ":" in hostname and not hostname.startswith("["):
        # IPv6 address needs brackets
        hostname = f"[{hostname}]"
    return f"{user}@{hostname}" if port in (0, 22) else f"{user}@{hostname}:{port}"
