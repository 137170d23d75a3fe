"""
Stack Discovery Service

Concurrent, incremental discovery of compose stacks on the local machine and
on every enabled remote host.
"""

import asyncio
import posixpath
import shlex
from collections.abc import AsyncIterator
from pathlib import Path

import structlog

from ..constants import (
    COMPOSE_FILE_NAMES,
    DEFAULT_STACK_ROOTS,
    LOCAL_SERVER_NAME,
    MAX_CONCURRENT_DISCOVERIES,
    REMOTE_FIND_TEMPLATE,
)
from ..core.exceptions import HostDiscoveryError
from ..core.ssh_pool import SSHConnectionPool
from ..models.events import DiscoveryError, DiscoveryFinished, EventSink, StackDiscovered
from ..models.host import SSHHostConfig
from ..models.stack import HostTarget, Stack
from ..utils import quote_remote_path, resolve_path
from .registry import HostRegistry

logger = structlog.get_logger()


def resolve_local_root(local_root: str | None) -> Path | None:
    """Directory searched for local stacks.

    A configured root must exist and be a directory. Without one, the first
    existing default root is used; None means there is nothing to search.

    Raises:
        HostDiscoveryError: If the configured root is unusable
    """
    if local_root:
        path = resolve_path(local_root)
        if not path.exists():
            raise HostDiscoveryError(
                f"configured local_root '{local_root}' does not exist", LOCAL_SERVER_NAME
            )
        if not path.is_dir():
            raise HostDiscoveryError(
                f"configured local_root '{local_root}' is not a directory", LOCAL_SERVER_NAME
            )
        return path.resolve()

    for candidate in DEFAULT_STACK_ROOTS:
        path = resolve_path(candidate)
        if path.is_dir():
            return path.resolve()
    return None


def scan_local_root(root: Path) -> list[Path]:
    """Immediate sub-directories of ``root`` holding a compose file, by name."""
    return [
        entry
        for entry in sorted(root.iterdir(), key=lambda entry: entry.name)
        if entry.is_dir() and any((entry / name).is_file() for name in COMPOSE_FILE_NAMES)
    ]


class DiscoveryEngine:
    """Runs one search per host and reports stacks as soon as they are found."""

    def __init__(
        self,
        registry: HostRegistry,
        ssh_pool: SSHConnectionPool,
        max_concurrent_discoveries: int = MAX_CONCURRENT_DISCOVERIES,
    ):
        self.registry = registry
        self.ssh_pool = ssh_pool
        self._remote_gate = asyncio.Semaphore(max_concurrent_discoveries)

    async def discover(self, emit: EventSink, run_id: int = 0) -> None:
        """Search the local host and every enabled registry host concurrently.

        Each stack is emitted as a ``StackDiscovered`` event when found, each
        failed search as one ``DiscoveryError``. ``DiscoveryFinished`` is
        emitted exactly once, after every search has ended.
        """
        try:
            config = await self.registry.load_config()
            local_root, hosts = config.local_root, config.enabled_hosts
        except Exception as e:
            logger.error("Discovery could not load configuration", error=str(e))
            emit(DiscoveryError(error=e, run_id=run_id))
            # The local host is still searched with the default roots
            local_root, hosts = None, []

        logger.info("Starting stack discovery", run_id=run_id, remote_hosts=len(hosts))

        searches = [
            self._run_search(LOCAL_SERVER_NAME, self.search_local(local_root), emit, run_id)
        ]
        searches.extend(
            self._run_search(host.name, self._gated(self.search_remote(host)), emit, run_id)
            for host in hosts
        )
        await asyncio.gather(*searches)

        logger.info("Stack discovery finished", run_id=run_id)
        emit(DiscoveryFinished(run_id=run_id))

    async def _gated(self, stacks: AsyncIterator[Stack]) -> AsyncIterator[Stack]:
        async with self._remote_gate:
            async for stack in stacks:
                yield stack

    async def _run_search(
        self, server_name: str, stacks: AsyncIterator[Stack], emit: EventSink, run_id: int
    ) -> None:
        found = 0
        try:
            async for stack in stacks:
                found += 1
                emit(StackDiscovered(stack=stack, run_id=run_id))
        except Exception as e:
            logger.warning("Discovery search failed", server=server_name, error=str(e))
            emit(DiscoveryError(error=e, server_name=server_name, run_id=run_id))
            return
        logger.debug("Discovery search completed", server=server_name, stacks=found)

    async def search_local(self, local_root: str | None) -> AsyncIterator[Stack]:
        root = resolve_local_root(local_root)
        if root is None:
            logger.debug("No local stack root configured or found")
            return

        try:
            entries = await asyncio.to_thread(scan_local_root, root)
        except OSError as e:
            raise HostDiscoveryError(
                f"failed to read local root directory {root}: {e}", LOCAL_SERVER_NAME
            ) from e

        target = HostTarget.local()
        for entry in entries:
            yield Stack(name=entry.name, host=target, path=str(entry), root=str(root))

    async def resolve_remote_root(self, host: SSHHostConfig) -> str:
        """Absolute stack root on a remote host, following the default fallbacks.

        Raises:
            HostDiscoveryError: If no candidate root resolves
        """
        candidates = [host.remote_root] if host.remote_root else list(DEFAULT_STACK_ROOTS)
        for candidate in candidates:
            exit_code, stdout, stderr = await self.ssh_pool.execute_command(
                host, f"cd {quote_remote_path(candidate)} && pwd"
            )
            resolved = stdout.strip()
            if exit_code == 0 and resolved:
                return resolved.splitlines()[-1]
            logger.debug(
                "Remote root candidate not usable",
                host=host.name,
                candidate=candidate,
                stderr=stderr.strip(),
            )

        if host.remote_root:
            raise HostDiscoveryError(
                f"failed to resolve configured remote root '{host.remote_root}' on host {host.name}",
                host.name,
            )
        raise HostDiscoveryError(
            f"remote_root not configured for host {host.name}, and default fallbacks "
            f"({', '.join(DEFAULT_STACK_ROOTS)}) could not be resolved",
            host.name,
        )

    async def search_remote(self, host: SSHHostConfig) -> AsyncIterator[Stack]:
        root = await self.resolve_remote_root(host)
        command = REMOTE_FIND_TEMPLATE.format(root=shlex.quote(root))
        target = HostTarget.remote(host)

        async for line in self.ssh_pool.stream_command(
            host, command, description=f"stack search on {host.name}"
        ):
            path = line.text.strip()
            if line.is_error or not path:
                continue
            relative = posixpath.relpath(path, root)
            if relative in (".", "/") or relative.startswith(".."):
                continue
            yield Stack(name=posixpath.basename(path), host=target, path=path, root=root)
