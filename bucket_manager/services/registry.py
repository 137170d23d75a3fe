"""
Host Registry Service

Name-uniqueness reconciliation for the persisted SSH host list, and the
file-backed registry that applies it to the YAML configuration.
"""

import asyncio
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

import structlog

from ..core.config_loader import BucketManagerConfig, load_config_async, save_config_async
from ..core.exceptions import HostConflictError, HostNotFoundError
from ..core.ssh_config_parser import SSHConfigParser
from ..models.events import EventSink, HostMutated, HostsLoaded, ImportParsed, ImportSaved
from ..models.host import PotentialHost, SSHHostConfig


@dataclass(frozen=True)
class ImportResult:
    """Outcome of merging a batch of candidates into a registry."""

    hosts: list[SSHHostConfig]
    imported_count: int
    skipped_count: int


def _find_index(hosts: Sequence[SSHHostConfig], name: str) -> int | None:
    for index, host in enumerate(hosts):
        if host.name == name:
            return index
    return None


def add_host(hosts: Sequence[SSHHostConfig], candidate: SSHHostConfig) -> list[SSHHostConfig]:
    """Return a new registry with ``candidate`` appended.

    Raises:
        HostConflictError: If the name is already registered
    """
    if _find_index(hosts, candidate.name) is not None:
        raise HostConflictError(f"host name '{candidate.name}' already exists")
    return [*hosts, candidate]


def edit_host(
    hosts: Sequence[SSHHostConfig], original_name: str, edited: SSHHostConfig
) -> list[SSHHostConfig]:
    """Return a new registry with the entry named ``original_name`` replaced.

    Renaming is allowed as long as the new name is not used by a different
    entry; keeping the same name always succeeds.

    Raises:
        HostNotFoundError: If ``original_name`` is not registered
        HostConflictError: If ``edited.name`` belongs to another entry
    """
    index = _find_index(hosts, original_name)
    if index is None:
        raise HostNotFoundError(f"host '{original_name}' not found")
    for other_index, host in enumerate(hosts):
        if other_index != index and host.name == edited.name:
            raise HostConflictError(f"host name '{edited.name}' already exists")

    updated = list(hosts)
    updated[index] = edited
    return updated


def remove_host(hosts: Sequence[SSHHostConfig], name: str) -> list[SSHHostConfig]:
    """Return a new registry without the entry named ``name``.

    Raises:
        HostNotFoundError: If the name is not registered
    """
    index = _find_index(hosts, name)
    if index is None:
        raise HostNotFoundError(f"host '{name}' not found")
    return [host for position, host in enumerate(hosts) if position != index]


def import_hosts(
    hosts: Sequence[SSHHostConfig], candidates: Iterable[SSHHostConfig]
) -> ImportResult:
    """Merge candidates in input order, skipping names that are already taken.

    A name counts as taken when it is registered or was imported earlier in
    the same batch. Conflicts never fail the batch.
    """
    taken = {host.name for host in hosts}
    merged = list(hosts)
    imported = skipped = 0
    for candidate in candidates:
        if candidate.name in taken:
            skipped += 1
            continue
        taken.add(candidate.name)
        merged.append(candidate)
        imported += 1
    return ImportResult(hosts=merged, imported_count=imported, skipped_count=skipped)


def filter_importable(
    hosts: Iterable[SSHHostConfig], potential_hosts: Iterable[PotentialHost]
) -> list[PotentialHost]:
    """Drop candidates whose alias is already a registered host name."""
    registered = {host.name for host in hosts}
    return [candidate for candidate in potential_hosts if candidate.alias not in registered]


class HostRegistry:
    """File-backed host registry.

    Every mutation is a whole-file read-modify-write. Mutations from this
    process are serialized; a concurrent writer in another process is
    silently overwritten.
    """

    def __init__(self, config_path: str | Path):
        self.config_path = Path(config_path)
        self._lock = asyncio.Lock()
        self.logger = structlog.get_logger()

    async def load_config(self) -> BucketManagerConfig:
        return await load_config_async(self.config_path)

    async def load(self) -> list[SSHHostConfig]:
        """All registered hosts, disabled ones included."""
        config = await self.load_config()
        return list(config.ssh_hosts)

    async def save(self, hosts: Sequence[SSHHostConfig]) -> None:
        """Replace the host list, keeping the other configuration keys."""
        async with self._lock:
            config = await self.load_config()
            await self._write(config, hosts)

    async def _write(self, config: BucketManagerConfig, hosts: Sequence[SSHHostConfig]) -> None:
        await save_config_async(config.model_copy(update={"ssh_hosts": list(hosts)}), self.config_path)

    async def add(self, host: SSHHostConfig) -> None:
        async with self._lock:
            config = await self.load_config()
            await self._write(config, add_host(config.ssh_hosts, host))
        self.logger.info("Host added", host=host.name, hostname=host.hostname)

    async def edit(self, original_name: str, host: SSHHostConfig) -> None:
        async with self._lock:
            config = await self.load_config()
            await self._write(config, edit_host(config.ssh_hosts, original_name, host))
        self.logger.info("Host updated", original_name=original_name, host=host.name)

    async def remove(self, name: str) -> None:
        async with self._lock:
            config = await self.load_config()
            await self._write(config, remove_host(config.ssh_hosts, name))
        self.logger.info("Host removed", host=name)

    async def import_hosts(self, candidates: Iterable[SSHHostConfig]) -> ImportResult:
        """Merge candidates into the registry; nothing is written when none is new."""
        candidates = list(candidates)
        async with self._lock:
            config = await self.load_config()
            result = import_hosts(config.ssh_hosts, candidates)
            if result.imported_count:
                await self._write(config, result.hosts)

        self.logger.info(
            "SSH config import completed",
            imported=result.imported_count,
            skipped=result.skipped_count,
        )
        return result

    async def set_local_root(self, local_root: str | None) -> None:
        async with self._lock:
            config = await self.load_config()
            updated = config.model_copy(update={"local_root": local_root or None})
            await save_config_async(updated, self.config_path)

    async def set_runtime(self, runtime: str) -> None:
        async with self._lock:
            config = await self.load_config()
            # Validate through the model so unsupported runtimes are rejected
            updated = BucketManagerConfig.model_validate({**config.model_dump(), "runtime": runtime})
            await save_config_async(updated, self.config_path)

    async def parse_import(self, ssh_config_path: str | Path | None = None) -> list[PotentialHost]:
        """Parse host candidates from an SSH client config file."""
        parser = SSHConfigParser(ssh_config_path)
        return await asyncio.to_thread(parser.get_importable_hosts)

    # Request handlers: run as controller workers and report through events

    async def load_request(self, emit: EventSink) -> None:
        try:
            hosts = await self.load()
        except Exception as e:
            self.logger.error("Failed to load hosts", path=str(self.config_path), error=str(e))
            emit(HostsLoaded(error=e))
            return
        emit(HostsLoaded(hosts=tuple(hosts)))

    async def add_request(self, host: SSHHostConfig, emit: EventSink) -> None:
        await self._mutation_request(self.add(host), emit)

    async def edit_request(self, original_name: str, host: SSHHostConfig, emit: EventSink) -> None:
        await self._mutation_request(self.edit(original_name, host), emit)

    async def remove_request(self, name: str, emit: EventSink) -> None:
        await self._mutation_request(self.remove(name), emit)

    async def _mutation_request(self, mutation, emit: EventSink) -> None:
        try:
            await mutation
        except Exception as e:
            self.logger.error("Host registry update failed", error=str(e))
            emit(HostMutated(error=e))
            return
        emit(HostMutated())

    async def parse_import_request(self, ssh_config_path: str | None, emit: EventSink) -> None:
        try:
            potential_hosts = await self.parse_import(ssh_config_path)
        except Exception as e:
            self.logger.error("Failed to parse SSH config", path=ssh_config_path, error=str(e))
            emit(ImportParsed(error=e))
            return
        emit(ImportParsed(potential_hosts=tuple(potential_hosts)))

    async def import_request(self, candidates: Iterable[SSHHostConfig], emit: EventSink) -> None:
        try:
            result = await self.import_hosts(candidates)
        except Exception as e:
            self.logger.error("Failed to import hosts", error=str(e))
            emit(ImportSaved(error=e))
            return
        emit(
            ImportSaved(
                imported_count=result.imported_count, skipped_count=result.skipped_count
            )
        )
