"""
Stack Status Service

Runs `compose ps` for a stack (locally or over SSH) behind a process-wide
admission gate and folds the per-container states into one stack status.
"""

import asyncio
import json
import shlex
from pathlib import Path
from typing import Any

import structlog

from ..constants import (
    COMPOSE_PS_ARGS,
    DEFAULT_RUNTIME,
    MAX_CONCURRENT_STATUS_CHECKS,
    STATUS_DOWN_MARKERS,
)
from ..core.exceptions import BucketManagerError, CommandError, SSHConnectionError
from ..core.ssh_pool import SSHConnectionPool
from ..core.subprocess_manager import SubprocessManager
from ..models.events import EventSink, StatusLoaded
from ..models.stack import ContainerState, Stack, StackRuntimeInfo, StackStatus
from ..utils import quote_remote_path

logger = structlog.get_logger()


def _container_from_record(record: dict[str, Any]) -> ContainerState:
    # docker compose reports Name/Service; podman reports Names and a label
    name = record.get("Name")
    if not name and record.get("Names"):
        names = record["Names"]
        name = names[0] if isinstance(names, list) else names
    service = record.get("Service")
    if not service and isinstance(record.get("Labels"), dict):
        service = record["Labels"].get("com.docker.compose.service")
    status = record.get("Status") or record.get("State") or ""
    return ContainerState(service=str(service or ""), name=str(name or ""), status=str(status))


def parse_compose_ps(output: str) -> list[ContainerState]:
    """Parse `compose ps --format json` output.

    Accepts one JSON object per line or a single JSON array. Output that
    cannot be decoded but says no containers exist yields an empty list.

    Raises:
        ValueError: If the output cannot be decoded
    """
    text = output.strip()
    if not text:
        return []

    try:
        if text.startswith("["):
            records = json.loads(text)
        else:
            records = [json.loads(line) for line in text.splitlines() if line.strip()]
        if not all(isinstance(record, dict) for record in records):
            raise ValueError("expected JSON objects")
    except ValueError as e:
        lowered = text.lower()
        if any(marker in lowered for marker in STATUS_DOWN_MARKERS):
            return []
        raise ValueError(f"failed to decode container status JSON: {e}") from e

    return [_container_from_record(record) for record in records]


def aggregate_status(containers: list[ContainerState] | tuple[ContainerState, ...]) -> StackStatus:
    """No containers or none running is DOWN, all running is UP, otherwise PARTIAL."""
    if not containers:
        return StackStatus.DOWN
    running = sum(1 for container in containers if container.is_running)
    if running == len(containers):
        return StackStatus.UP
    if running:
        return StackStatus.PARTIAL
    return StackStatus.DOWN


def interpret_status(stack: Stack, exit_code: int, stdout: str) -> StackRuntimeInfo:
    """Classify the result of a completed `compose ps` run."""
    if exit_code != 0 or not stdout.strip():
        # Missing compose file, no containers, or an unknown project
        return StackRuntimeInfo(stack=stack, overall_status=StackStatus.DOWN)

    try:
        containers = parse_compose_ps(stdout)
    except ValueError as e:
        return StackRuntimeInfo(
            stack=stack,
            overall_status=StackStatus.ERROR,
            error=CommandError(f"status check for stack {stack.identifier}: {e}"),
        )

    return StackRuntimeInfo(
        stack=stack,
        overall_status=aggregate_status(containers),
        containers=tuple(containers),
    )


def _error_info(stack: Stack, error: Exception) -> StackRuntimeInfo:
    return StackRuntimeInfo(stack=stack, overall_status=StackStatus.ERROR, error=error)


class StatusPoller:
    """Status checks bounded by one admission gate for the whole process."""

    def __init__(
        self,
        ssh_pool: SSHConnectionPool,
        subprocess_manager: SubprocessManager,
        runtime: str = DEFAULT_RUNTIME,
        max_concurrent_status_checks: int = MAX_CONCURRENT_STATUS_CHECKS,
        gate_timeout: float | None = None,
    ):
        self.ssh_pool = ssh_pool
        self.subprocess_manager = subprocess_manager
        self.runtime = runtime
        self.gate_timeout = gate_timeout
        self._gate = asyncio.Semaphore(max_concurrent_status_checks)

    async def _acquire_slot(self) -> None:
        if self.gate_timeout is None:
            await self._gate.acquire()
        else:
            await asyncio.wait_for(self._gate.acquire(), timeout=self.gate_timeout)

    async def poll(self, stack: Stack) -> StackRuntimeInfo:
        """Status of one stack; failures are reported in the result, never raised."""
        try:
            await self._acquire_slot()
        except TimeoutError:
            logger.warning("Timed out waiting for status slot", stack=stack.identifier)
            return _error_info(
                stack,
                BucketManagerError(
                    f"timed out waiting for a status check slot for stack {stack.identifier}"
                ),
            )

        try:
            return await self.query(stack)
        except Exception as e:
            logger.exception("Status check raised unexpectedly", stack=stack.identifier)
            return _error_info(stack, e)
        finally:
            self._gate.release()

    async def request(self, stack: Stack, emit: EventSink) -> None:
        """Poll a stack and post the result as ``StatusLoaded``."""
        try:
            info = await self.poll(stack)
        except asyncio.CancelledError:
            emit(
                StatusLoaded(
                    identifier=stack.identifier,
                    info=_error_info(stack, BucketManagerError("status check cancelled")),
                )
            )
            raise
        emit(StatusLoaded(identifier=stack.identifier, info=info))

    async def query(self, stack: Stack) -> StackRuntimeInfo:
        """Run `compose ps` for the stack. Callers must hold a gate slot."""
        argv = [self.runtime, *COMPOSE_PS_ARGS]
        description = f"status check for stack {stack.identifier}"

        try:
            if stack.is_remote:
                command = f"cd {quote_remote_path(stack.path)} && {shlex.join(argv)}"
                exit_code, stdout, _ = await self.ssh_pool.execute_command(
                    stack.host.connection, command
                )
            else:
                if not Path(stack.path).is_dir():
                    return StackRuntimeInfo(stack=stack, overall_status=StackStatus.DOWN)
                result = await self.subprocess_manager.run_command(
                    argv, cwd=stack.path, description=description
                )
                exit_code, stdout = result.returncode, result.stdout
        except (CommandError, SSHConnectionError) as e:
            logger.warning("Status check failed", stack=stack.identifier, error=str(e))
            return _error_info(stack, e)

        info = interpret_status(stack, exit_code, stdout)
        logger.debug(
            "Status check completed",
            stack=stack.identifier,
            status=info.overall_status.value,
            containers=len(info.containers),
        )
        return info
