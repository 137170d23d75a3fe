"""Local subprocess management with line streaming and proper resource handling."""

import asyncio
import os
from collections.abc import AsyncIterator
from typing import Any

import structlog

from ..models.events import OutputLine
from .exceptions import CommandError

logger = structlog.get_logger()

KILL_TIMEOUT = 5  # Time to wait after SIGTERM before SIGKILL
STREAM_LIMIT = 1024 * 1024  # Longest single output line accepted


class SubprocessManager:
    """Runs local commands, tracking processes so they can be cleaned up."""

    def __init__(self):
        self._active_processes: set[asyncio.subprocess.Process] = set()

    async def _spawn(
        self, cmd: list[str], description: str, **kwargs: Any
    ) -> asyncio.subprocess.Process:
        logger.debug("Executing command", command=" ".join(cmd), cwd=kwargs.get("cwd"))
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
                **kwargs,
            )
        except OSError as e:
            raise CommandError(f"failed to start {description}: {e}") from e
        self._active_processes.add(process)
        return process

    async def _reap(self, process: asyncio.subprocess.Process) -> None:
        """Ensure the process is fully terminated and untracked."""
        self._active_processes.discard(process)
        if process.returncode is not None:
            return
        try:
            process.terminate()
            await asyncio.wait_for(process.wait(), timeout=KILL_TIMEOUT)
        except TimeoutError:
            logger.warning("Process did not terminate gracefully, sending SIGKILL", pid=process.pid)
            process.kill()
            await process.wait()
        except ProcessLookupError:
            # Process already terminated
            pass

    async def run_command(
        self,
        cmd: list[str],
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        description: str | None = None,
    ) -> "SubprocessResult":
        """Run a command to completion and capture its output.

        Non-zero exit codes are reported in the result, not raised.

        Raises:
            CommandError: If the process cannot be started
        """
        description = description or " ".join(cmd)
        process = await self._spawn(cmd, description, cwd=cwd, env=env or os.environ.copy())
        try:
            stdout_bytes, stderr_bytes = await process.communicate()
        finally:
            await self._reap(process)

        return SubprocessResult(
            returncode=process.returncode or 0,
            stdout=stdout_bytes.decode(errors="replace") if stdout_bytes else "",
            stderr=stderr_bytes.decode(errors="replace") if stderr_bytes else "",
            cmd=cmd,
        )

    async def stream_command(
        self,
        cmd: list[str],
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        description: str | None = None,
    ) -> AsyncIterator[OutputLine]:
        """Run a command, yielding stdout/stderr lines as they are produced.

        Lines from each stream keep the order the process wrote them in.

        Raises:
            CommandError: If the process cannot be started or exits non-zero,
                raised after the last line has been yielded
        """
        description = description or " ".join(cmd)
        process = await self._spawn(cmd, description, cwd=cwd, env=env or os.environ.copy())
        lines: asyncio.Queue[OutputLine | None] = asyncio.Queue()

        async def pump(stream: asyncio.StreamReader, is_error: bool) -> None:
            try:
                async for raw in stream:
                    text = raw.decode(errors="replace").rstrip("\r\n")
                    lines.put_nowait(OutputLine(text=text, is_error=is_error))
            finally:
                lines.put_nowait(None)

        readers = [
            asyncio.create_task(pump(process.stdout, False)),
            asyncio.create_task(pump(process.stderr, True)),
        ]
        try:
            open_streams = len(readers)
            while open_streams:
                line = await lines.get()
                if line is None:
                    open_streams -= 1
                    continue
                yield line

            returncode = await process.wait()
            # Surface reader failures (e.g. a line over STREAM_LIMIT)
            for outcome in await asyncio.gather(*readers, return_exceptions=True):
                if isinstance(outcome, Exception):
                    raise CommandError(
                        f"failed reading output of {description}: {outcome}"
                    ) from outcome
        finally:
            for reader in readers:
                reader.cancel()
            await self._reap(process)

        if returncode != 0:
            raise CommandError(f"{description} exited with status {returncode}", returncode)

    async def cleanup_all(self) -> None:
        """Terminate every process still tracked."""
        processes = list(self._active_processes)
        if not processes:
            return

        logger.info("Cleaning up active processes", count=len(processes))
        await asyncio.gather(*(self._reap(process) for process in processes))


class SubprocessResult:
    """Result of a subprocess execution."""

    def __init__(self, returncode: int, stdout: str, stderr: str, cmd: list[str]):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.cmd = cmd

    @property
    def success(self) -> bool:
        """Check if the command succeeded."""
        return self.returncode == 0
