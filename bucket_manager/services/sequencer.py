"""
Command Sequencer Service

Executes one command step at a time, locally or over SSH, relaying output
line by line. The controller drives a sequence by running its steps in order.

A step that has started cannot be cancelled; only the next step can be
withheld by not running it.
"""

from collections.abc import AsyncIterator

import structlog

from ..core.ssh_pool import SSHConnectionPool
from ..core.subprocess_manager import SubprocessManager
from ..models.commands import CommandStep, render_remote_command
from ..models.events import EventSink, OutputLine, StepFinished

logger = structlog.get_logger()


class CommandSequencer:
    """Runs command steps and reports their output and outcome."""

    def __init__(self, ssh_pool: SSHConnectionPool, subprocess_manager: SubprocessManager):
        self.ssh_pool = ssh_pool
        self.subprocess_manager = subprocess_manager

    async def stream(self, step: CommandStep) -> AsyncIterator[OutputLine]:
        """Yield the step's output lines in the order they are produced.

        Raises:
            CommandError: On non-zero exit or when the process cannot be started
            SSHConnectionError: When the remote transport fails
        """
        if step.target.is_remote:
            lines = self.ssh_pool.stream_command(
                step.target.connection, render_remote_command(step), description=step.description
            )
        else:
            # Host-scoped steps run in the current directory
            lines = self.subprocess_manager.stream_command(
                step.argv, cwd=step.workdir, description=step.description
            )
        async for line in lines:
            yield line

    async def run(self, step: CommandStep, emit: EventSink) -> None:
        """Post every output line, then exactly one ``StepFinished``."""
        logger.info(
            "Running command step",
            step=step.name,
            target=step.target.server_name,
            workdir=step.workdir,
        )
        try:
            async for line in self.stream(step):
                emit(line)
        except Exception as e:
            logger.warning("Command step failed", step=step.name, error=str(e))
            emit(StepFinished(error=e))
            return

        logger.info("Command step completed", step=step.name, target=step.target.server_name)
        emit(StepFinished())
