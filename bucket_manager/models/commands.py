"""Command steps and the sequences built from them.

Sequences are plain ordered lists of `CommandStep`, built deterministically
from a stack or host target. Nothing here performs I/O.
"""

import shlex
from collections.abc import Callable, Iterable
from enum import Enum

from pydantic import BaseModel, ConfigDict

from ..constants import DEFAULT_RUNTIME
from ..utils import quote_remote_path
from .stack import HostTarget, Stack


class StepScope(Enum):
    STACK = "stack"
    HOST = "host"


class CommandStep(BaseModel):
    """One named shell operation, run in a stack directory or on a host."""

    model_config = ConfigDict(frozen=True)

    name: str
    command: str
    args: tuple[str, ...] = ()
    target: HostTarget
    workdir: str | None = None  # None for host-scoped steps
    scope: StepScope = StepScope.STACK
    stack: Stack | None = None

    @property
    def description(self) -> str:
        if self.scope is StepScope.HOST:
            return f"step '{self.name}' for host {self.target.server_name}"
        subject = self.stack.identifier if self.stack else self.workdir
        return f"step '{self.name}' for stack {subject}"

    @property
    def argv(self) -> list[str]:
        return [self.command, *self.args]


def _stack_step(stack: Stack, name: str, runtime: str, *args: str) -> CommandStep:
    return CommandStep(
        name=name,
        command=runtime,
        args=args,
        target=stack.host,
        workdir=stack.path,
        scope=StepScope.STACK,
        stack=stack,
    )


def pull_step(stack: Stack, runtime: str = DEFAULT_RUNTIME) -> CommandStep:
    return _stack_step(stack, "Pull Images", runtime, "compose", "pull")


def up_step(stack: Stack, runtime: str = DEFAULT_RUNTIME) -> CommandStep:
    return _stack_step(stack, "Start Containers", runtime, "compose", "up", "-d")


def down_step(stack: Stack, runtime: str = DEFAULT_RUNTIME) -> CommandStep:
    return _stack_step(stack, "Stop Containers", runtime, "compose", "down")


def up_sequence(stack: Stack, runtime: str = DEFAULT_RUNTIME) -> list[CommandStep]:
    return [pull_step(stack, runtime), up_step(stack, runtime)]


def down_sequence(stack: Stack, runtime: str = DEFAULT_RUNTIME) -> list[CommandStep]:
    return [down_step(stack, runtime)]


def pull_sequence(stack: Stack, runtime: str = DEFAULT_RUNTIME) -> list[CommandStep]:
    return [pull_step(stack, runtime)]


def refresh_sequence(stack: Stack, runtime: str = DEFAULT_RUNTIME) -> list[CommandStep]:
    """Pull, recreate, and (for local stacks only) prune the local system."""
    steps = [pull_step(stack, runtime), down_step(stack, runtime), up_step(stack, runtime)]
    if not stack.is_remote:
        steps.append(
            _stack_step(stack, "Prune Local System", runtime, "system", "prune", "-af")
        )
    return steps


def prune_host_step(target: HostTarget, runtime: str = DEFAULT_RUNTIME) -> CommandStep:
    """Host-scoped prune of unused images, containers and networks."""
    return CommandStep(
        name="Prune System",
        command=runtime,
        args=("system", "prune", "-af"),
        target=target,
        scope=StepScope.HOST,
    )


SEQUENCE_BUILDERS: dict[str, Callable[[Stack, str], list[CommandStep]]] = {
    "up": up_sequence,
    "down": down_sequence,
    "refresh": refresh_sequence,
    "pull": pull_sequence,
}


def build_sequence(
    action: str, stacks: Iterable[Stack], runtime: str = DEFAULT_RUNTIME
) -> list[CommandStep]:
    """Concatenate the per-stack sequences for a selection, in selection order.

    Raises:
        ValueError: If the action is unknown
    """
    try:
        builder = SEQUENCE_BUILDERS[action]
    except KeyError:
        raise ValueError(f"unknown stack action: {action}") from None
    steps: list[CommandStep] = []
    for stack in stacks:
        steps.extend(builder(stack, runtime))
    return steps


def render_remote_command(step: CommandStep) -> str:
    """Shell string executed over SSH for a step."""
    parts = [step.command, *(shlex.quote(arg) for arg in step.args)]
    command = " ".join(parts)
    if step.workdir:
        return f"cd {quote_remote_path(step.workdir)} && {command}"
    return command
