"""
Orchestration controller.

The controller is the single owner of orchestration state. Workers (discovery
searches, status polls, command steps, registry updates) run as independent
tasks and report back only by posting events onto the controller's queue,
which is drained one event at a time. ``handle`` is the reducer: it applies an
event to the state and returns follow-up requests without doing any I/O.
"""

import asyncio
from collections.abc import Coroutine
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from .core.exceptions import BucketManagerError
from .models.commands import CommandStep, StepScope
from .models.events import (
    AddHost,
    DiscoveryError,
    DiscoveryFinished,
    EditHost,
    Event,
    EventSink,
    HostMutated,
    HostsLoaded,
    ImportHosts,
    ImportParsed,
    ImportSaved,
    LoadHosts,
    OutputLine,
    ParseImport,
    PollStatus,
    RemoveHost,
    Request,
    RunSequence,
    RunStep,
    StackDiscovered,
    StartDiscovery,
    StatusLoaded,
    StepFinished,
)
from .models.host import PotentialHost, SSHHostConfig
from .models.stack import HostTarget, Stack, StackRuntimeInfo
from .services.discovery import DiscoveryEngine
from .services.registry import (
    HostRegistry,
    add_host,
    edit_host,
    filter_importable,
    remove_host,
)
from .services.sequencer import CommandSequencer
from .services.status import StatusPoller

logger = structlog.get_logger()


class SequencePhase(Enum):
    IDLE = "idle"
    RUNNING = "running"
    FAILED = "failed"
    COMPLETED = "completed"


@dataclass
class ControllerState:
    """Everything the controller knows; only the controller mutates it."""

    # Discovery and status
    stacks: list[Stack] = field(default_factory=list)
    statuses: dict[str, StackRuntimeInfo] = field(default_factory=dict)
    loading: set[str] = field(default_factory=set)  # Identifiers with a poll in flight
    discovery_errors: list[Exception] = field(default_factory=list)
    is_discovering: bool = False
    loading_stacks: bool = False  # Waiting for the first stack of a run
    discovery_run: int = 0

    # Host registry
    hosts: list[SSHHostConfig] = field(default_factory=list)
    form_error: Exception | None = None
    importable_hosts: list[PotentialHost] = field(default_factory=list)
    import_error: Exception | None = None

    # Command sequence
    sequence: list[CommandStep] = field(default_factory=list)
    step_index: int = 0
    phase: SequencePhase = SequencePhase.IDLE
    output: list[OutputLine] = field(default_factory=list)
    sequence_stacks: list[Stack] = field(default_factory=list)
    sequence_target: HostTarget | None = None

    last_error: Exception | None = None
    info_message: str | None = None

    @property
    def current_step(self) -> CommandStep | None:
        if self.phase is SequencePhase.RUNNING and self.step_index < len(self.sequence):
            return self.sequence[self.step_index]
        return None


@dataclass(frozen=True)
class _WorkerDone:
    """Posted after a worker's last event so the queue knows it is finished."""


class Controller:
    """Single consumer of the event queue; dispatches requests to workers."""

    def __init__(
        self,
        registry: HostRegistry,
        discovery: DiscoveryEngine,
        poller: StatusPoller,
        sequencer: CommandSequencer,
        auto_poll: bool = True,
        rediscover_on_change: bool = True,
    ):
        """Wire the controller to its workers.

        Args:
            auto_poll: Poll the status of every newly discovered stack
            rediscover_on_change: Restart discovery after a successful host
                registry change
        """
        self.registry = registry
        self.discovery = discovery
        self.poller = poller
        self.sequencer = sequencer
        self.auto_poll = auto_poll
        self.rediscover_on_change = rediscover_on_change

        self.state = ControllerState()
        self._queue: asyncio.Queue[Event | _WorkerDone] = asyncio.Queue()
        self._workers: set[asyncio.Task] = set()
        self._in_flight = 0
        self._observers: list[EventSink] = []

    # --- Queue ---

    def post(self, event: Event) -> None:
        """Event sink handed to every worker."""
        self._queue.put_nowait(event)

    def subscribe(self, observer: EventSink) -> None:
        """Receive every event after it is dequeued, before it is applied."""
        self._observers.append(observer)

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def run_until_idle(self) -> None:
        """Drain events until no worker is running and the queue is empty."""
        while self._in_flight or not self._queue.empty():
            self._process(await self._queue.get())

    async def run_forever(self) -> None:
        while True:
            self._process(await self._queue.get())

    async def shutdown(self) -> None:
        """Cancel outstanding workers."""
        for task in list(self._workers):
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)

    def _process(self, event: Event | _WorkerDone) -> None:
        if isinstance(event, _WorkerDone):
            self._in_flight -= 1
            return
        for observer in self._observers:
            observer(event)
        for request in self.handle(event):
            self._start(request)

    def _spawn(self, work: Coroutine[Any, Any, None]) -> None:
        self._in_flight += 1
        task = asyncio.create_task(self._run_worker(work))
        self._workers.add(task)
        task.add_done_callback(self._workers.discard)

    async def _run_worker(self, work: Coroutine[Any, Any, None]) -> None:
        try:
            await work
        except Exception:
            logger.exception("Worker raised unexpectedly")
        finally:
            self._queue.put_nowait(_WorkerDone())

    # --- Requests ---

    def submit(self, request: Request) -> bool:
        """Validate and dispatch a request.

        Rejected requests record their error on the state and never reach a
        worker. Returns whether the request was dispatched.
        """
        if isinstance(request, PollStatus) and request.stack.identifier in self.state.loading:
            logger.debug("Status poll already in flight", stack=request.stack.identifier)
            return False

        try:
            self._validate(request)
        except BucketManagerError as e:
            logger.warning("Request rejected", request=type(request).__name__, error=str(e))
            self._reject(request, e)
            return False

        self._start(request)
        return True

    def _validate(self, request: Request) -> None:
        state = self.state
        match request:
            case AddHost(host=host):
                add_host(state.hosts, host)
            case EditHost(original_name=original_name, host=host):
                edit_host(state.hosts, original_name, host)
            case RemoveHost(name=name):
                remove_host(state.hosts, name)
            case RunSequence(steps=steps):
                if not steps:
                    raise BucketManagerError("no command steps to run")
                if state.phase is SequencePhase.RUNNING:
                    raise BucketManagerError("a command sequence is already running")
            case ImportHosts(candidates=candidates):
                if not candidates:
                    raise BucketManagerError("no hosts selected for import")

    def _reject(self, request: Request, error: Exception) -> None:
        match request:
            case AddHost() | EditHost() | RemoveHost():
                self.state.form_error = error
            case ImportHosts():
                self.state.import_error = error
            case _:
                self.state.last_error = error

    def _start(self, request: Request) -> None:
        state = self.state
        match request:
            case StartDiscovery():
                state.discovery_run += 1
                state.stacks = []
                state.statuses = {}
                state.loading = set()
                state.discovery_errors = []
                state.is_discovering = True
                state.loading_stacks = True
                self._spawn(self.discovery.discover(self.post, run_id=state.discovery_run))
            case PollStatus(stack=stack):
                state.loading.add(stack.identifier)
                self._spawn(self.poller.request(stack, self.post))
            case RunSequence(steps=steps, stacks=stacks):
                state.sequence = list(steps)
                state.step_index = 0
                state.phase = SequencePhase.RUNNING
                state.output = []
                state.sequence_stacks = list(stacks)
                targets = {step.target for step in steps}
                state.sequence_target = targets.pop() if len(targets) == 1 else None
                state.last_error = None
                self._start(RunStep(step=steps[0]))
            case RunStep(step=step):
                self._spawn(self.sequencer.run(step, self.post))
            case LoadHosts():
                self._spawn(self.registry.load_request(self.post))
            case AddHost(host=host):
                state.form_error = None
                self._spawn(self.registry.add_request(host, self.post))
            case EditHost(original_name=original_name, host=host):
                state.form_error = None
                self._spawn(self.registry.edit_request(original_name, host, self.post))
            case RemoveHost(name=name):
                state.form_error = None
                self._spawn(self.registry.remove_request(name, self.post))
            case ParseImport(path=path):
                state.importable_hosts = []
                state.import_error = None
                self._spawn(self.registry.parse_import_request(path, self.post))
            case ImportHosts(candidates=candidates):
                state.import_error = None
                self._spawn(self.registry.import_request(candidates, self.post))

    # --- Reducer ---

    def handle(self, event: Event) -> list[Request]:
        """Apply one event to the state and return the requests it triggers."""
        state = self.state
        match event:
            case StackDiscovered(stack=stack, run_id=run_id):
                if run_id != state.discovery_run:
                    return []
                state.loading_stacks = False
                if any(known.identifier == stack.identifier for known in state.stacks):
                    return []
                state.stacks.append(stack)
                if not self.auto_poll:
                    return []
                return self._poll_unless_known([stack])

            case DiscoveryError(error=error, run_id=run_id):
                if run_id != state.discovery_run:
                    return []
                state.discovery_errors.append(error)
                state.last_error = error
                return []

            case DiscoveryFinished(run_id=run_id):
                if run_id != state.discovery_run:
                    return []
                state.is_discovering = False
                state.loading_stacks = False
                if not state.stacks:
                    if state.discovery_errors:
                        state.last_error = BucketManagerError(
                            f"discovery finished with {len(state.discovery_errors)} errors, "
                            "no stacks found"
                        )
                    else:
                        state.last_error = BucketManagerError("no stacks found")
                elif state.discovery_errors:
                    state.last_error = BucketManagerError("discovery finished with errors")
                else:
                    state.last_error = None
                return []

            case StatusLoaded(identifier=identifier, info=info):
                state.loading.discard(identifier)
                state.statuses[identifier] = info
                return []

            case OutputLine():
                if state.phase is SequencePhase.RUNNING:
                    state.output.append(event)
                return []

            case StepFinished(error=error):
                return self._advance_sequence(error)

            case HostsLoaded(hosts=hosts, error=error):
                if error is not None:
                    state.last_error = error
                    return []
                state.hosts = list(hosts)
                return []

            case HostMutated(error=error):
                if error is not None:
                    state.form_error = error
                    return []
                state.form_error = None
                return self._after_registry_change()

            case ImportParsed(potential_hosts=potential_hosts, error=error):
                if error is not None:
                    state.last_error = error
                    return []
                state.importable_hosts = filter_importable(state.hosts, potential_hosts)
                if not state.importable_hosts:
                    state.import_error = BucketManagerError(
                        "no new importable hosts found in ssh config"
                    )
                return []

            case ImportSaved(imported_count=imported, skipped_count=skipped, error=error):
                state.importable_hosts = []
                if error is not None:
                    state.import_error = error
                    return []
                message = f"Import finished: {imported} host(s) added."
                if skipped:
                    message += f" Skipped {skipped} host(s) due to existing names."
                state.info_message = message
                return self._after_registry_change()

        return []

    def _after_registry_change(self) -> list[Request]:
        if self.rediscover_on_change:
            return [LoadHosts(), StartDiscovery()]
        return [LoadHosts()]

    def _advance_sequence(self, error: Exception | None) -> list[Request]:
        state = self.state
        if state.phase is not SequencePhase.RUNNING:
            return []
        if error is not None:
            state.phase = SequencePhase.FAILED
            state.last_error = error
            return []

        state.step_index += 1
        if state.step_index < len(state.sequence):
            return [RunStep(step=state.sequence[state.step_index])]

        state.phase = SequencePhase.COMPLETED
        return self._poll_unless_known(self._affected_stacks(), refresh=True)

    def _affected_stacks(self) -> list[Stack]:
        state = self.state
        affected: dict[str, Stack] = {stack.identifier: stack for stack in state.sequence_stacks}
        for step in state.sequence:
            if step.scope is StepScope.STACK and step.stack is not None:
                affected.setdefault(step.stack.identifier, step.stack)
            elif step.scope is StepScope.HOST:
                for stack in state.stacks:
                    if stack.server_name == step.target.server_name:
                        affected.setdefault(stack.identifier, stack)
        return list(affected.values())

    def _poll_unless_known(self, stacks: list[Stack], refresh: bool = False) -> list[Request]:
        """Polls for stacks not already loading (or, unless refreshing, loaded)."""
        requests: list[Request] = []
        for stack in stacks:
            identifier = stack.identifier
            if identifier in self.state.loading:
                continue
            if not refresh and identifier in self.state.statuses:
                continue
            self.state.loading.add(identifier)
            requests.append(PollStatus(stack=stack))
        return requests

    def dismiss_error(self) -> None:
        self.state.last_error = None
