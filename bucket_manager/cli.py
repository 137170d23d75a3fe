"""Command line entry point for Bucket Manager.

Every command builds a controller, submits requests to it and drains its
event queue until the work is done; streamed command output is printed as it
arrives.
"""

import argparse
import asyncio
import sys
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from pathlib import Path

import structlog
from dotenv import load_dotenv
from pydantic import ValidationError

from . import __version__
from .constants import LOCAL_SERVER_NAME, SUPPORTED_RUNTIMES
from .controller import Controller, SequencePhase
from .core.config_loader import BucketManagerConfig, load_config_async
from .core.exceptions import BucketManagerError
from .core.logging_config import setup_logging
from .core.settings import BucketManagerSettings
from .core.ssh_pool import SSHConnectionPool
from .core.subprocess_manager import SubprocessManager
from .models.commands import SEQUENCE_BUILDERS, CommandStep, build_sequence, prune_host_step
from .models.events import (
    AddHost,
    EditHost,
    Event,
    ImportHosts,
    LoadHosts,
    OutputLine,
    ParseImport,
    RemoveHost,
    RunSequence,
    StartDiscovery,
    StepFinished,
)
from .models.host import SSHHostConfig
from .models.stack import HostTarget, Stack, StackStatus
from .services.discovery import DiscoveryEngine
from .services.registry import HostRegistry
from .services.sequencer import CommandSequencer
from .services.status import StatusPoller
from .utils import format_host_address

logger = structlog.get_logger()

HOST_CHANGE_VERBS = {"add": "added", "edit": "updated", "remove": "removed"}


# --- Stack selection ---


def find_stack(stacks: Iterable[Stack], identifier: str) -> Stack:
    """Resolve ``name`` or ``server:name`` to one discovered stack.

    A bare name that matches several stacks resolves to the single local
    match when there is one.

    Raises:
        BucketManagerError: If nothing matches or the name is ambiguous
    """
    identifier = identifier.strip()
    server, separator, name = identifier.partition(":")
    if separator:
        server, name = server.strip(), name.strip()
        if not server or not name:
            raise BucketManagerError(
                f"invalid identifier format: '{identifier}'. Use 'stack' or 'remote:stack'"
            )
        for stack in stacks:
            if stack.server_name == server and stack.name == name:
                return stack
        raise BucketManagerError(f"stack '{server}:{name}' not found")

    matches = [stack for stack in stacks if stack.name == identifier]
    if len(matches) == 1:
        return matches[0]
    if not matches:
        raise BucketManagerError(f"stack '{identifier}' not found")

    local_matches = [stack for stack in matches if not stack.is_remote]
    if len(local_matches) == 1:
        return local_matches[0]
    candidates = ", ".join(stack.identifier for stack in matches)
    raise BucketManagerError(
        f"stack name '{identifier}' is ambiguous, use one of: {candidates}"
    )


def select_stacks(stacks: list[Stack], identifiers: list[str]) -> list[Stack]:
    """Stacks for the given identifiers, in argument order and without repeats.

    ``server:`` selects every stack on that server.
    """
    selected: dict[str, Stack] = {}
    for identifier in identifiers:
        if identifier.endswith(":") and identifier.count(":") == 1:
            server = identifier[:-1].strip()
            on_server = [stack for stack in stacks if stack.server_name == server]
            if not on_server:
                raise BucketManagerError(f"no stacks found on '{server}'")
            for stack in on_server:
                selected.setdefault(stack.identifier, stack)
            continue
        stack = find_stack(stacks, identifier)
        selected.setdefault(stack.identifier, stack)
    return list(selected.values())


# --- Output ---


def print_output_line(event: Event) -> None:
    match event:
        case OutputLine(text=text, is_error=True):
            print(text, file=sys.stderr, flush=True)
        case OutputLine(text=text):
            print(text, flush=True)


def print_errors(errors: Iterable[Exception]) -> None:
    for error in errors:
        print(f"Error: {error}", file=sys.stderr)


class StepReporter:
    """Prints step banners around the streamed output of a sequence."""

    def __init__(self, controller: Controller):
        self.controller = controller
        self._announced: CommandStep | None = None

    def __call__(self, event: Event) -> None:
        step = self.controller.state.current_step
        if step is not None and step is not self._announced:
            self._announced = step
            print(f"\n--- Starting Step: {step.description} ---", flush=True)
        if isinstance(event, StepFinished) and step is not None:
            if event.error is None:
                print(f"--- Step '{step.name}' Succeeded ---", flush=True)
            else:
                print(f"--- STEP FAILED: {event.error} ---", file=sys.stderr, flush=True)
        print_output_line(event)


# --- Application wiring ---


@asynccontextmanager
async def open_controller(
    settings: BucketManagerSettings, runtime: str, **options
) -> AsyncIterator[Controller]:
    ssh_pool = SSHConnectionPool(connect_timeout=settings.ssh_connect_timeout)
    subprocess_manager = SubprocessManager()
    registry = HostRegistry(settings.config_path)
    controller = Controller(
        registry=registry,
        discovery=DiscoveryEngine(
            registry, ssh_pool, max_concurrent_discoveries=settings.max_concurrent_discoveries
        ),
        poller=StatusPoller(
            ssh_pool,
            subprocess_manager,
            runtime=runtime,
            max_concurrent_status_checks=settings.max_concurrent_status_checks,
            gate_timeout=settings.status_gate_timeout,
        ),
        sequencer=CommandSequencer(ssh_pool, subprocess_manager),
        **options,
    )
    try:
        yield controller
    finally:
        await controller.shutdown()
        await subprocess_manager.cleanup_all()
        await ssh_pool.close_all()


async def discover(controller: Controller) -> bool:
    """Run one discovery; returns False when nothing usable was found."""
    controller.submit(StartDiscovery())
    await controller.run_until_idle()
    state = controller.state
    if state.discovery_errors:
        print("Errors during stack discovery:", file=sys.stderr)
        print_errors(state.discovery_errors)
    if not state.stacks:
        print("No compose stacks found locally or on configured remote hosts.")
        return False
    return True


async def run_sequence(controller: Controller, steps: list[CommandStep], stacks: list[Stack]) -> int:
    controller.subscribe(StepReporter(controller))
    if not controller.submit(RunSequence(steps=tuple(steps), stacks=tuple(stacks))):
        print_errors([controller.state.last_error])
        return 1
    await controller.run_until_idle()

    if controller.state.phase is SequencePhase.FAILED:
        return 1
    print("\n--- Action Sequence Completed Successfully ---")
    for stack in stacks:
        info = controller.state.statuses.get(stack.identifier)
        if info is not None:
            print(f"{stack.identifier}: {info.overall_status.value}")
    return 0


# --- Commands ---


async def cmd_list(args, settings: BucketManagerSettings, config: BucketManagerConfig) -> int:
    async with open_controller(settings, config.runtime) as controller:
        found = await discover(controller)
        for stack in sorted(controller.state.stacks, key=lambda stack: stack.identifier):
            info = controller.state.statuses.get(stack.identifier)
            status = info.overall_status.value if info else StackStatus.UNKNOWN.value
            print(f"{stack.identifier:<40} {status:<8} {stack.path}")
        return 0 if found or not controller.state.discovery_errors else 1


async def cmd_status(args, settings: BucketManagerSettings, config: BucketManagerConfig) -> int:
    async with open_controller(settings, config.runtime) as controller:
        if not await discover(controller):
            return 1
        state = controller.state
        stacks = select_stacks(state.stacks, args.stacks) if args.stacks else state.stacks

        failed = False
        for stack in sorted(stacks, key=lambda stack: stack.identifier):
            info = state.statuses.get(stack.identifier)
            if info is None:
                print(f"{stack.identifier}: {StackStatus.UNKNOWN.value}")
                continue
            print(f"{stack.identifier}: {info.overall_status.value}")
            if info.error is not None:
                failed = True
                print(f"  error: {info.error}", file=sys.stderr)
            for container in info.containers:
                print(f"  {container.service or '-':<20} {container.name:<40} {container.status}")
        return 1 if failed else 0


async def cmd_stack_action(
    args, settings: BucketManagerSettings, config: BucketManagerConfig
) -> int:
    async with open_controller(settings, config.runtime, auto_poll=False) as controller:
        if not await discover(controller):
            return 1
        stacks = select_stacks(controller.state.stacks, args.stacks)
        steps = build_sequence(args.action, stacks, config.runtime)
        return await run_sequence(controller, steps, stacks)


async def cmd_prune(args, settings: BucketManagerSettings, config: BucketManagerConfig) -> int:
    hosts = {host.name: host for host in config.enabled_hosts}
    names = args.hosts or [LOCAL_SERVER_NAME, *hosts]

    targets: list[HostTarget] = []
    for name in dict.fromkeys(names):
        if name == LOCAL_SERVER_NAME:
            targets.append(HostTarget.local())
        elif name in hosts:
            targets.append(HostTarget.remote(hosts[name]))
        else:
            raise BucketManagerError(f"host '{name}' not found or disabled")

    steps = [prune_host_step(target, config.runtime) for target in targets]
    async with open_controller(settings, config.runtime, auto_poll=False) as controller:
        return await run_sequence(controller, steps, [])


async def cmd_hosts(args, settings: BucketManagerSettings, config: BucketManagerConfig) -> int:
    async with open_controller(settings, config.runtime, rediscover_on_change=False) as controller:
        state = controller.state
        controller.submit(LoadHosts())
        await controller.run_until_idle()
        if state.last_error is not None:
            print_errors([state.last_error])
            return 1

        match args.hosts_command:
            case "list":
                if not state.hosts:
                    print("No SSH hosts configured.")
                for host in state.hosts:
                    address = format_host_address(host.user, host.hostname, host.effective_port)
                    flags = " (disabled)" if host.disabled else ""
                    root = host.remote_root or "[default: ~/bucket or ~/compose-bucket]"
                    print(f"{host.name}{flags}: {address} auth={host.auth_method.value} root={root}")
                return 0
            case "add":
                request = AddHost(host=_host_from_args(args))
            case "edit":
                existing = next((host for host in state.hosts if host.name == args.name), None)
                if existing is None:
                    raise BucketManagerError(f"host '{args.name}' not found")
                request = EditHost(original_name=args.name, host=_host_from_args(args, existing))
            case "remove":
                request = RemoveHost(name=args.name)
            case "import":
                return await _import_hosts(controller, args)
            case _:
                raise BucketManagerError(f"unknown hosts command: {args.hosts_command}")

        if controller.submit(request):
            await controller.run_until_idle()
        if state.form_error is not None:
            print_errors([state.form_error])
            return 1
        print(f"Host '{args.name}' {HOST_CHANGE_VERBS[args.hosts_command]}.")
        return 0


async def _import_hosts(controller: Controller, args) -> int:
    state = controller.state
    controller.submit(ParseImport(path=args.ssh_config))
    await controller.run_until_idle()
    if state.last_error is not None:
        print_errors([state.last_error])
        return 1
    if state.import_error is not None:
        print(str(state.import_error))
        return 0

    available = {candidate.alias: candidate for candidate in state.importable_hosts}
    if not args.aliases:
        print("Importable hosts:")
        for candidate in available.values():
            address = format_host_address(candidate.user, candidate.hostname, candidate.port)
            print(f"  {candidate.alias}: {address}")
        print("Pass aliases (or --all) to import them.")
        return 0

    aliases = list(available) if args.aliases == ["all"] else args.aliases
    unknown = [alias for alias in aliases if alias not in available]
    if unknown:
        raise BucketManagerError(f"not importable: {', '.join(unknown)}")

    candidates = []
    for alias in aliases:
        try:
            candidates.append(available[alias].to_host_config(remote_root=args.remote_root))
        except ValidationError as e:
            logger.warning("Skipping invalid import candidate", alias=alias, error=str(e))
            print(f"Skipping '{alias}': {e}", file=sys.stderr)
    if not candidates:
        print("No valid hosts to import.", file=sys.stderr)
        return 1

    if controller.submit(ImportHosts(candidates=tuple(candidates))):
        await controller.run_until_idle()
    if state.import_error is not None:
        print_errors([state.import_error])
        return 1
    print(state.info_message)
    return 0


def _host_from_args(args, existing: SSHHostConfig | None = None) -> SSHHostConfig:
    """Build a host from CLI flags, starting from an existing entry when editing."""
    values = existing.model_dump() if existing else {"name": args.name}
    if getattr(args, "new_name", None):
        values["name"] = args.new_name
    for field_name in ("hostname", "user", "port", "remote_root"):
        value = getattr(args, field_name)
        if value is not None:
            values[field_name] = value
    if args.key_path is not None:
        values["key_path"], values["password"] = args.key_path, None
    if args.password is not None:
        values["password"], values["key_path"] = args.password, None
    if args.agent:
        values["key_path"] = values["password"] = None
    if args.disabled is not None:
        values["disabled"] = args.disabled
    return SSHHostConfig.model_validate(values)


async def cmd_config(args, settings: BucketManagerSettings, config: BucketManagerConfig) -> int:
    registry = HostRegistry(settings.config_path)
    match args.config_command:
        case "get-local-root":
            if config.local_root:
                print(config.local_root)
            else:
                print("Not set. Default search paths: ~/bucket, ~/compose-bucket")
        case "set-local-root":
            local_root = args.path
            if local_root:
                path = Path(local_root).expanduser()
                if not path.is_dir():
                    raise BucketManagerError(f"'{local_root}' is not a directory")
                local_root = str(path.resolve())
            await registry.set_local_root(local_root)
            if local_root:
                print(f"Local stack root set to: {local_root}")
            else:
                print("Local stack root reset to default search paths (~/bucket, ~/compose-bucket).")
        case "get-runtime":
            print(config.runtime)
        case "set-runtime":
            await registry.set_runtime(args.runtime)
            print(f"Container runtime set to: {args.runtime}")
    return 0


# --- Argument parsing ---


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bucket-manager", description="Manage compose stacks on local and remote hosts"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", help="Host registry file (overrides BUCKET_MANAGER_CONFIG)")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (overrides LOG_LEVEL)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    list_parser = commands.add_parser("list", help="List discovered compose stacks")
    list_parser.set_defaults(handler=cmd_list)

    status_parser = commands.add_parser("status", help="Show container status of stacks")
    status_parser.add_argument("stacks", nargs="*", help="stack, server:stack or server:")
    status_parser.set_defaults(handler=cmd_status)

    for action in SEQUENCE_BUILDERS:
        action_parser = commands.add_parser(action, help=f"Run the {action} sequence on stacks")
        action_parser.add_argument("stacks", nargs="+", help="stack, server:stack or server:")
        action_parser.set_defaults(handler=cmd_stack_action, action=action)

    prune_parser = commands.add_parser("prune", help="Prune unused runtime resources on hosts")
    prune_parser.add_argument(
        "hosts", nargs="*", help="'local' and/or host names (default: local and all hosts)"
    )
    prune_parser.set_defaults(handler=cmd_prune)

    hosts_parser = commands.add_parser("hosts", help="Manage SSH hosts")
    hosts_commands = hosts_parser.add_subparsers(dest="hosts_command", required=True)
    hosts_commands.add_parser("list", help="List configured SSH hosts")
    for name, help_text in (("add", "Add an SSH host"), ("edit", "Edit an SSH host")):
        host_parser = hosts_commands.add_parser(name, help=help_text)
        host_parser.add_argument("name")
        if name == "edit":
            host_parser.add_argument("--new-name", dest="new_name")
        host_parser.add_argument("--hostname", required=name == "add")
        host_parser.add_argument("--user", required=name == "add")
        host_parser.add_argument("--port", type=int)
        host_parser.add_argument("--remote-root", dest="remote_root")
        auth = host_parser.add_mutually_exclusive_group()
        auth.add_argument("--key-path", dest="key_path")
        auth.add_argument("--password")
        auth.add_argument("--agent", action="store_true", help="Authenticate with the SSH agent")
        toggle = host_parser.add_mutually_exclusive_group()
        toggle.add_argument("--disable", dest="disabled", action="store_true", default=None)
        toggle.add_argument("--enable", dest="disabled", action="store_false", default=None)
    remove_parser = hosts_commands.add_parser("remove", help="Remove an SSH host")
    remove_parser.add_argument("name")
    import_parser = hosts_commands.add_parser("import", help="Import hosts from ~/.ssh/config")
    import_parser.add_argument("aliases", nargs="*", help="Aliases to import, or 'all'")
    import_parser.add_argument("--ssh-config", dest="ssh_config", help="SSH config file to read")
    import_parser.add_argument("--remote-root", dest="remote_root")
    hosts_parser.set_defaults(handler=cmd_hosts)

    config_parser = commands.add_parser("config", help="Show or change settings")
    config_commands = config_parser.add_subparsers(dest="config_command", required=True)
    config_commands.add_parser("get-local-root", help="Show the local stack root")
    set_root = config_commands.add_parser("set-local-root", help="Set the local stack root")
    set_root.add_argument("path", nargs="?", default="", help="Directory (empty to reset)")
    config_commands.add_parser("get-runtime", help="Show the container runtime")
    set_runtime = config_commands.add_parser("set-runtime", help="Set the container runtime")
    set_runtime.add_argument("runtime", choices=SUPPORTED_RUNTIMES)
    config_parser.set_defaults(handler=cmd_config)

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    return build_parser().parse_args(argv)


async def run(args: argparse.Namespace, settings: BucketManagerSettings) -> int:
    try:
        config = await load_config_async(settings.config_path)
        return await args.handler(args, settings, config)
    except (BucketManagerError, ValidationError) as e:
        logger.debug("Command failed", command=args.command, error=str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 1


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    load_dotenv()
    args = parse_args(argv)

    try:
        settings = BucketManagerSettings()
    except ValidationError as e:
        print(f"Invalid settings: {e}", file=sys.stderr)
        sys.exit(1)
    if args.config:
        settings = settings.model_copy(update={"config_path": Path(args.config).expanduser()})

    log_level = args.log_level or settings.log_level
    try:
        setup_logging(log_dir=settings.log_dir, log_level=log_level)
    except OSError as e:
        print(f"Warning: file logging unavailable ({e}), using console-only logging", file=sys.stderr)
        setup_logging(log_dir=None, log_level=log_level)

    try:
        exit_code = asyncio.run(run(args, settings))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        exit_code = 130
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
