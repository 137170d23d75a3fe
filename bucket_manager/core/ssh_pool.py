"""SSH connection pool for remote discovery, status polling and command steps."""

import asyncio
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog
from paramiko import AutoAddPolicy, Channel, SSHClient
from paramiko.ssh_exception import SSHException

from ..constants import SSH_KEEPALIVE_INTERVAL
from ..models.events import OutputLine
from ..models.host import AuthMethod, SSHHostConfig
from ..utils import format_host_address, resolve_path
from .exceptions import CommandError, SSHConnectionError

logger = structlog.get_logger()


@dataclass
class PooledConnection:
    """Wrapper for a pooled SSH connection."""

    client: SSHClient
    host: SSHHostConfig
    created_at: datetime = field(default_factory=datetime.now)
    last_used_at: datetime = field(default_factory=datetime.now)
    use_count: int = 0

    def is_alive(self) -> bool:
        """Check if the connection is still alive."""
        transport = self.client.get_transport()
        if transport is None or not transport.is_active():
            return False
        try:
            # Send a keepalive packet
            transport.send_ignore()
        except (SSHException, OSError, EOFError):
            return False
        return True

    def touch(self):
        """Update last used timestamp."""
        self.last_used_at = datetime.now()
        self.use_count += 1


class SSHConnectionPool:
    """One shared SSH client per registry host, reused across channels.

    Paramiko multiplexes channels over a single transport, so concurrent
    commands for the same host share a connection. A connection is replaced
    when it stops responding or when the host's registry entry changed.
    """

    def __init__(self, connect_timeout: int = 10, max_idle_time: int = 300):
        """Initialize SSH connection pool.

        Args:
            connect_timeout: TCP connect, banner and auth timeout in seconds
            max_idle_time: Idle time in seconds after which a connection is closed
        """
        self.connect_timeout = connect_timeout
        self.max_idle_time = max_idle_time

        self._connections: dict[str, PooledConnection] = {}
        self._lock = asyncio.Lock()
        self._host_locks: dict[str, asyncio.Lock] = {}  # Serializes connects per host
        self._stats = {
            "connections_created": 0,
            "connections_reused": 0,
            "connections_closed": 0,
            "connection_errors": 0,
        }

    def _connect_kwargs(self, host: SSHHostConfig) -> dict[str, Any]:
        connect_kwargs: dict[str, Any] = {
            "hostname": host.hostname,
            "port": host.effective_port,
            "username": host.user,
            "timeout": self.connect_timeout,
            "banner_timeout": self.connect_timeout,
            "auth_timeout": self.connect_timeout,
            "look_for_keys": False,
        }

        # Add authentication parameters
        match host.auth_method:
            case AuthMethod.KEY:
                connect_kwargs["key_filename"] = str(resolve_path(host.key_path))
                connect_kwargs["allow_agent"] = False
            case AuthMethod.PASSWORD:
                connect_kwargs["password"] = host.password
                connect_kwargs["allow_agent"] = False
            case AuthMethod.AGENT:
                connect_kwargs["allow_agent"] = True
        return connect_kwargs

    async def _create_connection(self, host: SSHHostConfig) -> SSHClient:
        """Create a new SSH connection to the host."""
        client = SSHClient()
        client.load_system_host_keys()
        client.set_missing_host_key_policy(AutoAddPolicy())
        address = format_host_address(host.user, host.hostname, host.effective_port)

        try:
            # Blocking connect runs in a worker thread
            await asyncio.to_thread(client.connect, **self._connect_kwargs(host))
        except (SSHException, OSError, EOFError, ValueError) as e:
            # ValueError covers IDNA failures for malformed hostnames
            self._stats["connection_errors"] += 1
            client.close()
            logger.warning("SSH connection failed", host=host.name, address=address, error=str(e))
            raise SSHConnectionError(f"failed to connect to {host.name} ({address}): {e}") from e

        # Configure keepalive
        transport = client.get_transport()
        if transport:
            transport.set_keepalive(SSH_KEEPALIVE_INTERVAL)

        self._stats["connections_created"] += 1
        logger.debug("Created new SSH connection", host=host.name, address=address)
        return client

    async def _get_or_create_connection(self, host: SSHHostConfig) -> PooledConnection:
        conn = self._connections.get(host.name)
        if conn is not None:
            idle_time = (datetime.now() - conn.last_used_at).total_seconds()
            if conn.host == host and idle_time < self.max_idle_time and conn.is_alive():
                conn.touch()
                self._stats["connections_reused"] += 1
                return conn
            # Stale, expired, or the host definition changed
            self._close_connection(self._connections.pop(host.name))

        client = await self._create_connection(host)
        conn = PooledConnection(client=client, host=host)
        conn.touch()
        self._connections[host.name] = conn
        return conn

    def _close_connection(self, conn: PooledConnection):
        conn.client.close()
        self._stats["connections_closed"] += 1
        logger.debug("Closed SSH connection", host=conn.host.name, use_count=conn.use_count)

    @asynccontextmanager
    async def get_connection(self, host: SSHHostConfig) -> AsyncGenerator[SSHClient, None]:
        """Get an SSH client for the host from the pool.

        Raises:
            SSHConnectionError: If a new connection cannot be established
        """
        host_lock = self._host_locks.setdefault(host.name, asyncio.Lock())
        async with host_lock:
            conn = await self._get_or_create_connection(host)
        yield conn.client

    async def _open_channel(self, host: SSHHostConfig, command: str) -> Channel:
        async with self.get_connection(host) as client:
            transport = client.get_transport()
            if transport is None:
                raise SSHConnectionError(f"connection to {host.name} is not open")
            try:
                channel = await asyncio.to_thread(transport.open_session)
                await asyncio.to_thread(channel.exec_command, command)
            except (SSHException, OSError, EOFError) as e:
                raise SSHConnectionError(f"failed to start command on {host.name}: {e}") from e
        return channel

    async def execute_command(
        self, host: SSHHostConfig, command: str, timeout: int | None = None
    ) -> tuple[int, str, str]:
        """Execute a command on a remote host using a pooled connection.

        Args:
            host: Registry entry of the host
            command: Shell command line
            timeout: Channel read timeout in seconds

        Returns:
            Tuple of (exit_code, stdout, stderr)

        Raises:
            SSHConnectionError: If the connection or channel fails
        """
        channel = await self._open_channel(host, command)

        channel.settimeout(timeout)
        stdout_file = channel.makefile("rb")
        stderr_file = channel.makefile_stderr("rb")

        try:
            # Both streams drain together so a full stderr window cannot stall stdout
            stdout, stderr = await asyncio.gather(
                asyncio.to_thread(stdout_file.read), asyncio.to_thread(stderr_file.read)
            )
            exit_code = await asyncio.to_thread(channel.recv_exit_status)
        except (SSHException, OSError, EOFError) as e:
            logger.error(
                "Failed to execute SSH command", host=host.name, command=command[:100], error=str(e)
            )
            raise SSHConnectionError(f"command execution on {host.name} failed: {e}") from e
        finally:
            channel.close()

        result = (
            exit_code,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

        logger.debug(
            "Executed SSH command", host=host.name, command=command[:100], exit_code=result[0]
        )
        return result

    async def stream_command(
        self, host: SSHHostConfig, command: str, description: str | None = None
    ) -> AsyncIterator[OutputLine]:
        """Run a remote command, yielding stdout/stderr lines as they arrive.

        Two reader threads push lines onto the event loop in arrival order.

        Raises:
            SSHConnectionError: If the connection or channel fails
            CommandError: If the command exits non-zero, raised after the
                last line has been yielded
        """
        description = description or command
        channel = await self._open_channel(host, command)
        loop = asyncio.get_running_loop()
        lines: asyncio.Queue[OutputLine | None] = asyncio.Queue()

        def pump(stream, is_error: bool) -> None:
            try:
                for raw in iter(stream.readline, b""):
                    text = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                    loop.call_soon_threadsafe(lines.put_nowait, OutputLine(text, is_error))
            finally:
                loop.call_soon_threadsafe(lines.put_nowait, None)

        readers = [
            loop.run_in_executor(None, pump, channel.makefile("rb"), False),
            loop.run_in_executor(None, pump, channel.makefile_stderr("rb"), True),
        ]
        try:
            open_streams = len(readers)
            while open_streams:
                line = await lines.get()
                if line is None:
                    open_streams -= 1
                    continue
                yield line

            exit_code = await asyncio.to_thread(channel.recv_exit_status)
            for outcome in await asyncio.gather(*readers, return_exceptions=True):
                if isinstance(outcome, Exception):
                    raise SSHConnectionError(
                        f"lost output of {description} on {host.name}: {outcome}"
                    ) from outcome
        finally:
            channel.close()

        logger.debug("Streamed SSH command", host=host.name, command=command[:100], exit_code=exit_code)
        if exit_code != 0:
            raise CommandError(f"{description} exited with status {exit_code}", exit_code)

    async def cleanup_idle_connections(self):
        """Close idle and dead connections."""
        async with self._lock:
            now = datetime.now()
            for name, conn in list(self._connections.items()):
                idle_time = (now - conn.last_used_at).total_seconds()
                if idle_time > self.max_idle_time or not conn.is_alive():
                    self._close_connection(self._connections.pop(name))

    async def close_all(self):
        """Close all connections."""
        async with self._lock:
            for conn in self._connections.values():
                self._close_connection(conn)
            self._connections.clear()

        logger.info("SSH connection pool closed", stats=self._stats)

    def get_stats(self) -> dict[str, Any]:
        """Get connection pool statistics."""
        return {**self._stats, "open_connections": len(self._connections)}
