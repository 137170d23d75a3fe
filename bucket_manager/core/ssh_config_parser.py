"""SSH configuration file parser for importing host candidates."""

from pathlib import Path

import paramiko
import structlog
from paramiko.ssh_exception import ConfigParseError

from ..constants import DEFAULT_SSH_PORT
from ..models.host import PotentialHost
from .exceptions import ConfigurationError

logger = structlog.get_logger()


def default_ssh_config_path() -> Path:
    return Path.home() / ".ssh" / "config"


def _is_concrete_alias(alias: str) -> bool:
    """Skip wildcard and negated patterns, which are not real hosts."""
    return not any(char in alias for char in "*?!")


class SSHConfigParser:
    """Parser for SSH client configuration files."""

    def __init__(self, config_path: str | Path | None = None):
        """Initialize SSH config parser.

        Args:
            config_path: Path to SSH config file. Defaults to ~/.ssh/config
        """
        if config_path is None:
            config_path = default_ssh_config_path()
        self.config_path = Path(config_path).expanduser()

    def parse(self) -> paramiko.SSHConfig:
        """Parse the config file.

        Raises:
            FileNotFoundError: If the SSH config file doesn't exist
            ConfigurationError: If the file cannot be read or parsed
        """
        if not self.config_path.exists():
            raise FileNotFoundError(f"SSH config file not found: {self.config_path}")

        logger.info("Parsing SSH config file", path=str(self.config_path))
        try:
            return paramiko.SSHConfig.from_path(str(self.config_path))
        except (OSError, ConfigParseError) as e:
            raise ConfigurationError(f"Failed to parse ssh config file {self.config_path}: {e}") from e

    def _build_potential_host(self, ssh_config: paramiko.SSHConfig, alias: str) -> PotentialHost | None:
        options = ssh_config.lookup(alias)

        hostname = options.get("hostname") or alias
        user = options.get("user")
        if not user:
            logger.debug("Skipping SSH host without user", alias=alias, hostname=hostname)
            return None

        port = DEFAULT_SSH_PORT
        port_value = options.get("port")
        if port_value:
            try:
                port = int(port_value)
            except ValueError:
                logger.debug(
                    "Invalid port value, using default", alias=alias, port_value=port_value
                )

        key_path = None
        identity_files = options.get("identityfile") or []
        if identity_files:
            # Expand ~ in the first identity file
            key_path = str(Path(identity_files[0]).expanduser())

        return PotentialHost(
            alias=alias, hostname=hostname, user=user, port=port, key_path=key_path
        )

    def get_importable_hosts(self) -> list[PotentialHost]:
        """Get host candidates that can be imported.

        A missing config file is not an error; it yields no candidates.

        Returns:
            Candidates sorted by alias for consistent ordering
        """
        try:
            ssh_config = self.parse()
        except FileNotFoundError:
            logger.info("SSH config file not found, no hosts to import", path=str(self.config_path))
            return []

        importable: list[PotentialHost] = []
        skipped = 0
        for alias in ssh_config.get_hostnames():
            if not _is_concrete_alias(alias):
                skipped += 1
                continue
            host = self._build_potential_host(ssh_config, alias)
            if host is None:
                skipped += 1
                continue
            importable.append(host)

        importable.sort(key=lambda host: host.alias.lower())

        logger.info(
            "SSH config parsing completed",
            path=str(self.config_path),
            importable=len(importable),
            skipped=skipped,
        )
        return importable
