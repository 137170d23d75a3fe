"""Core exceptions for Bucket Manager operations."""


class BucketManagerError(Exception):
    """Base exception for Bucket Manager operations."""


class CommandError(BucketManagerError):
    """Local or remote command execution failed."""

    def __init__(self, message: str, returncode: int | None = None):
        super().__init__(message)
        self.returncode = returncode


class ConfigurationError(BucketManagerError):
    """Configuration validation or loading failed."""


class SSHConnectionError(BucketManagerError):
    """SSH connection related errors."""


class HostDiscoveryError(BucketManagerError):
    """A discovery search for one host failed."""

    def __init__(self, message: str, server_name: str):
        super().__init__(message)
        self.server_name = server_name


class HostConflictError(BucketManagerError):
    """A host name is already used by another registry entry."""


class HostNotFoundError(BucketManagerError):
    """A host name is not present in the registry."""
