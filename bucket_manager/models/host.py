"""Host-related data models."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..constants import DEFAULT_SSH_PORT, LOCAL_SERVER_NAME


class AuthMethod(Enum):
    """How a remote host authenticates."""

    KEY = "key"
    AGENT = "agent"
    PASSWORD = "password"


class SSHHostConfig(BaseModel):
    """A persisted remote host definition."""

    model_config = ConfigDict(frozen=True)

    name: str
    hostname: str
    user: str
    port: int = Field(default=0, ge=0, le=65535)  # 0 means the SSH default
    key_path: str | None = None
    password: str | None = None
    remote_root: str | None = None  # Directory searched for stacks
    disabled: bool = False

    @field_validator("name", "hostname", "user")
    @classmethod
    def _require_value(cls, value: str, info) -> str:
        value = value.strip()
        if not value:
            raise ValueError(f"{info.field_name} is required")
        return value

    @field_validator("name")
    @classmethod
    def _reject_reserved_name(cls, value: str) -> str:
        if value == LOCAL_SERVER_NAME:
            raise ValueError(f"host name '{LOCAL_SERVER_NAME}' is reserved")
        return value

    @field_validator("key_path", "password", "remote_root")
    @classmethod
    def _empty_to_none(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _single_auth_method(self) -> "SSHHostConfig":
        if self.key_path and self.password:
            raise ValueError("only one of key_path or password may be set")
        return self

    @property
    def auth_method(self) -> AuthMethod:
        """Authentication in effect: key file, password, or the SSH agent."""
        if self.key_path:
            return AuthMethod.KEY
        if self.password:
            return AuthMethod.PASSWORD
        return AuthMethod.AGENT

    @property
    def effective_port(self) -> int:
        return self.port or DEFAULT_SSH_PORT

    def to_yaml_dict(self) -> dict:
        """Registry representation: required fields plus non-default values."""
        return self.model_dump(exclude_defaults=True)


class PotentialHost(BaseModel):
    """A host candidate parsed from an SSH client config file."""

    alias: str
    hostname: str
    user: str
    port: int = DEFAULT_SSH_PORT
    key_path: str | None = None

    def to_host_config(
        self,
        name: str | None = None,
        remote_root: str | None = None,
        password: str | None = None,
    ) -> SSHHostConfig:
        """Convert into a registry entry.

        Args:
            name: Registry name (defaults to the alias)
            remote_root: Directory searched for stacks on the host
            password: Password to use when no key file is known

        Raises:
            pydantic.ValidationError: If a required field is missing or invalid
        """
        return SSHHostConfig(
            name=name if name is not None else self.alias,
            hostname=self.hostname,
            user=self.user,
            # Default port is stored as 0
            port=0 if self.port == DEFAULT_SSH_PORT else self.port,
            key_path=self.key_path,
            password=None if self.key_path else password,
            remote_root=remote_root,
        )
