"""Tests for host registry models."""

import pytest
from pydantic import ValidationError

from bucket_manager.models.host import AuthMethod, PotentialHost, SSHHostConfig


class TestSSHHostConfig:
    """Validation and derived properties of registry entries."""

    def test_minimal_host(self):
        host = SSHHostConfig(name="build1", hostname="10.0.0.5", user="deploy")

        assert host.port == 0
        assert host.effective_port == 22
        assert host.auth_method is AuthMethod.AGENT
        assert host.disabled is False

    def test_required_fields_are_stripped(self):
        host = SSHHostConfig(name="  build1 ", hostname=" 10.0.0.5", user="deploy ")

        assert host.name == "build1"
        assert host.hostname == "10.0.0.5"
        assert host.user == "deploy"

    @pytest.mark.parametrize("field", ["name", "hostname", "user"])
    def test_blank_required_field_rejected(self, field):
        values = {"name": "build1", "hostname": "10.0.0.5", "user": "deploy", field: "   "}

        with pytest.raises(ValidationError, match=f"{field} is required"):
            SSHHostConfig(**values)

    def test_reserved_local_name_rejected(self):
        with pytest.raises(ValidationError, match="reserved"):
            SSHHostConfig(name="local", hostname="10.0.0.5", user="deploy")

    @pytest.mark.parametrize("port", [-1, 65536])
    def test_port_out_of_range_rejected(self, port):
        with pytest.raises(ValidationError):
            SSHHostConfig(name="build1", hostname="10.0.0.5", user="deploy", port=port)

    def test_custom_port_kept(self):
        host = SSHHostConfig(name="build1", hostname="10.0.0.5", user="deploy", port=2222)

        assert host.effective_port == 2222

    def test_key_and_password_are_exclusive(self):
        with pytest.raises(ValidationError, match="only one of key_path or password"):
            SSHHostConfig(
                name="build1",
                hostname="10.0.0.5",
                user="deploy",
                key_path="~/.ssh/id_ed25519",
                password="secret",
            )

    def test_auth_methods(self):
        key_host = SSHHostConfig(
            name="a", hostname="h", user="u", key_path="~/.ssh/id_ed25519"
        )
        password_host = SSHHostConfig(name="b", hostname="h", user="u", password="secret")

        assert key_host.auth_method is AuthMethod.KEY
        assert password_host.auth_method is AuthMethod.PASSWORD

    def test_empty_optional_strings_become_none(self):
        host = SSHHostConfig(
            name="build1", hostname="h", user="u", key_path="", password=" ", remote_root=""
        )

        assert host.key_path is None
        assert host.password is None
        assert host.remote_root is None
        assert host.auth_method is AuthMethod.AGENT

    def test_hosts_are_immutable(self):
        host = SSHHostConfig(name="build1", hostname="h", user="u")

        with pytest.raises(ValidationError):
            host.hostname = "other"

    def test_yaml_dict_omits_defaults(self):
        host = SSHHostConfig(name="build1", hostname="10.0.0.5", user="deploy")

        assert host.to_yaml_dict() == {"name": "build1", "hostname": "10.0.0.5", "user": "deploy"}

    def test_yaml_dict_keeps_set_values(self):
        host = SSHHostConfig(
            name="build1",
            hostname="10.0.0.5",
            user="deploy",
            port=2222,
            remote_root="/srv/stacks",
            disabled=True,
        )

        assert host.to_yaml_dict() == {
            "name": "build1",
            "hostname": "10.0.0.5",
            "user": "deploy",
            "port": 2222,
            "remote_root": "/srv/stacks",
            "disabled": True,
        }


class TestPotentialHost:
    """Conversion of SSH config candidates into registry entries."""

    def test_default_port_stored_as_zero(self):
        candidate = PotentialHost(alias="build1", hostname="10.0.0.5", user="deploy", port=22)

        host = candidate.to_host_config()

        assert host.name == "build1"
        assert host.port == 0
        assert host.effective_port == 22

    def test_custom_port_and_overrides(self):
        candidate = PotentialHost(
            alias="build1", hostname="10.0.0.5", user="deploy", port=2222
        )

        host = candidate.to_host_config(name="builder", remote_root="/srv/stacks")

        assert host.name == "builder"
        assert host.port == 2222
        assert host.remote_root == "/srv/stacks"

    def test_key_path_wins_over_password(self):
        candidate = PotentialHost(
            alias="build1", hostname="10.0.0.5", user="deploy", key_path="/keys/id_build"
        )

        host = candidate.to_host_config(password="secret")

        assert host.key_path == "/keys/id_build"
        assert host.password is None

    def test_password_used_without_key(self):
        candidate = PotentialHost(alias="build1", hostname="10.0.0.5", user="deploy")

        host = candidate.to_host_config(password="secret")

        assert host.auth_method is AuthMethod.PASSWORD

    def test_conversion_fails_without_user(self):
        candidate = PotentialHost(alias="build1", hostname="10.0.0.5", user="")

        with pytest.raises(ValidationError):
            candidate.to_host_config()
