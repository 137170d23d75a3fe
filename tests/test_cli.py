"""Tests for the command line interface."""

import pytest

from bucket_manager.cli import build_parser, find_stack, parse_args, run, select_stacks
from bucket_manager.core.config_loader import load_config
from bucket_manager.core.exceptions import BucketManagerError
from bucket_manager.core.settings import BucketManagerSettings


@pytest.fixture
def stacks(make_stack):
    return [
        make_stack("web"),
        make_stack("web", server="build1"),
        make_stack("api", server="build1"),
        make_stack("db", server="build2"),
        make_stack("db", server="build3"),
    ]


@pytest.fixture
def settings(config_file):
    return BucketManagerSettings(config_path=config_file, _env_file=None)


class TestStackSelection:
    """Resolving stack identifiers given on the command line."""

    def test_unique_name(self, stacks):
        assert find_stack(stacks, "api").identifier == "build1:api"

    def test_qualified_name(self, stacks):
        assert find_stack(stacks, "build1:web").identifier == "build1:web"

    def test_ambiguous_name_prefers_local(self, stacks):
        assert find_stack(stacks, "web").identifier == "local:web"

    def test_ambiguous_remote_name(self, stacks):
        with pytest.raises(BucketManagerError, match="ambiguous"):
            find_stack(stacks, "db")

    def test_unknown_name(self, stacks):
        with pytest.raises(BucketManagerError, match="not found"):
            find_stack(stacks, "cache")

    def test_invalid_identifier(self, stacks):
        with pytest.raises(BucketManagerError, match="invalid identifier format"):
            find_stack(stacks, ":web")

    def test_select_server_and_repeats(self, stacks):
        selected = select_stacks(stacks, ["build1:", "api", "local:web"])

        assert [stack.identifier for stack in selected] == [
            "build1:web",
            "build1:api",
            "local:web",
        ]

    def test_select_unknown_server(self, stacks):
        with pytest.raises(BucketManagerError, match="no stacks found on 'build9'"):
            select_stacks(stacks, ["build9:"])


class TestParser:
    """Argument parsing."""

    def test_stack_actions(self):
        for action in ("up", "down", "refresh", "pull"):
            args = parse_args([action, "web", "build1:api"])
            assert args.action == action
            assert args.stacks == ["web", "build1:api"]

    def test_action_requires_stack(self):
        with pytest.raises(SystemExit):
            parse_args(["up"])

    def test_host_add(self):
        args = parse_args(
            ["hosts", "add", "build1", "--hostname", "10.0.0.5", "--user", "deploy", "--port", "2222"]
        )

        assert args.hosts_command == "add"
        assert args.port == 2222
        assert args.disabled is None
        assert args.agent is False

    def test_host_auth_options_exclusive(self):
        with pytest.raises(SystemExit):
            parse_args(
                ["hosts", "edit", "build1", "--key-path", "/keys/id", "--password", "secret"]
            )

    def test_enable_disable(self):
        assert parse_args(["hosts", "edit", "build1", "--disable"]).disabled is True
        assert parse_args(["hosts", "edit", "build1", "--enable"]).disabled is False

    def test_unsupported_runtime(self):
        with pytest.raises(SystemExit):
            parse_args(["config", "set-runtime", "containerd"])

    def test_prog_name(self):
        assert build_parser().prog == "bucket-manager"


class TestRun:
    """Commands that only touch the host registry."""

    async def test_set_and_get_runtime(self, settings, config_file, capsys):
        assert await run(parse_args(["config", "set-runtime", "docker"]), settings) == 0
        assert load_config(config_file).runtime == "docker"

        assert await run(parse_args(["config", "get-runtime"]), settings) == 0
        assert capsys.readouterr().out.splitlines()[-1] == "docker"

    async def test_set_local_root(self, settings, config_file, tmp_path, capsys):
        root = tmp_path / "stacks"
        root.mkdir()

        assert await run(parse_args(["config", "set-local-root", str(root)]), settings) == 0

        assert load_config(config_file).local_root == str(root.resolve())

    async def test_set_missing_local_root(self, settings, tmp_path, capsys):
        code = await run(
            parse_args(["config", "set-local-root", str(tmp_path / "missing")]), settings
        )

        assert code == 1
        assert "is not a directory" in capsys.readouterr().err

    async def test_add_and_list_hosts(self, settings, config_file, capsys):
        add = ["hosts", "add", "build1", "--hostname", "10.0.0.5", "--user", "deploy"]

        assert await run(parse_args([*add, "--port", "2222"]), settings) == 0
        assert "Host 'build1' added." in capsys.readouterr().out

        assert await run(parse_args(["hosts", "list"]), settings) == 0
        assert "build1: deploy@10.0.0.5:2222 auth=agent" in capsys.readouterr().out

        assert await run(parse_args(add), settings) == 1
        assert "host name 'build1' already exists" in capsys.readouterr().err
        assert len(load_config(config_file).ssh_hosts) == 1

    async def test_edit_and_remove_host(self, settings, config_file, capsys):
        await run(
            parse_args(["hosts", "add", "build1", "--hostname", "h", "--user", "deploy"]),
            settings,
        )

        code = await run(
            parse_args(["hosts", "edit", "build1", "--new-name", "build2", "--disable"]), settings
        )
        assert code == 0
        host = load_config(config_file).ssh_hosts[0]
        assert (host.name, host.hostname, host.disabled) == ("build2", "h", True)

        assert await run(parse_args(["hosts", "remove", "build2"]), settings) == 0
        assert load_config(config_file).ssh_hosts == []

    async def test_remove_unknown_host(self, settings, capsys):
        assert await run(parse_args(["hosts", "remove", "ghost"]), settings) == 1
        assert "host 'ghost' not found" in capsys.readouterr().err

    async def test_import_hosts(self, settings, config_file, tmp_path, capsys):
        ssh_config = tmp_path / "ssh_config"
        ssh_config.write_text(
            "Host build1\n    HostName 10.0.0.5\n    User deploy\n"
            "Host build2\n    HostName 10.0.0.6\n    User deploy\n"
        )

        code = await run(
            parse_args(["hosts", "import", "all", "--ssh-config", str(ssh_config)]), settings
        )

        assert code == 0
        assert "Import finished: 2 host(s) added." in capsys.readouterr().out
        assert [host.name for host in load_config(config_file).ssh_hosts] == ["build1", "build2"]

        code = await run(parse_args(["hosts", "import", "--ssh-config", str(ssh_config)]), settings)
        assert code == 0
        assert "no new importable hosts found" in capsys.readouterr().out

    async def test_import_skips_invalid_candidates(self, settings, config_file, tmp_path, capsys):
        """A candidate that fails validation is reported and the rest still import."""
        ssh_config = tmp_path / "ssh_config"
        ssh_config.write_text(
            "Host bad\n    HostName 10.0.0.7\n    User deploy\n    Port 70000\n"
            "Host build1\n    HostName 10.0.0.5\n    User deploy\n"
        )

        code = await run(
            parse_args(["hosts", "import", "all", "--ssh-config", str(ssh_config)]), settings
        )

        assert code == 0
        output = capsys.readouterr()
        assert "Skipping 'bad'" in output.err
        assert "Import finished: 1 host(s) added." in output.out
        assert [host.name for host in load_config(config_file).ssh_hosts] == ["build1"]

    async def test_import_with_only_invalid_candidates(self, settings, config_file, tmp_path, capsys):
        ssh_config = tmp_path / "ssh_config"
        ssh_config.write_text("Host bad\n    HostName 10.0.0.7\n    User deploy\n    Port 70000\n")

        code = await run(
            parse_args(["hosts", "import", "bad", "--ssh-config", str(ssh_config)]), settings
        )

        assert code == 1
        assert "No valid hosts to import." in capsys.readouterr().err
        assert not config_file.exists()

    async def test_prune_unknown_host(self, settings, capsys):
        assert await run(parse_args(["prune", "ghost"]), settings) == 1
        assert "host 'ghost' not found or disabled" in capsys.readouterr().err
