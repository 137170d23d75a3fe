"""Tests for host registry reconciliation and persistence."""

import asyncio

import pytest
from pydantic import ValidationError

from bucket_manager.core.config_loader import BucketManagerConfig, load_config, save_config
from bucket_manager.core.exceptions import HostConflictError, HostNotFoundError
from bucket_manager.models.events import HostMutated, HostsLoaded, ImportParsed, ImportSaved
from bucket_manager.models.host import PotentialHost
from bucket_manager.services.registry import (
    add_host,
    edit_host,
    filter_importable,
    import_hosts,
    remove_host,
)


class TestReconciliation:
    """Pure registry operations."""

    def test_add_host(self, make_host):
        hosts = [make_host("a")]

        updated = add_host(hosts, make_host("b"))

        assert [host.name for host in updated] == ["a", "b"]
        assert [host.name for host in hosts] == ["a"]

    def test_add_duplicate_name_conflicts(self, make_host):
        with pytest.raises(HostConflictError, match="host name 'a' already exists"):
            add_host([make_host("a")], make_host("a", hostname="other"))

    def test_names_compare_case_sensitively(self, make_host):
        updated = add_host([make_host("build")], make_host("Build"))

        assert [host.name for host in updated] == ["build", "Build"]

    def test_edit_rename_into_existing_name_conflicts(self, make_host):
        hosts = [make_host("x"), make_host("y")]

        with pytest.raises(HostConflictError):
            edit_host(hosts, "x", make_host("y", hostname="new"))
        assert [host.name for host in hosts] == ["x", "y"]
        assert hosts[0].hostname == "x.example.com"

    def test_edit_same_name_always_succeeds(self, make_host):
        hosts = [make_host("x"), make_host("y")]

        updated = edit_host(hosts, "x", make_host("x", hostname="10.0.0.9"))

        assert [host.name for host in updated] == ["x", "y"]
        assert updated[0].hostname == "10.0.0.9"

    def test_edit_rename_keeps_position(self, make_host):
        hosts = [make_host("x"), make_host("y")]

        updated = edit_host(hosts, "x", make_host("z"))

        assert [host.name for host in updated] == ["z", "y"]

    def test_edit_unknown_host(self, make_host):
        with pytest.raises(HostNotFoundError):
            edit_host([make_host("x")], "missing", make_host("missing"))

    def test_remove_host(self, make_host):
        updated = remove_host([make_host("a"), make_host("b")], "a")

        assert [host.name for host in updated] == ["b"]

    def test_remove_unknown_host(self, make_host):
        with pytest.raises(HostNotFoundError):
            remove_host([make_host("a")], "b")

    def test_import_skips_duplicates_within_batch(self, make_host):
        result = import_hosts([], [make_host("a"), make_host("b"), make_host("a", hostname="dup")])

        assert result.imported_count == 2
        assert result.skipped_count == 1
        assert [host.name for host in result.hosts] == ["a", "b"]
        assert result.hosts[0].hostname == "a.example.com"

    def test_import_skips_registered_names(self, make_host):
        result = import_hosts([make_host("a")], [make_host("a"), make_host("c")])

        assert result.imported_count == 1
        assert result.skipped_count == 1
        assert [host.name for host in result.hosts] == ["a", "c"]

    def test_import_nothing_new(self, make_host):
        candidates = [make_host("a"), make_host("b")]

        result = import_hosts([make_host("a"), make_host("b")], candidates)

        assert result.imported_count == 0
        assert result.skipped_count == len(candidates)

    def test_filter_importable(self, make_host):
        potential = [
            PotentialHost(alias="a", hostname="h", user="u"),
            PotentialHost(alias="b", hostname="h", user="u"),
        ]

        remaining = filter_importable([make_host("a")], potential)

        assert [candidate.alias for candidate in remaining] == ["b"]


class TestHostRegistry:
    """File-backed registry operations."""

    async def test_load_empty(self, registry):
        assert await registry.load() == []

    async def test_add_persists(self, registry, config_file, make_host):
        await registry.add(make_host("build1"))

        assert [host.name for host in load_config(config_file).ssh_hosts] == ["build1"]

    async def test_add_conflict_leaves_file_unchanged(self, registry, config_file, make_host):
        await registry.add(make_host("build1"))
        before = config_file.read_bytes()

        with pytest.raises(HostConflictError):
            await registry.add(make_host("build1", hostname="other"))

        assert config_file.read_bytes() == before

    async def test_mutations_keep_other_settings(self, registry, config_file, make_host):
        save_config(BucketManagerConfig(local_root="/srv/local", runtime="docker"), config_file)

        await registry.add(make_host("build1"))
        await registry.edit("build1", make_host("build2"))

        config = load_config(config_file)
        assert config.local_root == "/srv/local"
        assert config.runtime == "docker"
        assert [host.name for host in config.ssh_hosts] == ["build2"]

    async def test_remove(self, registry, make_host):
        await registry.add(make_host("build1"))
        await registry.add(make_host("build2"))

        await registry.remove("build1")

        assert [host.name for host in await registry.load()] == ["build2"]

    async def test_save_replaces_host_list(self, registry, make_host):
        await registry.add(make_host("build1"))

        await registry.save([make_host("build3"), make_host("build4")])

        assert [host.name for host in await registry.load()] == ["build3", "build4"]

    async def test_save_waits_for_pending_mutation(self, registry, config_file, make_host):
        """A save never interleaves with another read-modify-write."""
        await registry.add(make_host("build1"))
        before = config_file.read_bytes()

        async with registry._lock:
            task = asyncio.create_task(registry.save([make_host("build9")]))
            for _ in range(10):
                await asyncio.sleep(0)
            assert not task.done()
            assert config_file.read_bytes() == before

        await task
        assert [host.name for host in await registry.load()] == ["build9"]

    async def test_concurrent_save_and_add(self, registry, make_host):
        await asyncio.gather(
            registry.save([make_host("build1"), make_host("build2")]),
            registry.add(make_host("build3")),
        )

        assert [host.name for host in await registry.load()] == ["build1", "build2", "build3"]

    async def test_save_of_load_is_byte_stable(self, registry, config_file, make_host):
        await registry.add(make_host("build1", key_path="~/.ssh/id_ed25519"))
        await registry.add(make_host("build2", port=2200, disabled=True))
        before = config_file.read_bytes()

        await registry.save(await registry.load())

        assert config_file.read_bytes() == before

    async def test_import_writes_new_hosts(self, registry, make_host):
        result = await registry.import_hosts([make_host("a"), make_host("b"), make_host("a")])

        assert (result.imported_count, result.skipped_count) == (2, 1)
        assert [host.name for host in await registry.load()] == ["a", "b"]

    async def test_import_nothing_new_does_not_write(self, registry, config_file, make_host):
        await registry.add(make_host("a"))
        mtime = config_file.stat().st_mtime_ns
        before = config_file.read_bytes()

        result = await registry.import_hosts([make_host("a")])

        assert (result.imported_count, result.skipped_count) == (0, 1)
        assert config_file.read_bytes() == before
        assert config_file.stat().st_mtime_ns == mtime

    async def test_set_runtime(self, registry, config_file):
        await registry.set_runtime("docker")

        assert load_config(config_file).runtime == "docker"

    async def test_set_unsupported_runtime(self, registry):
        with pytest.raises(ValidationError):
            await registry.set_runtime("containerd")

    async def test_set_and_reset_local_root(self, registry, config_file):
        await registry.set_local_root("/srv/local")
        assert load_config(config_file).local_root == "/srv/local"

        await registry.set_local_root("")
        assert load_config(config_file).local_root is None

    async def test_parse_import(self, registry, tmp_path):
        ssh_config = tmp_path / "ssh_config"
        ssh_config.write_text("Host build1\n    HostName 10.0.0.5\n    User deploy\n")

        candidates = await registry.parse_import(ssh_config)

        assert [candidate.alias for candidate in candidates] == ["build1"]


class TestRegistryRequests:
    """Request handlers report outcomes as events."""

    async def test_load_request(self, registry, make_host, events):
        await registry.add(make_host("build1"))

        await registry.load_request(events.append)

        assert len(events) == 1
        assert isinstance(events[0], HostsLoaded)
        assert events[0].error is None
        assert [host.name for host in events[0].hosts] == ["build1"]

    async def test_load_request_error(self, registry, config_file, events):
        config_file.parent.mkdir(parents=True)
        config_file.write_text("ssh_hosts: [broken\n")

        await registry.load_request(events.append)

        assert events[0].error is not None
        assert events[0].hosts == ()

    async def test_add_request_success(self, registry, make_host, events):
        await registry.add_request(make_host("build1"), events.append)

        assert events == [HostMutated(error=None)]

    async def test_add_request_conflict(self, registry, make_host, events):
        await registry.add(make_host("build1"))

        await registry.add_request(make_host("build1"), events.append)

        assert isinstance(events[0].error, HostConflictError)

    async def test_edit_and_remove_requests(self, registry, make_host, events):
        await registry.add(make_host("build1"))

        await registry.edit_request("build1", make_host("build1", port=2222), events.append)
        await registry.remove_request("missing", events.append)

        assert events[0].error is None
        assert isinstance(events[1].error, HostNotFoundError)

    async def test_parse_import_request(self, registry, tmp_path, events):
        ssh_config = tmp_path / "ssh_config"
        ssh_config.write_text("Host build1\n    User deploy\n")

        await registry.parse_import_request(str(ssh_config), events.append)

        assert isinstance(events[0], ImportParsed)
        assert [candidate.alias for candidate in events[0].potential_hosts] == ["build1"]

    async def test_import_request(self, registry, make_host, events):
        await registry.import_request([make_host("a"), make_host("a")], events.append)

        assert events == [ImportSaved(imported_count=1, skipped_count=1)]
