"""Tests for command sequence construction."""

import pytest

from bucket_manager.models.commands import (
    StepScope,
    build_sequence,
    down_sequence,
    prune_host_step,
    pull_sequence,
    refresh_sequence,
    render_remote_command,
    up_sequence,
)
from bucket_manager.models.stack import HostTarget, Stack


class TestSequences:
    """Step lists built for single stacks."""

    def test_up_sequence(self, make_stack):
        steps = up_sequence(make_stack("web"))

        assert [step.name for step in steps] == ["Pull Images", "Start Containers"]
        assert steps[0].argv == ["podman", "compose", "pull"]
        assert steps[1].argv == ["podman", "compose", "up", "-d"]
        assert all(step.workdir == "/srv/stacks/web" for step in steps)

    def test_down_and_pull_sequences(self, make_stack):
        stack = make_stack("web")

        assert [step.argv for step in down_sequence(stack)] == [["podman", "compose", "down"]]
        assert [step.argv for step in pull_sequence(stack)] == [["podman", "compose", "pull"]]

    def test_runtime_is_used_as_command(self, make_stack):
        steps = up_sequence(make_stack("web"), "docker")

        assert {step.command for step in steps} == {"docker"}

    def test_local_refresh_prunes(self, make_stack):
        steps = refresh_sequence(make_stack("web"))

        assert len(steps) == 4
        assert [step.name for step in steps] == [
            "Pull Images",
            "Stop Containers",
            "Start Containers",
            "Prune Local System",
        ]
        assert steps[3].argv == ["podman", "system", "prune", "-af"]

    def test_remote_refresh_does_not_prune(self, make_stack):
        steps = refresh_sequence(make_stack("web", server="build1"))

        assert len(steps) == 3
        assert all(step.target.server_name == "build1" for step in steps)

    def test_stack_steps_carry_stack(self, make_stack):
        stack = make_stack("web", server="build1")

        for step in up_sequence(stack):
            assert step.scope is StepScope.STACK
            assert step.stack == stack
            assert step.description.endswith("for stack build1:web")

    def test_prune_host_step(self, make_host):
        step = prune_host_step(HostTarget.remote(make_host("build1")), "docker")

        assert step.scope is StepScope.HOST
        assert step.workdir is None
        assert step.stack is None
        assert step.argv == ["docker", "system", "prune", "-af"]
        assert step.description == "step 'Prune System' for host build1"


class TestBuildSequence:
    """Sequences for a selection of stacks."""

    def test_steps_follow_selection_order(self, make_stack):
        first = make_stack("web")
        second = make_stack("api", server="build1")

        steps = build_sequence("up", [first, second])

        assert [step.stack.identifier for step in steps] == [
            "local:web",
            "local:web",
            "build1:api",
            "build1:api",
        ]

    def test_empty_selection(self):
        assert build_sequence("down", []) == []

    def test_unknown_action(self, make_stack):
        with pytest.raises(ValueError, match="unknown stack action"):
            build_sequence("restart", [make_stack()])


class TestRenderRemoteCommand:
    """Shell strings sent over SSH."""

    def test_workdir_with_spaces_is_quoted(self, make_host):
        stack = Stack(
            name="web",
            host=HostTarget.remote(make_host("build1")),
            path="/srv/my stacks/web",
            root="/srv/my stacks",
        )

        command = render_remote_command(up_sequence(stack)[1])

        assert command == "cd '/srv/my stacks/web' && podman compose up -d"

    def test_home_relative_workdir_stays_expandable(self, make_host):
        stack = Stack(
            name="web",
            host=HostTarget.remote(make_host("build1")),
            path="~/bucket/web",
            root="~/bucket",
        )

        command = render_remote_command(down_sequence(stack)[0])

        assert command == "cd ~/bucket/web && podman compose down"

    def test_host_step_has_no_cd(self, make_host):
        step = prune_host_step(HostTarget.remote(make_host("build1")))

        assert render_remote_command(step) == "podman system prune -af"
