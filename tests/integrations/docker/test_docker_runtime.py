from __future__ import annotations

import datetime as dt
import subprocess
from typing import Sequence

import pytest

from agent_relay.integrations.docker.runtime import (
    ContainerLimits,
    DockerContainerSpec,
    DockerMount,
    DockerRuntime,
    DockerRuntimeError,
    DockerUnavailableError,
)


def _proc(
    args: Sequence[str],
    returncode: int = 0,
    stdout: str = "",
    stderr: str = "",
) -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(
        args=list(args), returncode=returncode, stdout=stdout, stderr=stderr
    )


def _spec() -> DockerContainerSpec:
    return DockerContainerSpec(
        name="relay-sandbox-abc",
        image="agent-relay-sandbox:latest",
        mounts=(
            DockerMount(source="/usr/bin/claude", target="/usr/local/bin/claude", read_only=True),
            DockerMount(source="/data/abc/workspace", target="/workspace"),
        ),
        workdir="/workspace",
        limits=ContainerLimits(memory="1g", cpus="1", pids_limit=256, tmpfs_size="64m"),
        labels=(("agent-relay.tenant", "abc"),),
    )


def test_is_available_false_when_binary_missing() -> None:
    def _run(*args, **kwargs):  # type: ignore[no-untyped-def]
        _ = args, kwargs
        raise FileNotFoundError("docker missing")

    runtime = DockerRuntime(run_fn=_run)
    assert runtime.is_available() is False


def test_is_available_false_when_daemon_unreachable() -> None:
    def _run(cmd, **kwargs):  # type: ignore[no-untyped-def]
        _ = kwargs
        return _proc(cmd, returncode=1, stderr="Cannot connect to the Docker daemon")

    assert DockerRuntime(run_fn=_run).is_available() is False


def test_missing_binary_raises_unavailable_on_commands() -> None:
    def _run(*args, **kwargs):  # type: ignore[no-untyped-def]
        _ = args, kwargs
        raise FileNotFoundError("docker missing")

    with pytest.raises(DockerUnavailableError):
        DockerRuntime(run_fn=_run).start_container("x")


def test_timeout_is_reported_as_runtime_error() -> None:
    def _run(cmd, **kwargs):  # type: ignore[no-untyped-def]
        raise subprocess.TimeoutExpired(cmd, kwargs.get("timeout"))

    with pytest.raises(DockerRuntimeError, match="timed out"):
        DockerRuntime(run_fn=_run).prune()


def test_create_container_builds_hardened_run_command() -> None:
    captured: list[list[str]] = []

    def _run(cmd, **kwargs):  # type: ignore[no-untyped-def]
        assert kwargs["capture_output"] is True
        assert kwargs["text"] is True
        captured.append(list(cmd))
        return _proc(cmd, stdout="cid\n")

    assert DockerRuntime(run_fn=_run).create_container(_spec()) is True

    (cmd,) = captured
    assert cmd[:5] == ["docker", "run", "-d", "--name", "relay-sandbox-abc"]
    assert "agent-relay.managed=true" in cmd
    assert "agent-relay.tenant=abc" in cmd
    assert "/usr/bin/claude:/usr/local/bin/claude:ro" in cmd
    assert "/data/abc/workspace:/workspace" in cmd
    assert cmd[cmd.index("-w") + 1] == "/workspace"
    assert cmd[cmd.index("--memory") + 1] == "1g"
    assert cmd[cmd.index("--cpus") + 1] == "1"
    assert cmd[cmd.index("--pids-limit") + 1] == "256"
    assert cmd[cmd.index("--tmpfs") + 1] == "/tmp:rw,noexec,nosuid,size=64m"
    assert cmd[cmd.index("--security-opt") + 1] == "no-new-privileges"
    assert cmd[-4:] == ["agent-relay-sandbox:latest", "tail", "-f", "/dev/null"]


def test_create_container_reports_name_conflict() -> None:
    def _run(cmd, **kwargs):  # type: ignore[no-untyped-def]
        _ = kwargs
        return _proc(
            cmd,
            returncode=125,
            stderr='Conflict. The container name "/relay-sandbox-abc" is already in use',
        )

    assert DockerRuntime(run_fn=_run).create_container(_spec()) is False


def test_create_container_raises_on_other_failures() -> None:
    def _run(cmd, **kwargs):  # type: ignore[no-untyped-def]
        _ = kwargs
        return _proc(cmd, returncode=125, stderr="pull access denied")

    with pytest.raises(DockerRuntimeError, match="pull access denied"):
        DockerRuntime(run_fn=_run).create_container(_spec())


def test_inspect_state_parses_running_and_status() -> None:
    def _run(cmd, **kwargs):  # type: ignore[no-untyped-def]
        _ = kwargs
        if cmd[-1] == "missing":
            return _proc(cmd, returncode=1, stderr="Error: No such object: missing")
        if cmd[-1] == "stopped":
            return _proc(cmd, stdout="false exited\n")
        return _proc(cmd, stdout="true running\n")

    runtime = DockerRuntime(run_fn=_run)

    assert runtime.inspect_state("missing") is None
    stopped = runtime.inspect_state("stopped")
    assert stopped is not None and stopped.running is False
    assert stopped.status == "exited"
    live = runtime.inspect_state("live")
    assert live is not None and live.running is True


def test_inspect_state_raises_on_unexpected_error() -> None:
    def _run(cmd, **kwargs):  # type: ignore[no-untyped-def]
        _ = kwargs
        return _proc(cmd, returncode=1, stderr="permission denied on docker.sock")

    with pytest.raises(DockerRuntimeError):
        DockerRuntime(run_fn=_run).inspect_state("x")


def test_remove_container_tolerates_missing() -> None:
    def _run(cmd, **kwargs):  # type: ignore[no-untyped-def]
        _ = kwargs
        assert cmd[1:3] == ["rm", "-f"]
        if cmd[-1] == "gone":
            return _proc(cmd, returncode=1, stderr="Error: No such container: gone")
        return _proc(cmd, stdout=cmd[-1])

    runtime = DockerRuntime(run_fn=_run)
    assert runtime.remove_container("present") is True
    assert runtime.remove_container("gone") is False


def test_list_containers_filters_by_prefix() -> None:
    def _run(cmd, **kwargs):  # type: ignore[no-untyped-def]
        _ = kwargs
        assert "name=relay-sandbox-" in cmd
        return _proc(
            cmd,
            stdout="relay-sandbox-aaa\nother-relay-sandbox-bbb\n\nrelay-sandbox-ccc\n",
        )

    names = DockerRuntime(run_fn=_run).list_containers("relay-sandbox-")
    assert names == ["relay-sandbox-aaa", "relay-sandbox-ccc"]


def test_container_started_at_parses_nanoseconds() -> None:
    def _run(cmd, **kwargs):  # type: ignore[no-untyped-def]
        _ = kwargs
        if cmd[-1] == "garbage":
            return _proc(cmd, stdout="not-a-date\n")
        return _proc(cmd, stdout="2026-03-04T05:06:07.123456789Z\n")

    runtime = DockerRuntime(run_fn=_run)

    assert runtime.container_started_at("x") == dt.datetime(
        2026, 3, 4, 5, 6, 7, 123456, tzinfo=dt.timezone.utc
    )
    assert runtime.container_started_at("garbage") is None


def test_build_exec_command_includes_env_and_workdir() -> None:
    runtime = DockerRuntime(docker_binary="/opt/docker")

    cmd = runtime.build_exec_command(
        "relay-sandbox-abc",
        ["/usr/local/bin/claude", "-p", "hi"],
        workdir="/workspace",
        env={"TERM": "dumb", "HOME": "/home/agent"},
    )

    assert cmd == [
        "/opt/docker",
        "exec",
        "-w",
        "/workspace",
        "-e",
        "HOME=/home/agent",
        "-e",
        "TERM=dumb",
        "relay-sandbox-abc",
        "/usr/local/bin/claude",
        "-p",
        "hi",
    ]
    with pytest.raises(ValueError):
        runtime.build_exec_command("x", [])
