from __future__ import annotations

import asyncio
import datetime as dt
import subprocess
import threading
from pathlib import Path
from typing import Any

import pytest

from agent_relay.core.exceptions import SandboxError, SandboxUnavailableError
from agent_relay.integrations.docker.runtime import DockerRuntime
from agent_relay.integrations.docker.sandbox import (
    DISK_WARNING_FILENAME,
    SandboxManager,
    tenant_hash,
)

TENANT = "team@g.us"
STARTED_AT = dt.datetime(2026, 1, 1, tzinfo=dt.timezone.utc).timestamp()


class FakeClock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _manager(
    make_config, fake_docker, *, clock: Any = None, **sandbox: Any
) -> SandboxManager:
    config = make_config(sandbox={"enabled": True, **sandbox})
    kwargs: dict[str, Any] = {"clock": clock} if clock is not None else {}
    return SandboxManager(
        config.sandbox,
        executor_binary=config.executor.binary,
        runtime=DockerRuntime(run_fn=fake_docker),
        **kwargs,
    )


def test_container_names_and_paths_derive_from_tenant_hash(make_config, fake_docker) -> None:
    manager = _manager(make_config, fake_docker)
    digest = tenant_hash(TENANT)

    assert len(digest) == 12
    assert manager.container_name(TENANT) == f"relay-sandbox-{digest}"
    paths = manager.paths(TENANT)
    assert paths.workspace == paths.base / "workspace"
    assert paths.state == paths.base / ".claude"
    assert paths.base.name == digest


@pytest.mark.anyio
async def test_initialize_disables_when_docker_is_missing(make_config, fake_docker) -> None:
    fake_docker.available = False
    manager = _manager(make_config, fake_docker)

    assert await manager.initialize() is False
    assert manager.enabled is False
    with pytest.raises(SandboxUnavailableError):
        await manager.ensure(TENANT)
    assert (await manager.status(TENANT)).status == "disabled"
    assert await manager.reap_idle() == []


@pytest.mark.anyio
async def test_initialize_prunes_when_configured(make_config, fake_docker) -> None:
    manager = _manager(make_config, fake_docker, prune_on_startup=True)

    assert await manager.initialize() is True
    assert fake_docker.commands("system") == [["docker", "system", "prune", "-f"]]


@pytest.mark.anyio
async def test_concurrent_ensure_creates_one_container(make_config, fake_docker) -> None:
    manager = _manager(make_config, fake_docker)

    names = await asyncio.gather(manager.ensure(TENANT), manager.ensure(TENANT))

    assert names[0] == names[1] == manager.container_name(TENANT)
    assert len(fake_docker.commands("run")) == 1
    paths = manager.paths(TENANT)
    assert paths.workspace.is_dir()
    assert paths.state.is_dir()
    assert manager.last_used(TENANT) is not None


@pytest.mark.anyio
async def test_two_instances_racing_ensure_share_one_container(
    make_config, fake_docker
) -> None:
    config = make_config(sandbox={"enabled": True})
    serial = threading.Lock()
    both_inspected = threading.Barrier(2, timeout=10)

    def racing(cmd, **kwargs):  # type: ignore[no-untyped-def]
        with serial:
            proc = fake_docker(cmd, **kwargs)
        # Both instances see "no such container" before either creates it.
        if cmd[1] == "inspect":
            both_inspected.wait()
        return proc

    first, second = (
        SandboxManager(
            config.sandbox,
            executor_binary="missing-binary",
            runtime=DockerRuntime(run_fn=racing),
        )
        for _ in range(2)
    )

    names = await asyncio.gather(first.ensure(TENANT), second.ensure(TENANT))

    assert names[0] == names[1] == first.container_name(TENANT)
    runs = fake_docker.commands("run")
    assert len(runs) == 2
    assert list(fake_docker.containers) == [names[0]]
    assert fake_docker.containers[names[0]]["running"] is True
    assert first.last_used(TENANT) is not None
    assert second.last_used(TENANT) is not None


@pytest.mark.anyio
async def test_ensure_starts_a_stopped_container(make_config, fake_docker) -> None:
    manager = _manager(make_config, fake_docker)
    name = manager.container_name(TENANT)
    fake_docker.containers[name] = {"running": False, "started_at": "2026-01-01T00:00:00Z"}

    await manager.ensure(TENANT)

    assert fake_docker.containers[name]["running"] is True
    assert fake_docker.commands("start") == [["docker", "start", name]]
    assert fake_docker.commands("run") == []


@pytest.mark.anyio
async def test_ensure_recreates_when_start_fails(make_config, fake_docker) -> None:
    config = make_config(sandbox={"enabled": True})

    def start_fails(cmd, **kwargs):  # type: ignore[no-untyped-def]
        if cmd[1] == "start":
            fake_docker.calls.append(list(cmd))
            return _failed(cmd)
        return fake_docker(cmd, **kwargs)

    manager = SandboxManager(
        config.sandbox,
        executor_binary="missing-binary",
        runtime=DockerRuntime(run_fn=start_fails),
    )
    name = manager.container_name(TENANT)
    fake_docker.containers[name] = {"running": False, "started_at": "2026-01-01T00:00:00Z"}

    await manager.ensure(TENANT)

    verbs = [cmd[1] for cmd in fake_docker.calls if cmd[1] in ("start", "rm", "run")]
    assert verbs == ["start", "rm", "run"]
    assert fake_docker.containers[name]["running"] is True


def _failed(cmd):  # type: ignore[no-untyped-def]
    return subprocess.CompletedProcess(
        args=list(cmd), returncode=1, stdout="", stderr="cannot start container"
    )


@pytest.mark.anyio
async def test_ensure_wraps_runtime_failures(make_config) -> None:
    def _run(cmd, **kwargs):  # type: ignore[no-untyped-def]
        _ = kwargs
        return _failed(cmd)

    manager = SandboxManager(
        make_config(sandbox={"enabled": True}).sandbox,
        executor_binary="missing-binary",
        runtime=DockerRuntime(run_fn=_run),
    )

    with pytest.raises(SandboxError):
        await manager.ensure(TENANT)


@pytest.mark.anyio
async def test_container_mounts_binary_and_credentials(
    make_config, fake_docker, fake_executor, tmp_path: Path
) -> None:
    credentials = tmp_path / "credentials.json"
    credentials.write_text("{}", encoding="utf-8")
    config = make_config(
        fake_executor.binary,
        sandbox={"enabled": True, "credentials_path": str(credentials)},
    )
    manager = SandboxManager(
        config.sandbox,
        executor_binary=config.executor.binary,
        runtime=DockerRuntime(run_fn=fake_docker),
    )

    await manager.ensure(TENANT)

    (run_cmd,) = fake_docker.commands("run")
    binds = [run_cmd[i + 1] for i, part in enumerate(run_cmd) if part == "-v"]
    paths = manager.paths(TENANT)
    assert binds == [
        f"{fake_executor.binary.resolve()}:/usr/local/bin/claude:ro",
        f"{paths.workspace}:/workspace",
        f"{paths.state}:/home/agent/.claude",
        f"{credentials}:/home/agent/.claude/.credentials.json:ro",
    ]
    assert f"agent-relay.tenant={tenant_hash(TENANT)}" in run_cmd


@pytest.mark.anyio
async def test_remove_and_status(make_config, fake_docker) -> None:
    manager = _manager(make_config, fake_docker)
    await manager.ensure(TENANT)
    (manager.paths(TENANT).workspace / "notes.txt").write_text("hi", encoding="utf-8")

    status = await manager.status(TENANT)
    assert status.exists is True
    assert status.running is True
    assert status.status == "running"
    assert status.max_disk_mb == 500
    assert status.to_dict()["workspace_dir"] == str(manager.paths(TENANT).workspace)

    assert await manager.remove(TENANT) is True
    assert await manager.remove(TENANT) is False
    after = await manager.status(TENANT)
    assert after.exists is False
    assert after.status == "not created"
    assert (manager.paths(TENANT).workspace / "notes.txt").exists()


def test_clean_workspace_keeps_memory_file(make_config, fake_docker) -> None:
    manager = _manager(make_config, fake_docker)
    workspace = manager.ensure_dirs(TENANT).workspace
    (workspace / "CLAUDE.md").write_text("memory", encoding="utf-8")
    (workspace / "a.txt").write_text("a", encoding="utf-8")
    (workspace / "build").mkdir()
    (workspace / "build" / "out.bin").write_bytes(b"\0" * 10)
    (workspace / ".hidden").write_text("h", encoding="utf-8")

    assert manager.clean_workspace(TENANT) == 3
    assert [entry.name for entry in workspace.iterdir()] == ["CLAUDE.md"]
    assert manager.clean_workspace("nobody@g.us") == 0


def test_check_disk_usage_flags_oversized_workspaces(make_config, fake_docker) -> None:
    manager = _manager(make_config, fake_docker, workspace_max_mb=1)
    big = manager.ensure_dirs(TENANT).workspace
    (big / "blob.bin").write_bytes(b"\0" * (3 * 1024 * 1024))
    small = manager.ensure_dirs("small@g.us").workspace
    (small / "tiny.txt").write_text("x", encoding="utf-8")

    flagged = manager.check_disk_usage()

    assert flagged == [tenant_hash(TENANT)]
    assert (big / DISK_WARNING_FILENAME).exists()
    assert not (small / DISK_WARNING_FILENAME).exists()


@pytest.mark.anyio
async def test_reap_idle_removes_only_stale_containers(make_config, fake_docker) -> None:
    clock = FakeClock(STARTED_AT)
    manager = _manager(make_config, fake_docker, clock=clock)
    await manager.ensure("busy@g.us")
    await manager.ensure("quiet@g.us")
    clock.now += 20 * 3600
    manager.mark_used("busy@g.us")
    # Created before this process started; only its start time is known.
    fake_docker.containers["relay-sandbox-orphan"] = {
        "running": True,
        "started_at": "2026-01-01T00:00:00Z",
    }

    reaped = await manager.reap_idle(now=STARTED_AT + 25 * 3600)

    assert sorted(reaped) == sorted(
        [manager.container_name("quiet@g.us"), "relay-sandbox-orphan"]
    )
    assert set(fake_docker.containers) == {manager.container_name("busy@g.us")}
    assert manager.last_used("quiet@g.us") is None


@pytest.mark.anyio
async def test_monitors_start_once_and_stop_on_shutdown(make_config, fake_docker) -> None:
    manager = _manager(make_config, fake_docker)
    assert await manager.initialize() is True

    manager.start_monitors()
    manager.start_monitors()
    tasks = list(manager._monitor_tasks)
    assert len(tasks) == 2

    await manager.shutdown()
    assert all(task.done() for task in tasks)
