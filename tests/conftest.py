"""Test harness configuration.

This repo uses a `src/` layout. In some developer environments an older
installed `agent_relay` package can shadow the local sources.

Ensure tests always import the in-repo code.
"""

from __future__ import annotations

import json
import os
import stat
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

DEFAULT_NON_INTEGRATION_TIMEOUT_SECONDS = 120

# Stand-in for the executor CLI. Behaviour is steered by plan.json next to the
# script; every invocation is appended to calls.jsonl.
FAKE_EXECUTOR_SOURCE = r'''
import json
import os
import sys
import time
from pathlib import Path

here = Path(__file__).resolve().parent
argv = sys.argv[1:]
with (here / "calls.jsonl").open("a", encoding="utf-8") as handle:
    handle.write(
        json.dumps({"argv": argv, "cwd": os.getcwd(), "env": dict(os.environ)}) + "\n"
    )
plan_path = here / "plan.json"
plan = json.loads(plan_path.read_text(encoding="utf-8")) if plan_path.exists() else {}
resume = argv[argv.index("--resume") + 1] if "--resume" in argv else None

if resume and plan.get("reject_resume"):
    sys.stderr.write("Error: failed to resume, no conversation found\n")
    sys.exit(1)
if plan.get("sleep"):
    time.sleep(float(plan["sleep"]))
if plan.get("exit_code"):
    sys.stderr.write(plan.get("stderr", "boom"))
    sys.exit(int(plan["exit_code"]))

prompt = argv[-1]
print("Warning: loading settings")
print(
    json.dumps(
        {
            "type": "result",
            "result": plan.get("result") or "echo: " + prompt.splitlines()[-1],
            "session_id": plan.get("session_id", "sess-new"),
            "usage": {"input_tokens": 10, "output_tokens": 5},
        }
    )
)
'''


def pytest_configure() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src_dir = repo_root / "src"
    src_path = str(src_dir)
    if sys.path[:1] != [src_path] and src_path not in sys.path:
        sys.path.insert(0, src_path)


def pytest_collection_modifyitems(
    session: pytest.Session, config: pytest.Config, items: list[pytest.Item]
) -> None:
    """
    Apply a default per-test timeout to non-integration tests.

    This relies on `pytest-timeout` when installed; if it isn't installed, the
    marker is inert but still documents the intent.
    """
    _ = session, config
    for item in items:
        if item.get_closest_marker("integration") is not None:
            continue
        item.add_marker(pytest.mark.timeout(DEFAULT_NON_INTEGRATION_TIMEOUT_SECONDS))


@pytest.fixture()
def anyio_backend() -> str:
    # The code under test is built on asyncio (tasks, subprocesses, to_thread).
    return "asyncio"


@dataclass(frozen=True)
class FakeExecutor:
    root: Path
    binary: Path

    def plan(self, **plan: Any) -> None:
        (self.root / "plan.json").write_text(json.dumps(plan), encoding="utf-8")

    def calls(self) -> list[dict[str, Any]]:
        log_path = self.root / "calls.jsonl"
        if not log_path.exists():
            return []
        return [
            json.loads(line)
            for line in log_path.read_text(encoding="utf-8").splitlines()
            if line.strip()
        ]


@pytest.fixture()
def fake_executor(tmp_path: Path) -> FakeExecutor:
    root = tmp_path / "fake-executor"
    root.mkdir()
    script = root / "executor.py"
    script.write_text(FAKE_EXECUTOR_SOURCE, encoding="utf-8")
    # A /bin/sh wrapper keeps the shebang short regardless of the venv path.
    binary = root / "executor"
    binary.write_text(
        f'#!/bin/sh\nexec "{sys.executable}" "{script}" "$@"\n', encoding="utf-8"
    )
    binary.chmod(binary.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return FakeExecutor(root=root, binary=binary)


@pytest.fixture()
def source_env(tmp_path: Path) -> dict[str, str]:
    home = tmp_path / "home"
    home.mkdir(exist_ok=True)
    return {
        "PATH": os.environ.get("PATH", "/usr/bin:/bin"),
        "HOME": str(home),
        "SECRET_TOKEN": "do-not-forward",
        "CLAUDECODE": "1",
    }


@pytest.fixture()
def make_config(tmp_path: Path) -> Callable[..., Any]:
    """Build a RelayConfig rooted in ``tmp_path`` with fast, quiet defaults."""

    # Import lazily so `pytest_configure()` can prepend the local src/ directory
    # before any `agent_relay` modules are loaded.
    from agent_relay.core.config import load_config

    def _merge(base: dict[str, Any], extra: dict[str, Any]) -> dict[str, Any]:
        for key, value in extra.items():
            if isinstance(value, dict) and isinstance(base.get(key), dict):
                _merge(base[key], value)
            else:
                base[key] = value
        return base

    def factory(
        executor_binary: Optional[Path] = None,
        instance_id: str = "instance-a",
        **overrides: Any,
    ):
        data: dict[str, Any] = {
            "instance_id": instance_id,
            "state_dir": str(tmp_path / "state"),
            "executor": {
                "binary": str(executor_binary or "executor-not-configured"),
                "extra_args": [],
                "session_preamble": "PREAMBLE\n",
                "retry_delay_seconds": 0,
                "stop_grace_seconds": 1.0,
            },
            "sandbox": {
                "enabled": False,
                "base_dir": str(tmp_path / "sandboxes"),
            },
            "log": {"level": "WARNING"},
        }
        _merge(data, overrides)
        return load_config(env={}, cwd=tmp_path, overrides=data)

    return factory


class FakeDocker:
    """In-memory stand-in for the docker CLI, usable as a DockerRuntime run_fn."""

    def __init__(self, *, available: bool = True) -> None:
        self.available = available
        self.containers: dict[str, dict[str, Any]] = {}
        self.calls: list[list[str]] = []

    def commands(self, verb: str) -> list[list[str]]:
        return [cmd for cmd in self.calls if len(cmd) > 1 and cmd[1] == verb]

    def __call__(self, cmd: list[str], **kwargs: Any) -> subprocess.CompletedProcess:
        _ = kwargs
        self.calls.append(list(cmd))
        verb, args = cmd[1], cmd[2:]
        if not self.available:
            raise FileNotFoundError(cmd[0])
        if verb == "info":
            return _proc(cmd)
        if verb == "inspect":
            name = args[-1]
            container = self.containers.get(name)
            if container is None:
                return _proc(cmd, 1, stderr=f"Error: No such object: {name}")
            if "StartedAt" in args[1]:
                return _proc(cmd, stdout=container["started_at"] + "\n")
            running = container["running"]
            state = "true running" if running else "false exited"
            return _proc(cmd, stdout=state + "\n")
        if verb == "run":
            name = args[args.index("--name") + 1]
            if name in self.containers:
                return _proc(
                    cmd,
                    125,
                    stderr=f'Conflict. The container name "/{name}" is already in use',
                )
            self.containers[name] = {
                "running": True,
                "started_at": "2026-01-01T00:00:00.123456789Z",
            }
            return _proc(cmd, stdout="0123456789ab\n")
        if verb == "start":
            name = args[-1]
            if name not in self.containers:
                return _proc(cmd, 1, stderr=f"Error: No such container: {name}")
            self.containers[name]["running"] = True
            return _proc(cmd, stdout=name + "\n")
        if verb == "rm":
            name = args[-1]
            if self.containers.pop(name, None) is None:
                return _proc(cmd, 1, stderr=f"Error: No such container: {name}")
            return _proc(cmd, stdout=name + "\n")
        if verb == "ps":
            return _proc(cmd, stdout="".join(f"{name}\n" for name in self.containers))
        if verb == "system":
            return _proc(cmd, stdout="Total reclaimed space: 0B\n")
        raise AssertionError(f"Unexpected command: {cmd}")


def _proc(
    args: list[str], returncode: int = 0, stdout: str = "", stderr: str = ""
) -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(
        args=list(args), returncode=returncode, stdout=stdout, stderr=stderr
    )


@pytest.fixture()
def fake_docker() -> FakeDocker:
    return FakeDocker()
