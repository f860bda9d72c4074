from __future__ import annotations

import dataclasses
import datetime as dt
import logging
import subprocess
from typing import Callable, Mapping, Optional, Sequence

from ...core.time_utils import parse_iso_timestamp

logger = logging.getLogger("agent_relay.integrations.docker.runtime")


class DockerRuntimeError(RuntimeError):
    """Raised when a docker command fails."""


class DockerUnavailableError(DockerRuntimeError):
    """Raised when docker is not installed or cannot be executed."""


RunFn = Callable[..., subprocess.CompletedProcess[str]]

MANAGED_LABEL = "agent-relay.managed"
TENANT_LABEL = "agent-relay.tenant"
KEEPALIVE_COMMAND = ("tail", "-f", "/dev/null")


@dataclasses.dataclass(frozen=True)
class DockerMount:
    source: str
    target: str
    read_only: bool = False

    def to_bind_spec(self) -> str:
        mode = ":ro" if self.read_only else ""
        return f"{self.source}:{self.target}{mode}"


@dataclasses.dataclass(frozen=True)
class ContainerLimits:
    memory: Optional[str] = None
    cpus: Optional[str] = None
    pids_limit: Optional[int] = None
    tmpfs_size: Optional[str] = None
    no_new_privileges: bool = True

    def to_args(self) -> list[str]:
        args: list[str] = []
        if self.memory:
            args.extend(["--memory", str(self.memory)])
        if self.cpus:
            args.extend(["--cpus", str(self.cpus)])
        if self.pids_limit:
            args.extend(["--pids-limit", str(self.pids_limit)])
        if self.tmpfs_size:
            args.extend(["--tmpfs", f"/tmp:rw,noexec,nosuid,size={self.tmpfs_size}"])
        if self.no_new_privileges:
            args.extend(["--security-opt", "no-new-privileges"])
        return args


@dataclasses.dataclass(frozen=True)
class DockerContainerSpec:
    name: str
    image: str
    mounts: tuple[DockerMount, ...]
    workdir: str
    limits: ContainerLimits = dataclasses.field(default_factory=ContainerLimits)
    labels: tuple[tuple[str, str], ...] = ()


@dataclasses.dataclass(frozen=True)
class ContainerState:
    running: bool
    status: str


def _container_not_found(details: str) -> bool:
    lowered = details.lower()
    return "no such object" in lowered or "no such container" in lowered


def _details(proc: subprocess.CompletedProcess[str]) -> str:
    return (proc.stderr or proc.stdout or "").strip()


class DockerRuntime:
    def __init__(
        self,
        *,
        docker_binary: str = "docker",
        run_fn: RunFn = subprocess.run,
    ) -> None:
        self._docker_binary = docker_binary
        self._run_fn = run_fn

    @property
    def docker_binary(self) -> str:
        return self._docker_binary

    def _run(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        timeout_seconds: Optional[float] = None,
    ) -> subprocess.CompletedProcess[str]:
        cmd = [self._docker_binary, *[str(a) for a in args]]
        try:
            proc = self._run_fn(
                cmd,
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout_seconds,
            )
        except FileNotFoundError as exc:
            raise DockerUnavailableError(
                f"Docker binary '{self._docker_binary}' not found"
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise DockerRuntimeError(
                f"Docker command timed out after {timeout_seconds}s: {' '.join(cmd)}"
            ) from exc
        if check and proc.returncode != 0:
            details = _details(proc) or "unknown error"
            raise DockerRuntimeError(
                f"Docker command failed ({proc.returncode}): {' '.join(cmd)} :: {details}"
            )
        return proc

    def is_available(self, *, timeout_seconds: float = 5.0) -> bool:
        try:
            proc = self._run(["info"], check=False, timeout_seconds=timeout_seconds)
        except DockerRuntimeError:
            return False
        return proc.returncode == 0

    def inspect_state(self, container_name: str) -> Optional[ContainerState]:
        proc = self._run(
            [
                "inspect",
                "--format",
                "{{.State.Running}} {{.State.Status}}",
                container_name,
            ],
            check=False,
            timeout_seconds=5,
        )
        if proc.returncode != 0:
            details = _details(proc)
            if _container_not_found(details) or not details:
                return None
            raise DockerRuntimeError(
                f"Unable to inspect container {container_name}: {details}"
            )
        parts = (proc.stdout or "").strip().split()
        running = bool(parts) and parts[0].lower() == "true"
        status = parts[1] if len(parts) > 1 else ("running" if running else "unknown")
        return ContainerState(running=running, status=status)

    def create_container(self, spec: DockerContainerSpec) -> bool:
        """Run a detached container; returns False if the name is already taken."""
        cmd: list[str] = [
            "run",
            "-d",
            "--name",
            spec.name,
            "--label",
            f"{MANAGED_LABEL}=true",
        ]
        for key, value in spec.labels:
            cmd.extend(["--label", f"{key}={value}"])
        for mount in spec.mounts:
            cmd.extend(["-v", mount.to_bind_spec()])
        if spec.workdir:
            cmd.extend(["-w", spec.workdir])
        cmd.extend(spec.limits.to_args())
        cmd.extend([spec.image, *KEEPALIVE_COMMAND])
        run_proc = self._run(cmd, check=False, timeout_seconds=30)
        if run_proc.returncode == 0:
            return True
        if "already in use" in _details(run_proc).lower():
            return False
        raise DockerRuntimeError(
            f"Failed to create container {spec.name}: {_details(run_proc)}"
        )

    def start_container(self, container_name: str) -> None:
        self._run(["start", container_name], timeout_seconds=10)

    def remove_container(self, container_name: str) -> bool:
        proc = self._run(["rm", "-f", container_name], check=False, timeout_seconds=10)
        if proc.returncode == 0:
            return True
        details = _details(proc)
        if _container_not_found(details):
            return False
        raise DockerRuntimeError(
            f"Unable to remove container {container_name}: {details}"
        )

    def list_containers(self, name_prefix: str) -> list[str]:
        proc = self._run(
            [
                "ps",
                "-a",
                "--filter",
                f"name={name_prefix}",
                "--format",
                "{{.Names}}",
            ],
            timeout_seconds=5,
        )
        names = [line.strip() for line in (proc.stdout or "").splitlines()]
        # The name filter is a substring match.
        return [name for name in names if name and name.startswith(name_prefix)]

    def container_started_at(self, container_name: str) -> Optional[dt.datetime]:
        proc = self._run(
            ["inspect", "--format", "{{.State.StartedAt}}", container_name],
            check=False,
            timeout_seconds=5,
        )
        if proc.returncode != 0:
            details = _details(proc)
            if _container_not_found(details):
                return None
            raise DockerRuntimeError(
                f"Unable to inspect container {container_name} start time: {details}"
            )
        started_raw = (proc.stdout or "").strip()
        if not started_raw:
            return None
        try:
            return parse_iso_timestamp(started_raw)
        except ValueError:
            logger.warning(
                "Invalid docker started-at value for %s: %r",
                container_name,
                started_raw,
            )
            return None

    def prune(self) -> None:
        self._run(["system", "prune", "-f"], timeout_seconds=30)

    def build_exec_command(
        self,
        container_name: str,
        command: Sequence[str],
        *,
        workdir: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> list[str]:
        if not command:
            raise ValueError("command must not be empty")
        cmd: list[str] = [self._docker_binary, "exec"]
        if workdir:
            cmd.extend(["-w", str(workdir)])
        for key, value in sorted((env or {}).items()):
            if not key or value is None:
                continue
            cmd.extend(["-e", f"{key}={value}"])
        cmd.append(container_name)
        cmd.extend([str(part) for part in command])
        return cmd


__all__ = [
    "ContainerLimits",
    "ContainerState",
    "DockerContainerSpec",
    "DockerMount",
    "DockerRuntime",
    "DockerRuntimeError",
    "DockerUnavailableError",
]
