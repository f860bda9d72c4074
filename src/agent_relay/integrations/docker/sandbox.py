"""Per-tenant sandbox containers for isolated executor runs.

Each tenant gets a long-lived container named after a hash of its
conversation id, with a workspace and a private executor-state directory
bind-mounted from the host. Host directories outlive the container, so a
reaped sandbox comes back with its files intact.
"""

from __future__ import annotations

import asyncio
import dataclasses
import hashlib
import logging
import os
import shutil
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence

from ...core.config import SandboxConfig
from ...core.exceptions import SandboxError, SandboxUnavailableError
from ...core.logging_utils import log_event
from ...core.utils import directory_size_bytes
from .runtime import (
    TENANT_LABEL,
    ContainerLimits,
    DockerContainerSpec,
    DockerMount,
    DockerRuntime,
    DockerRuntimeError,
)

logger = logging.getLogger(__name__)

TENANT_HASH_CHARS = 12
DISK_WARNING_FILENAME = ".DISK_WARNING"
CREATION_POLL_SECONDS = 0.2
_MB = 1024 * 1024

SpawnFn = Callable[..., Awaitable[asyncio.subprocess.Process]]


def tenant_hash(tenant_id: str) -> str:
    return hashlib.sha256(tenant_id.encode("utf-8")).hexdigest()[:TENANT_HASH_CHARS]


def resolve_binary_path(binary: str) -> Optional[Path]:
    """Locate the executor binary on the host, following symlinks."""
    found = shutil.which(binary) or binary
    try:
        resolved = Path(os.path.realpath(found))
    except OSError:
        return None
    return resolved if resolved.is_file() else None


@dataclasses.dataclass(frozen=True)
class SandboxPaths:
    base: Path
    workspace: Path
    state: Path


@dataclasses.dataclass(frozen=True)
class SandboxStatus:
    container_name: str
    exists: bool
    running: bool
    status: str
    disk_usage_mb: int
    max_disk_mb: int
    workspace_dir: Path

    def to_dict(self) -> dict[str, Any]:
        data = dataclasses.asdict(self)
        data["workspace_dir"] = str(self.workspace_dir)
        return data


class SandboxManager:
    def __init__(
        self,
        config: SandboxConfig,
        *,
        executor_binary: str,
        runtime: Optional[DockerRuntime] = None,
        spawn_fn: Optional[SpawnFn] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._runtime = runtime or DockerRuntime(docker_binary=config.docker_binary)
        self._executor_binary = executor_binary
        self._spawn_fn: SpawnFn = spawn_fn or asyncio.create_subprocess_exec
        self._clock = clock
        self._enabled = bool(config.enabled)
        self._creating: set[str] = set()
        self._last_used: dict[str, float] = {}
        self._monitor_tasks: list[asyncio.Task[None]] = []

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def runtime(self) -> DockerRuntime:
        return self._runtime

    def container_name(self, tenant_id: str) -> str:
        return f"{self._config.container_prefix}{tenant_hash(tenant_id)}"

    def paths(self, tenant_id: str) -> SandboxPaths:
        base = self._config.base_dir / tenant_hash(tenant_id)
        return SandboxPaths(base=base, workspace=base / "workspace", state=base / ".claude")

    def ensure_dirs(self, tenant_id: str) -> SandboxPaths:
        paths = self.paths(tenant_id)
        paths.workspace.mkdir(parents=True, exist_ok=True)
        paths.state.mkdir(parents=True, exist_ok=True)
        return paths

    def mark_used(self, tenant_id: str) -> None:
        self._last_used[self.container_name(tenant_id)] = self._clock()

    def last_used(self, tenant_id: str) -> Optional[float]:
        return self._last_used.get(self.container_name(tenant_id))

    async def initialize(self) -> bool:
        """Probe the container engine; disables the manager when it is missing."""
        if not self._enabled:
            log_event(logger, logging.INFO, "sandbox.disabled", reason="config")
            return False
        available = await asyncio.to_thread(self._runtime.is_available)
        if not available:
            self._enabled = False
            log_event(
                logger,
                logging.WARNING,
                "sandbox.disabled",
                reason="docker_unavailable",
                docker_binary=self._runtime.docker_binary,
            )
            return False
        self._config.base_dir.mkdir(parents=True, exist_ok=True)
        if self._config.prune_on_startup:
            try:
                await asyncio.to_thread(self._runtime.prune)
                log_event(logger, logging.INFO, "sandbox.prune.complete")
            except DockerRuntimeError as exc:
                log_event(logger, logging.WARNING, "sandbox.prune.failed", exc=exc)
        log_event(
            logger,
            logging.INFO,
            "sandbox.initialized",
            base_dir=str(self._config.base_dir),
            image=self._config.image,
        )
        return True

    # -- lifecycle ---------------------------------------------------------

    async def ensure(self, tenant_id: str) -> str:
        """Make sure the tenant's container exists and is running; returns its name."""
        if not self._enabled:
            raise SandboxUnavailableError("Sandbox is disabled")
        name = self.container_name(tenant_id)
        while tenant_id in self._creating:
            await asyncio.sleep(CREATION_POLL_SECONDS)
        self._creating.add(tenant_id)
        try:
            await asyncio.to_thread(self._ensure_sync, tenant_id, name)
        except DockerRuntimeError as exc:
            raise SandboxError(f"Failed to provision sandbox {name}: {exc}") from exc
        finally:
            self._creating.discard(tenant_id)
        self.mark_used(tenant_id)
        return name

    def _ensure_sync(self, tenant_id: str, name: str) -> None:
        paths = self.ensure_dirs(tenant_id)
        state = self._runtime.inspect_state(name)
        if state is not None and state.running:
            return
        if state is not None:
            try:
                self._runtime.start_container(name)
                log_event(logger, logging.INFO, "sandbox.container.started", name=name)
                return
            except DockerRuntimeError as exc:
                log_event(
                    logger,
                    logging.WARNING,
                    "sandbox.container.start_failed",
                    name=name,
                    exc=exc,
                )
                self._runtime.remove_container(name)
        created = self._runtime.create_container(self._build_spec(tenant_id, name, paths))
        log_event(
            logger,
            logging.INFO,
            "sandbox.container.created" if created else "sandbox.container.exists",
            name=name,
            tenant=tenant_hash(tenant_id),
        )

    def _build_spec(
        self, tenant_id: str, name: str, paths: SandboxPaths
    ) -> DockerContainerSpec:
        cfg = self._config
        mounts: list[DockerMount] = []
        binary_path = resolve_binary_path(self._executor_binary)
        if binary_path is not None:
            mounts.append(
                DockerMount(
                    source=str(binary_path),
                    target=cfg.binary_mount_target,
                    read_only=True,
                )
            )
        else:
            log_event(
                logger,
                logging.WARNING,
                "sandbox.binary_missing",
                binary=self._executor_binary,
            )
        mounts.append(
            DockerMount(source=str(paths.workspace), target=cfg.workspace_mount_target)
        )
        mounts.append(DockerMount(source=str(paths.state), target=cfg.state_mount_target))
        if cfg.credentials_path is not None and cfg.credentials_path.exists():
            mounts.append(
                DockerMount(
                    source=str(cfg.credentials_path),
                    target=cfg.credentials_mount_target,
                    read_only=True,
                )
            )
        return DockerContainerSpec(
            name=name,
            image=cfg.image,
            mounts=tuple(mounts),
            workdir=cfg.workspace_mount_target,
            limits=ContainerLimits(
                memory=cfg.memory,
                cpus=cfg.cpus,
                pids_limit=cfg.pids_limit,
                tmpfs_size=cfg.tmpfs_size,
            ),
            labels=((TENANT_LABEL, tenant_hash(tenant_id)),),
        )

    async def spawn_in(
        self,
        tenant_id: str,
        args: Sequence[str],
        env: Mapping[str, str],
    ) -> asyncio.subprocess.Process:
        name = await self.ensure(tenant_id)
        cmd = self._runtime.build_exec_command(
            name,
            [self._config.binary_mount_target, *args],
            workdir=self._config.workspace_mount_target,
            env=env,
        )
        try:
            process = await self._spawn_fn(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            raise SandboxError(f"Unable to exec in sandbox {name}: {exc}") from exc
        self.mark_used(tenant_id)
        return process

    async def remove(self, tenant_id: str) -> bool:
        name = self.container_name(tenant_id)
        try:
            removed = await asyncio.to_thread(self._runtime.remove_container, name)
        except DockerRuntimeError as exc:
            raise SandboxError(f"Unable to remove sandbox {name}: {exc}") from exc
        self._last_used.pop(name, None)
        log_event(logger, logging.INFO, "sandbox.container.removed", name=name, existed=removed)
        return removed

    async def status(self, tenant_id: str) -> SandboxStatus:
        name = self.container_name(tenant_id)
        workspace = self.paths(tenant_id).workspace
        state = None
        if self._enabled:
            try:
                state = await asyncio.to_thread(self._runtime.inspect_state, name)
            except DockerRuntimeError as exc:
                log_event(
                    logger, logging.WARNING, "sandbox.inspect_failed", name=name, exc=exc
                )
        usage_bytes = (
            await asyncio.to_thread(directory_size_bytes, workspace)
            if workspace.is_dir()
            else 0
        )
        if state is not None:
            status_text = state.status
        else:
            status_text = "not created" if self._enabled else "disabled"
        return SandboxStatus(
            container_name=name,
            exists=state is not None,
            running=bool(state and state.running),
            status=status_text,
            disk_usage_mb=usage_bytes // _MB,
            max_disk_mb=self._config.workspace_max_mb,
            workspace_dir=workspace,
        )

    # -- workspace maintenance ----------------------------------------------

    def clean_workspace(self, tenant_id: str) -> int:
        """Delete everything in the workspace except the preserved memory file."""
        workspace = self.paths(tenant_id).workspace
        if not workspace.is_dir():
            return 0
        removed = 0
        for entry in sorted(workspace.iterdir()):
            if entry.name == self._config.preserved_file:
                continue
            try:
                if entry.is_dir() and not entry.is_symlink():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
            except OSError as exc:
                log_event(
                    logger,
                    logging.WARNING,
                    "sandbox.clean.entry_failed",
                    path=str(entry),
                    exc=exc,
                )
                continue
            removed += 1
        log_event(
            logger,
            logging.INFO,
            "sandbox.clean.complete",
            tenant=tenant_hash(tenant_id),
            removed=removed,
        )
        return removed

    def check_disk_usage(self) -> list[str]:
        """Flag workspaces over quota with a warning file; returns their hashes."""
        base = self._config.base_dir
        if not base.is_dir():
            return []
        limit_mb = self._config.workspace_max_mb
        flagged: list[str] = []
        for tenant_dir in sorted(base.iterdir()):
            workspace = tenant_dir / "workspace"
            if not workspace.is_dir():
                continue
            size_mb = directory_size_bytes(workspace) // _MB
            if size_mb <= limit_mb:
                continue
            try:
                (workspace / DISK_WARNING_FILENAME).write_text(
                    f"Workspace is {size_mb}MB, limit is {limit_mb}MB. "
                    "Clean the sandbox to free space.\n",
                    encoding="utf-8",
                )
            except OSError as exc:
                log_event(
                    logger,
                    logging.WARNING,
                    "sandbox.disk.warning_write_failed",
                    tenant=tenant_dir.name,
                    exc=exc,
                )
            log_event(
                logger,
                logging.WARNING,
                "sandbox.disk.over_limit",
                tenant=tenant_dir.name,
                size_mb=size_mb,
                limit_mb=limit_mb,
            )
            flagged.append(tenant_dir.name)
        return flagged

    async def reap_idle(self, *, now: Optional[float] = None) -> list[str]:
        """Remove containers idle past the threshold; returns the removed names."""
        if not self._enabled:
            return []
        try:
            names = await asyncio.to_thread(
                self._runtime.list_containers, self._config.container_prefix
            )
        except DockerRuntimeError as exc:
            log_event(logger, logging.WARNING, "sandbox.reap.failed", exc=exc)
            return []
        current = self._clock() if now is None else now
        idle_limit = self._config.idle_timeout_seconds
        reaped: list[str] = []
        for name in names:
            try:
                last = self._last_used.get(name)
                if last is None:
                    started = await asyncio.to_thread(
                        self._runtime.container_started_at, name
                    )
                    if started is None:
                        continue
                    last = started.timestamp()
                idle_seconds = current - last
                if idle_seconds <= idle_limit:
                    self._last_used.setdefault(name, last)
                    continue
                await asyncio.to_thread(self._runtime.remove_container, name)
            except DockerRuntimeError as exc:
                log_event(
                    logger, logging.WARNING, "sandbox.reap.container_failed", name=name, exc=exc
                )
                continue
            self._last_used.pop(name, None)
            reaped.append(name)
            log_event(
                logger,
                logging.INFO,
                "sandbox.reap.removed",
                name=name,
                idle_hours=round(idle_seconds / 3600, 1),
            )
        return reaped

    # -- background monitors -------------------------------------------------

    def start_monitors(self) -> None:
        if not self._enabled or self._monitor_tasks:
            return

        async def disk_check() -> None:
            await asyncio.to_thread(self.check_disk_usage)

        self._monitor_tasks = [
            asyncio.create_task(
                self._run_periodic(
                    "disk", self._config.disk_check_interval_seconds, disk_check
                )
            ),
            asyncio.create_task(
                self._run_periodic(
                    "reaper", self._config.reap_interval_seconds, self.reap_idle
                )
            ),
        ]
        log_event(
            logger,
            logging.INFO,
            "sandbox.monitors.started",
            disk_interval_seconds=self._config.disk_check_interval_seconds,
            reap_interval_seconds=self._config.reap_interval_seconds,
        )

    async def _run_periodic(
        self,
        name: str,
        interval_seconds: float,
        job: Callable[[], Awaitable[Any]],
    ) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await job()
            except Exception as exc:
                log_event(
                    logger,
                    logging.WARNING,
                    "sandbox.monitor.failed",
                    monitor=name,
                    exc=exc,
                )

    async def shutdown(self) -> None:
        tasks, self._monitor_tasks = self._monitor_tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


__all__ = [
    "DISK_WARNING_FILENAME",
    "SandboxManager",
    "SandboxPaths",
    "SandboxStatus",
    "resolve_binary_path",
    "tenant_hash",
]
