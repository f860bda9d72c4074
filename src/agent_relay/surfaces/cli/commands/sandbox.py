from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Callable, NoReturn, Optional

import typer

from ....core.config import RelayConfig
from ....core.exceptions import SandboxError
from ....integrations.docker.sandbox import SandboxManager
from ....orchestrator import build_sandbox_manager
from .utils import CONFIG_OPTION_HELP, echo_json


def register_sandbox_commands(
    sandbox_app: typer.Typer,
    *,
    require_config: Callable[[Optional[Path]], RelayConfig],
    raise_exit: Callable[..., NoReturn],
) -> None:
    def _open_manager(config_path: Optional[Path]) -> SandboxManager:
        return build_sandbox_manager(require_config(config_path))

    def _require_enabled(manager: SandboxManager) -> None:
        if not asyncio.run(manager.initialize()):
            raise_exit("Sandbox is disabled or docker is unavailable.")

    @sandbox_app.command("status")
    def status(
        conversation: str = typer.Argument(..., help="Conversation identifier"),
        config: Optional[Path] = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
    ) -> None:
        """Show container state and workspace disk usage."""
        manager = _open_manager(config)
        asyncio.run(manager.initialize())
        echo_json(asyncio.run(manager.status(conversation)).to_dict())

    @sandbox_app.command("clean")
    def clean(
        conversation: str = typer.Argument(..., help="Conversation identifier"),
        config: Optional[Path] = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
    ) -> None:
        """Delete workspace files, keeping the memory file."""
        manager = _open_manager(config)
        removed = manager.clean_workspace(conversation)
        typer.echo(f"Removed {removed} entries from {manager.paths(conversation).workspace}")

    @sandbox_app.command("remove")
    def remove(
        conversation: str = typer.Argument(..., help="Conversation identifier"),
        config: Optional[Path] = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
    ) -> None:
        """Force-remove the container; workspace files are kept."""
        manager = _open_manager(config)
        _require_enabled(manager)
        try:
            existed = asyncio.run(manager.remove(conversation))
        except SandboxError as exc:
            raise_exit(str(exc), cause=exc)
        name = manager.container_name(conversation)
        typer.echo(f"Removed {name}" if existed else f"No container named {name}")

    @sandbox_app.command("reap")
    def reap(
        config: Optional[Path] = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
    ) -> None:
        """Remove sandbox containers idle past the configured threshold."""
        manager = _open_manager(config)
        _require_enabled(manager)
        reaped = asyncio.run(manager.reap_idle())
        typer.echo(f"Reaped {len(reaped)} container(s)")
        for name in reaped:
            typer.echo(f"  {name}")

    @sandbox_app.command("check-disk")
    def check_disk(
        config: Optional[Path] = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
    ) -> None:
        """Flag workspaces over the disk quota."""
        manager = _open_manager(config)
        flagged = manager.check_disk_usage()
        if not flagged:
            typer.echo("All workspaces within quota")
            return
        for tenant in flagged:
            typer.echo(f"Over quota: {tenant}")
