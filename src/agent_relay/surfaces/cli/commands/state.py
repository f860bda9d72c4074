from __future__ import annotations

from pathlib import Path
from typing import Callable, NoReturn, Optional

import typer

from ....core.config import RelayConfig
from ....core.conversation_store import ConversationStore
from ....core.exceptions import ValidationError
from ....orchestrator import build_conversation_store
from .utils import CONFIG_OPTION_HELP, echo_json


def register_state_commands(
    state_app: typer.Typer,
    *,
    require_config: Callable[[Optional[Path]], RelayConfig],
    raise_exit: Callable[..., NoReturn],
) -> None:
    def _open_store(config_path: Optional[Path]) -> tuple[RelayConfig, ConversationStore]:
        cfg = require_config(config_path)
        store = build_conversation_store(cfg)
        store.bootstrap()
        return cfg, store

    @state_app.command("show")
    def show(
        conversation: str = typer.Argument(..., help="Conversation identifier"),
        config: Optional[Path] = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
    ) -> None:
        """Print the stored state of a conversation as JSON."""
        cfg, store = _open_store(config)
        state = store.get_state(conversation)
        echo_json(
            {
                "state": state,
                "effective_model": cfg.resolve_model(state.model_override),
                "enabled_commands": store.enabled_commands(conversation),
            }
        )

    @state_app.command("reset")
    def reset(
        conversation: str = typer.Argument(..., help="Conversation identifier"),
        config: Optional[Path] = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
    ) -> None:
        """Clear session, working directory, model, history and usage."""
        _cfg, store = _open_store(config)
        store.reset(conversation)
        typer.echo(f"Reset state for {conversation}")

    @state_app.command("set-dir")
    def set_dir(
        conversation: str = typer.Argument(..., help="Conversation identifier"),
        path: Path = typer.Argument(..., help="Existing directory to run the executor in"),
        config: Optional[Path] = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
    ) -> None:
        """Set the host working directory for a conversation."""
        _cfg, store = _open_store(config)
        try:
            resolved = store.set_working_dir(conversation, path)
        except ValidationError as exc:
            raise_exit(str(exc), cause=exc)
        typer.echo(f"Working directory for {conversation}: {resolved}")

    @state_app.command("set-model")
    def set_model(
        conversation: str = typer.Argument(..., help="Conversation identifier"),
        name: str = typer.Argument(..., help="Model name or alias (opus, sonnet, haiku)"),
        config: Optional[Path] = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
    ) -> None:
        """Override the executor model for a conversation."""
        cfg, store = _open_store(config)
        resolved = cfg.resolve_model(name)
        try:
            store.set_model(conversation, resolved)
        except ValidationError as exc:
            raise_exit(str(exc), cause=exc)
        typer.echo(f"Model for {conversation}: {resolved}")
