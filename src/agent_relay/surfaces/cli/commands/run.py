from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Callable, NoReturn, Optional

import typer

from ....core.config import RelayConfig
from ....orchestrator import OUTCOME_DUPLICATE, InboundOutcome, build_orchestrator
from .utils import CONFIG_OPTION_HELP


async def _run_once(
    config: RelayConfig,
    conversation_id: str,
    message_id: Optional[str],
    prompt: str,
    shared: Optional[bool],
) -> tuple[InboundOutcome, dict[str, str]]:
    replies: dict[str, str] = {}

    async def on_result(_conversation_id: str, text: str) -> None:
        replies["result"] = text

    async def on_error(_conversation_id: str, text: str) -> None:
        replies["error"] = text

    orchestrator = build_orchestrator(config, on_result=on_result, on_error=on_error)
    await orchestrator.start()
    try:
        outcome = await orchestrator.handle_inbound_message(
            conversation_id, message_id, prompt, shared
        )
        await orchestrator.queue.wait_idle()
    finally:
        await orchestrator.shutdown()
    return outcome, replies


def register_run_commands(
    app: typer.Typer,
    *,
    require_config: Callable[[Optional[Path]], RelayConfig],
    raise_exit: Callable[..., NoReturn],
) -> None:
    @app.command("run")
    def run(
        prompt: str = typer.Argument(..., help="Prompt text to send to the executor"),
        conversation: str = typer.Option(
            ..., "--conversation", "-c", help="Conversation identifier"
        ),
        message_id: Optional[str] = typer.Option(
            None, "--message-id", help="Inbound message id used for deduplication"
        ),
        shared: Optional[bool] = typer.Option(
            None,
            "--shared/--local",
            help="Override shared/local classification of the conversation",
        ),
        config: Optional[Path] = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
    ) -> None:
        """Run one prompt through the relay and print the reply."""
        cfg = require_config(config)
        outcome, replies = asyncio.run(
            _run_once(cfg, conversation, message_id, prompt, shared)
        )
        if outcome.status == OUTCOME_DUPLICATE:
            typer.echo("Message already claimed by another instance; skipped.")
            return
        if "error" in replies:
            raise_exit(replies["error"])
        typer.echo(replies.get("result", ""))
