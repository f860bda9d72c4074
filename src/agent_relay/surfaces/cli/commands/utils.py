from __future__ import annotations

import dataclasses
import json
from pathlib import Path
from typing import Any, NoReturn, Optional

import typer

from ....core.config import RelayConfig, load_config
from ....core.exceptions import ConfigError
from ....core.logging_utils import setup_logging


def raise_exit(message: str, *, cause: Optional[BaseException] = None) -> NoReturn:
    typer.echo(message, err=True)
    if cause is not None:
        raise typer.Exit(code=1) from cause
    raise typer.Exit(code=1)


def require_config(config_path: Optional[Path]) -> RelayConfig:
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise_exit(f"Config error: {exc}", cause=exc)
    setup_logging(
        config.log.level,
        log_path=config.log.path,
        max_bytes=config.log.max_bytes,
        backup_count=config.log.backup_count,
    )
    return config


def _json_default(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    return str(value)


def echo_json(payload: Any) -> None:
    if dataclasses.is_dataclass(payload) and not isinstance(payload, type):
        payload = dataclasses.asdict(payload)
    typer.echo(json.dumps(payload, indent=2, sort_keys=True, default=_json_default))


CONFIG_OPTION_HELP = "Path to agent-relay.yml"
