from __future__ import annotations

import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

ROOT_LOGGER_NAME = "agent_relay"
_HANDLER_MARKER = "_agent_relay_handler"
_MAX_FIELD_CHARS = 2000


def _coerce(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return value if len(value) <= _MAX_FIELD_CHARS else value[:_MAX_FIELD_CHARS]
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_coerce(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _coerce(item) for key, item in value.items()}
    return str(value)


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    **fields: Any,
) -> None:
    """Emit a single-line JSON record describing ``event``.

    An ``exc`` field is rendered as ``error`` / ``error_type`` instead of being
    stringified in place.
    """
    if not logger.isEnabledFor(level):
        return
    payload: dict[str, Any] = {"event": event}
    exc = fields.pop("exc", None)
    for key, value in fields.items():
        payload[key] = _coerce(value)
    if isinstance(exc, BaseException):
        payload["error"] = str(exc) or exc.__class__.__name__
        payload["error_type"] = exc.__class__.__name__
    elif exc is not None:
        payload["error"] = str(exc)
    try:
        message = json.dumps(payload, ensure_ascii=False, sort_keys=False)
    except (TypeError, ValueError):
        message = f"{event} {fields!r}"
    logger.log(level, message)


def setup_logging(
    level: int | str = logging.INFO,
    *,
    log_path: Optional[Path] = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 3,
) -> logging.Logger:
    """Configure the package logger with a stream handler and optional rotation."""
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logger.setLevel(level)
    for handler in list(logger.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            logger.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter("[%(asctime)s] [%(levelname)s] %(name)s %(message)s")
    stream = logging.StreamHandler()
    stream.setFormatter(formatter)
    setattr(stream, _HANDLER_MARKER, True)
    logger.addHandler(stream)

    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        setattr(file_handler, _HANDLER_MARKER, True)
        logger.addHandler(file_handler)
    logger.propagate = False
    return logger


__all__ = ["ROOT_LOGGER_NAME", "log_event", "setup_logging"]
