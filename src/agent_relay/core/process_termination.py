from __future__ import annotations

import asyncio
import logging
import os
import signal
from typing import Optional

from .logging_utils import log_event


async def terminate_async_process(
    process: asyncio.subprocess.Process,
    *,
    grace_seconds: float,
    logger: Optional[logging.Logger] = None,
    event_prefix: str = "process_termination",
) -> bool:
    """
    Send SIGTERM to a child (and its session group), then SIGKILL after the grace period.

    Returns True once the process has exited.
    """
    if process.returncode is not None:
        return True
    grace_seconds = max(0.0, float(grace_seconds))
    pid = process.pid
    _log_event(
        logger,
        logging.DEBUG,
        event_prefix,
        "terminate.start",
        pid=pid,
        grace_seconds=grace_seconds,
    )
    _signal_process(process, signal.SIGTERM, logger=logger, event_prefix=event_prefix)
    try:
        await asyncio.wait_for(process.wait(), timeout=grace_seconds or None)
        _log_event(logger, logging.DEBUG, event_prefix, "terminate.exited", pid=pid)
        return True
    except asyncio.TimeoutError:
        pass

    kill_signal = signal.SIGTERM if os.name == "nt" else signal.SIGKILL
    _log_event(logger, logging.INFO, event_prefix, "terminate.escalate", pid=pid)
    _signal_process(process, kill_signal, logger=logger, event_prefix=event_prefix)
    try:
        await asyncio.wait_for(process.wait(), timeout=5.0)
    except asyncio.TimeoutError:
        _log_event(logger, logging.WARNING, event_prefix, "terminate.failed", pid=pid)
        return False
    _log_event(logger, logging.DEBUG, event_prefix, "terminate.complete", pid=pid)
    return True


def kill_process(
    process: asyncio.subprocess.Process,
    *,
    logger: Optional[logging.Logger] = None,
    event_prefix: str = "process_termination",
) -> None:
    if process.returncode is not None:
        return
    kill_signal = signal.SIGTERM if os.name == "nt" else signal.SIGKILL
    _signal_process(process, kill_signal, logger=logger, event_prefix=event_prefix)


def _signal_process(
    process: asyncio.subprocess.Process,
    sig: int,
    *,
    logger: Optional[logging.Logger],
    event_prefix: str,
) -> bool:
    pid = process.pid
    if os.name != "nt" and hasattr(os, "killpg"):
        try:
            pgid = os.getpgid(pid)
        except OSError:
            pgid = None
        # Only signal the group when the child leads its own session.
        if pgid is not None and pgid == pid:
            return _send_pgid_signal(pgid, sig, logger=logger, event_prefix=event_prefix)
    return _send_pid_signal(pid, sig, logger=logger, event_prefix=event_prefix)


def _send_pid_signal(
    pid: int,
    sig: int,
    *,
    logger: Optional[logging.Logger],
    event_prefix: str,
) -> bool:
    try:
        os.kill(pid, sig)
        _log_event(
            logger,
            logging.DEBUG,
            event_prefix,
            "signal.sent",
            target="pid",
            signal=sig,
            id=pid,
        )
        return True
    except ProcessLookupError:
        _log_event(
            logger,
            logging.DEBUG,
            event_prefix,
            "signal.not_found",
            target="pid",
            signal=sig,
            id=pid,
        )
        return True
    except PermissionError as exc:
        _log_event(
            logger,
            logging.WARNING,
            event_prefix,
            "signal.permission_denied",
            target="pid",
            signal=sig,
            id=pid,
            exc=exc,
        )
        return False
    except OSError as exc:
        _log_event(
            logger,
            logging.DEBUG,
            event_prefix,
            "signal.os_error",
            target="pid",
            signal=sig,
            id=pid,
            exc=exc,
        )
        return True


def _send_pgid_signal(
    pgid: int,
    sig: int,
    *,
    logger: Optional[logging.Logger],
    event_prefix: str,
) -> bool:
    try:
        os.killpg(pgid, sig)
        _log_event(
            logger,
            logging.DEBUG,
            event_prefix,
            "signal.sent",
            target="pgid",
            signal=sig,
            id=pgid,
        )
        return True
    except ProcessLookupError:
        _log_event(
            logger,
            logging.DEBUG,
            event_prefix,
            "signal.not_found",
            target="pgid",
            signal=sig,
            id=pgid,
        )
        return True
    except PermissionError as exc:
        _log_event(
            logger,
            logging.WARNING,
            event_prefix,
            "signal.permission_denied",
            target="pgid",
            signal=sig,
            id=pgid,
            exc=exc,
        )
        return False
    except OSError as exc:
        _log_event(
            logger,
            logging.DEBUG,
            event_prefix,
            "signal.os_error",
            target="pgid",
            signal=sig,
            id=pgid,
            exc=exc,
        )
        return True


def _log_event(
    logger: Optional[logging.Logger],
    level: int,
    event_prefix: str,
    event_name: str,
    **fields,
) -> None:
    if logger is None:
        return
    log_event(logger, level, _qualified_event(event_prefix, event_name), **fields)


def _qualified_event(event_prefix: str, event_name: str) -> str:
    prefix = (event_prefix or "process_termination").strip().rstrip(".")
    return f"{prefix}.{event_name}"


__all__ = ["kill_process", "terminate_async_process"]
