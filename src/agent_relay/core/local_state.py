from __future__ import annotations

import copy
import json
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from .logging_utils import log_event
from .utils import atomic_write, dump_json

LOCAL_SECTIONS = (
    "sessions",
    "working_dirs",
    "models",
    "token_usage",
    "task_history",
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def default_local_state() -> dict[str, Any]:
    return {section: {} for section in LOCAL_SECTIONS}


class LocalStateStore:
    """In-memory state owned by one relay instance, mirrored to a private file.

    The in-memory table is authoritative; every mutation is followed by a full
    snapshot write. Write failures are logged and otherwise ignored.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._state: dict[str, Any] = default_local_state()
        self._lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._path

    def read_snapshot(self) -> dict[str, Any]:
        """Return the raw on-disk snapshot (legacy keys included)."""
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            log_event(
                logger,
                logging.WARNING,
                "state.local.load_failed",
                path=str(self._path),
                exc=exc,
            )
            return {}
        return data if isinstance(data, dict) else {}

    def replace(self, state: dict[str, Any], *, persist: bool = True) -> None:
        with self._lock:
            fresh = default_local_state()
            for section in LOCAL_SECTIONS:
                value = state.get(section)
                if isinstance(value, dict):
                    fresh[section] = copy.deepcopy(value)
            self._state = fresh
            if persist:
                self._persist_locked()

    def read(self) -> dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._state)

    def read_section(self, section: str, key: str) -> Any:
        with self._lock:
            return copy.deepcopy(self._state.get(section, {}).get(key))

    def update(self, mutator: Callable[[dict[str, Any]], T]) -> Optional[T]:
        with self._lock:
            result = mutator(self._state)
            self._persist_locked()
            return result

    def persist(self) -> None:
        with self._lock:
            self._persist_locked()

    def _persist_locked(self) -> None:
        try:
            atomic_write(self._path, dump_json(self._state))
        except (OSError, TypeError, ValueError) as exc:
            log_event(
                logger,
                logging.WARNING,
                "state.local.write_failed",
                path=str(self._path),
                exc=exc,
            )


__all__ = ["LOCAL_SECTIONS", "LocalStateStore", "default_local_state"]
