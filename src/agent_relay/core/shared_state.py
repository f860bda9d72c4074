from __future__ import annotations

import copy
import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from .locks import Mutex, default_lock_factory, lock_path_for
from .logging_utils import log_event
from .utils import atomic_write, dump_json

SHARED_STATE_VERSION = 1
SHARED_STATE_CORRUPT_SUFFIX = ".corrupt"
SHARED_SECTIONS = (
    "sessions",
    "working_dirs",
    "models",
    "token_usage",
    "task_history",
    "command_overrides",
    "locks",
    "claimed_messages",
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def default_shared_state() -> dict[str, Any]:
    state: dict[str, Any] = {"version": SHARED_STATE_VERSION}
    for section in SHARED_SECTIONS:
        state[section] = {}
    return state


def normalize_shared_state(data: dict[str, Any]) -> dict[str, Any]:
    for section in SHARED_SECTIONS:
        if not isinstance(data.get(section), dict):
            data[section] = {}
    data.setdefault("version", SHARED_STATE_VERSION)
    return data


class SharedStateStore:
    """JSON document shared by every relay instance on this host.

    Each write is a full load / mutate / atomic replace cycle performed while
    holding the marker-file lock. Readers never observe a partial document.
    """

    def __init__(
        self,
        path: Path,
        *,
        lock_factory: Optional[Callable[[Path], Mutex]] = None,
    ) -> None:
        self._path = path
        factory = lock_factory or default_lock_factory()
        self._mutex = factory(lock_path_for(path))
        self._thread_lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def mutex(self) -> Mutex:
        return self._mutex

    def read(self) -> dict[str, Any]:
        with self._thread_lock, self._mutex.hold():
            return self._load_unlocked()

    def read_section(self, section: str, key: str) -> Any:
        value = self.read().get(section, {}).get(key)
        return copy.deepcopy(value)

    def update(self, mutator: Callable[[dict[str, Any]], T]) -> Optional[T]:
        with self._thread_lock, self._mutex.hold() as acquired:
            if not acquired:
                log_event(
                    logger,
                    logging.WARNING,
                    "state.shared.unlocked_write",
                    path=str(self._path),
                )
            state = self._load_unlocked()
            result = mutator(state)
            self._save_unlocked(state)
            return result

    def _load_unlocked(self) -> dict[str, Any]:
        if not self._path.exists():
            return default_shared_state()
        try:
            raw = self._path.read_text(encoding="utf-8")
        except OSError as exc:
            log_event(
                logger,
                logging.WARNING,
                "state.shared.read_failed",
                path=str(self._path),
                exc=exc,
            )
            return default_shared_state()
        if not raw.strip():
            return default_shared_state()
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            self._handle_corrupt_state(str(exc))
            return default_shared_state()
        if not isinstance(data, dict):
            self._handle_corrupt_state(
                f"Expected JSON object, got {type(data).__name__}"
            )
            return default_shared_state()
        return normalize_shared_state(data)

    def _save_unlocked(self, state: dict[str, Any]) -> None:
        try:
            atomic_write(self._path, dump_json(state))
        except (OSError, TypeError, ValueError) as exc:
            log_event(
                logger,
                logging.WARNING,
                "state.shared.write_failed",
                path=str(self._path),
                exc=exc,
            )

    def _handle_corrupt_state(self, detail: str) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        backup_path = self._path.with_name(
            f"{self._path.name}{SHARED_STATE_CORRUPT_SUFFIX}.{stamp}"
        )
        try:
            self._path.replace(backup_path)
            backup_value = str(backup_path)
        except OSError:
            backup_value = ""
        log_event(
            logger,
            logging.WARNING,
            "state.shared.corrupt",
            path=str(self._path),
            detail=detail,
            backup_path=backup_value,
        )


__all__ = [
    "SHARED_SECTIONS",
    "SharedStateStore",
    "default_shared_state",
    "normalize_shared_state",
]
