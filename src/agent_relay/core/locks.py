"""Marker-file mutual exclusion for state shared between relay instances.

A lock is held while its marker file exists. Markers older than the staleness
threshold are treated as abandoned by a crashed holder and removed by the next
waiter. Exhausting the retry budget is not fatal: callers are told the lock was
not obtained and carry on without it.
"""

from __future__ import annotations

import contextlib
import logging
import os
import time
from pathlib import Path
from typing import Callable, Iterator, Protocol

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_result,
    stop_after_attempt,
    wait_random,
)

from .logging_utils import log_event

DEFAULT_STALE_SECONDS = 5.0
DEFAULT_MAX_RETRIES = 20
DEFAULT_MIN_WAIT_SECONDS = 0.05
DEFAULT_MAX_WAIT_SECONDS = 0.15

logger = logging.getLogger(__name__)


class Mutex(Protocol):
    """Exclusion primitive guarding the shared state document."""

    def acquire(self) -> bool: ...

    def release(self) -> None: ...

    def hold(self) -> contextlib.AbstractContextManager[bool]: ...


class MarkerFileLock:
    def __init__(
        self,
        path: Path,
        *,
        stale_seconds: float = DEFAULT_STALE_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        min_wait_seconds: float = DEFAULT_MIN_WAIT_SECONDS,
        max_wait_seconds: float = DEFAULT_MAX_WAIT_SECONDS,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._path = path
        self._stale_seconds = max(0.0, float(stale_seconds))
        self._max_retries = max(1, int(max_retries))
        self._min_wait = max(0.0, float(min_wait_seconds))
        self._max_wait = max(self._min_wait, float(max_wait_seconds))
        self._clock = clock
        self._sleep = sleep

    @property
    def path(self) -> Path:
        return self._path

    def acquire(self) -> bool:
        retrying = Retrying(
            stop=stop_after_attempt(self._max_retries),
            wait=wait_random(self._min_wait, self._max_wait),
            retry=retry_if_result(lambda acquired: not acquired),
            retry_error_callback=self._on_exhausted,
            sleep=self._sleep,
        )
        return bool(retrying(self._try_acquire))

    def release(self) -> None:
        try:
            self._path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            log_event(
                logger,
                logging.WARNING,
                "lock.release_failed",
                path=str(self._path),
                exc=exc,
            )

    @contextlib.contextmanager
    def hold(self) -> Iterator[bool]:
        acquired = self.acquire()
        try:
            yield acquired
        finally:
            if acquired:
                self.release()

    def is_stale(self) -> bool:
        try:
            mtime = self._path.stat().st_mtime
        except FileNotFoundError:
            return False
        return self._clock() - mtime > self._stale_seconds

    def _create_marker(self) -> bool:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(str(self._path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        os.close(fd)
        return True

    def _try_acquire(self) -> bool:
        try:
            if self._create_marker():
                return True
            if not self.is_stale():
                return False
            log_event(
                logger,
                logging.INFO,
                "lock.stale_removed",
                path=str(self._path),
                stale_seconds=self._stale_seconds,
            )
            self.release()
            return self._create_marker()
        except OSError as exc:
            log_event(
                logger,
                logging.WARNING,
                "lock.acquire_error",
                path=str(self._path),
                exc=exc,
            )
            return False

    def _on_exhausted(self, retry_state: RetryCallState) -> bool:
        log_event(
            logger,
            logging.WARNING,
            "lock.acquire_exhausted",
            path=str(self._path),
            attempts=retry_state.attempt_number,
        )
        return False


@contextlib.contextmanager
def marker_lock(path: Path, **kwargs) -> Iterator[bool]:
    with MarkerFileLock(path, **kwargs).hold() as acquired:
        yield acquired


def default_lock_factory(
    *,
    stale_seconds: float = DEFAULT_STALE_SECONDS,
    max_retries: int = DEFAULT_MAX_RETRIES,
    min_wait_seconds: float = DEFAULT_MIN_WAIT_SECONDS,
    max_wait_seconds: float = DEFAULT_MAX_WAIT_SECONDS,
) -> Callable[[Path], Mutex]:
    def factory(path: Path) -> Mutex:
        return MarkerFileLock(
            path,
            stale_seconds=stale_seconds,
            max_retries=max_retries,
            min_wait_seconds=min_wait_seconds,
            max_wait_seconds=max_wait_seconds,
        )

    return factory


def lock_path_for(path: Path) -> Path:
    return path.with_suffix(path.suffix + ".lock")


__all__ = [
    "DEFAULT_MAX_RETRIES",
    "DEFAULT_STALE_SECONDS",
    "MarkerFileLock",
    "Mutex",
    "default_lock_factory",
    "lock_path_for",
    "marker_lock",
]
