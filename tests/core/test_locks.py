from __future__ import annotations

import os
import time
from pathlib import Path

from agent_relay.core.locks import MarkerFileLock, lock_path_for, marker_lock


def _no_sleep(_seconds: float) -> None:
    return None


class TestMarkerFileLock:
    def test_acquire_creates_marker_and_release_removes_it(self, tmp_path: Path) -> None:
        lock = MarkerFileLock(tmp_path / "state.json.lock", sleep=_no_sleep)

        assert lock.acquire() is True
        assert lock.path.exists()

        lock.release()
        assert not lock.path.exists()

    def test_second_acquire_fails_after_retry_budget(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json.lock"
        holder = MarkerFileLock(path, sleep=_no_sleep)
        sleeps: list[float] = []
        contender = MarkerFileLock(
            path,
            max_retries=3,
            min_wait_seconds=0.01,
            max_wait_seconds=0.02,
            sleep=sleeps.append,
        )

        assert holder.acquire() is True
        assert contender.acquire() is False
        assert len(sleeps) == 2
        assert all(0.01 <= value <= 0.02 for value in sleeps)
        assert path.exists()

    def test_stale_marker_is_taken_over(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json.lock"
        path.write_text("", encoding="utf-8")
        old = time.time() - 60
        os.utime(path, (old, old))

        lock = MarkerFileLock(path, stale_seconds=5, max_retries=1, sleep=_no_sleep)

        assert lock.is_stale() is True
        assert lock.acquire() is True
        assert path.exists()
        assert lock.is_stale() is False

    def test_fresh_marker_is_not_stale(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json.lock"
        path.write_text("", encoding="utf-8")
        lock = MarkerFileLock(path, stale_seconds=5, clock=lambda: path.stat().st_mtime + 1)

        assert lock.is_stale() is False

    def test_hold_only_releases_what_it_acquired(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json.lock"
        other = MarkerFileLock(path, sleep=_no_sleep)
        assert other.acquire() is True

        with MarkerFileLock(path, max_retries=1, sleep=_no_sleep).hold() as acquired:
            assert acquired is False

        assert path.exists()

    def test_release_without_marker_is_a_noop(self, tmp_path: Path) -> None:
        lock = MarkerFileLock(tmp_path / "missing.lock")
        lock.release()
        assert not lock.path.exists()


def test_marker_lock_context_releases_on_exit(tmp_path: Path) -> None:
    path = tmp_path / "state.json.lock"
    with marker_lock(path, sleep=_no_sleep) as acquired:
        assert acquired is True
        assert path.exists()
    assert not path.exists()


def test_lock_path_for_appends_suffix(tmp_path: Path) -> None:
    assert lock_path_for(tmp_path / "shared-state.json") == (
        tmp_path / "shared-state.json.lock"
    )
