"""Tests for persisted pause state and the single-instance lock."""

import json
import os
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from git_autopilot import state
from git_autopilot.errors import LockConflict
from git_autopilot.state import RepoLock, StateStore, is_process_running


def test_pause_survives_a_fresh_store(tmp_path: Path) -> None:
    """Verifies that pausing is durable across processes (new store instances).

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
    """
    StateStore(tmp_path).pause("deploy freeze")

    state = StateStore(tmp_path).get()
    assert state.paused
    assert state.reason == "deploy freeze"
    assert state.paused_at is not None

    StateStore(tmp_path).resume()
    assert not StateStore(tmp_path).get().paused


def test_pause_without_reason_uses_default(tmp_path: Path) -> None:
    assert StateStore(tmp_path).pause().reason == "User paused"


def test_missing_state_means_running(tmp_path: Path) -> None:
    state = StateStore(tmp_path).get()
    assert state.status == "running"
    assert state.reason is None


@pytest.mark.parametrize("content", ["{broken", '{"status": "sleeping"}', "[1, 2]"])
def test_corrupt_state_reads_as_running(
    tmp_path: Path, caplog: pytest.LogCaptureFixture, content: str
) -> None:
    """Verifies that an unreadable state file never blocks the daemon.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
        caplog (pytest.LogCaptureFixture): Pytest fixture for captured logs.
        content (str): The corrupt file body.
    """
    store = StateStore(tmp_path)
    store.state_file.write_text(content)

    assert not store.get().paused
    assert "Corrupt pause state" in caplog.text


def test_state_file_uses_camel_case_keys(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    store.pause("x")
    data = json.loads(store.state_file.read_text())
    assert set(data) == {"status", "reason", "pausedAt"}


def test_lock_records_pid_and_blocks_second_holder(tmp_path: Path) -> None:
    """Verifies that a second lock on the same repository conflicts.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
    """
    first = RepoLock(tmp_path)
    info = first.acquire()
    try:
        assert info.pid == os.getpid()
        assert first.held
        assert first.read().pid == os.getpid()

        second = RepoLock(tmp_path)
        assert second.is_locked()
        with pytest.raises(LockConflict) as exc:
            second.acquire()
        assert exc.value.pid == os.getpid()
    finally:
        first.release()

    assert not first.lock_file.exists()
    assert not RepoLock(tmp_path).is_locked()


def test_lock_can_be_reacquired_after_release(tmp_path: Path) -> None:
    first = RepoLock(tmp_path)
    first.acquire()
    first.release()

    second = RepoLock(tmp_path)
    second.acquire()
    try:
        assert second.held
    finally:
        second.release()


def test_is_locked_never_takes_the_flock(tmp_path: Path, mocker: MagicMock) -> None:
    """Verifies a status query cannot make a concurrent acquire() fail.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
        mocker (MagicMock): Pytest fixture for mocking.
    """
    holder = RepoLock(tmp_path)
    holder.acquire()
    try:
        flock = mocker.spy(state.fcntl, "flock")
        assert RepoLock(tmp_path).is_locked()
        flock.assert_not_called()
    finally:
        holder.release()


def test_unreadable_lock_file_is_kept(tmp_path: Path) -> None:
    lock = RepoLock(tmp_path)
    lock.lock_file.write_text("")

    assert not lock.is_locked()
    assert not lock.clear_stale()
    assert lock.lock_file.exists()


def test_release_twice_is_safe(tmp_path: Path) -> None:
    lock = RepoLock(tmp_path)
    lock.acquire()
    lock.release()
    lock.release()
    assert not lock.held


def test_stale_lock_file_does_not_block(tmp_path: Path) -> None:
    """Verifies that a leftover file from a crashed daemon is not a live lock.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
    """
    lock = RepoLock(tmp_path)
    lock.lock_file.write_text(json.dumps({"pid": 999999, "startedAt": "then"}))

    assert not lock.is_locked()
    assert lock.clear_stale()
    assert not lock.lock_file.exists()
    assert not lock.clear_stale()

    lock.lock_file.write_text(json.dumps({"pid": 999999, "startedAt": "then"}))
    lock.acquire()
    try:
        assert lock.read().pid == os.getpid()
    finally:
        lock.release()


def test_is_process_running() -> None:
    assert is_process_running(os.getpid())
    assert not is_process_running(0)
    assert not is_process_running(-5)
