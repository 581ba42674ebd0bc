import contextlib
import datetime
import fcntl
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from .constants import APP_NAME, LOCK_FILE_NAME, STATE_FILE_NAME
from .errors import LockConflict
from .paths import get_state_dir

logger = logging.getLogger(APP_NAME)


def now_iso() -> str:
    return datetime.datetime.now().astimezone().isoformat(timespec="seconds")


def write_json_atomic(path: Path, data: object) -> None:
    """Writes JSON through a temp file and an atomic rename.

    Raises:
        OSError: If the write fails; the temp file is cleaned up.
    """
    tmp_file = path.with_suffix(".tmp")
    try:
        with open(tmp_file, "w") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())  # Force write to disk.
        os.replace(tmp_file, path)
    except OSError:
        if tmp_file.exists():
            with contextlib.suppress(OSError):
                tmp_file.unlink()
        raise


def is_process_running(pid: int) -> bool:
    """Checks whether a process with the given id exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


@dataclass(frozen=True)
class PauseState:
    """Persisted pause flag.

    Attributes:
        status (str): 'running' or 'paused'.
        reason (str | None): Why the daemon was paused.
        paused_at (str | None): ISO timestamp of the pause.
    """

    status: str = "running"
    reason: str | None = None
    paused_at: str | None = None

    @property
    def paused(self) -> bool:
        return self.status == "paused"


class StateStore:
    """Reads and writes the pause flag in .autopilot/state.json.

    The file is re-read on every query so that a pause issued from another
    process (the CLI) is seen by the running daemon at its next cycle.
    """

    def __init__(self, repo_path: Path):
        self.repo_path = repo_path
        self.state_file = get_state_dir(repo_path) / STATE_FILE_NAME

    def get(self) -> PauseState:
        if not self.state_file.exists():
            return PauseState()
        try:
            data = json.loads(self.state_file.read_text())
            if data.get("status") not in ("running", "paused"):
                raise ValueError(f"invalid status {data.get('status')!r}")
            return PauseState(
                status=data["status"],
                reason=data.get("reason"),
                paused_at=data.get("pausedAt"),
            )
        except (OSError, ValueError, AttributeError) as e:
            logger.warning(f"Corrupt pause state in {self.state_file} ({e}). Assuming running.")
            return PauseState()

    def _write(self, state: PauseState) -> None:
        write_json_atomic(
            self.state_file,
            {"status": state.status, "reason": state.reason, "pausedAt": state.paused_at},
        )

    def pause(self, reason: str | None = None) -> PauseState:
        state = PauseState("paused", reason or "User paused", now_iso())
        self._write(state)
        logger.info(f"PAUSED {self.repo_path.name}: {state.reason}")
        return state

    def resume(self) -> PauseState:
        state = PauseState()
        self._write(state)
        logger.info(f"RESUMED {self.repo_path.name}")
        return state


@dataclass(frozen=True)
class LockInfo:
    """Contents of the lock file.

    Attributes:
        pid (int): Process id of the holder.
        started_at (str): ISO timestamp of acquisition.
    """

    pid: int
    started_at: str


class RepoLock:
    """Single-instance lock held with an exclusive, non-blocking flock.

    Only one process can hold the lock at a time; the kernel releases it if the
    holder dies, so a stale file left behind by a crash never blocks a restart.
    """

    def __init__(self, repo_path: Path):
        self.repo_path = repo_path
        self.lock_file = get_state_dir(repo_path) / LOCK_FILE_NAME
        self._fd: int | None = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> LockInfo:
        """Takes the lock and records our pid.

        Raises:
            LockConflict: If another live process holds the lock.
        """
        if self._fd is not None:
            raise LockConflict("Lock already held by this process", os.getpid())

        while True:
            fd = os.open(self.lock_file, os.O_RDWR | os.O_CREAT, 0o644)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                os.close(fd)
                info = self.read()
                pid = info.pid if info else None
                raise LockConflict(
                    f"Autopilot is already running in {self.repo_path} (PID {pid})", pid
                ) from None

            # The previous holder may have unlinked the file between our open and
            # flock; in that case we locked an orphan inode and must retry.
            try:
                same = os.fstat(fd).st_ino == os.stat(self.lock_file).st_ino
            except FileNotFoundError:
                same = False
            if same:
                break
            os.close(fd)

        info = LockInfo(pid=os.getpid(), started_at=now_iso())
        os.ftruncate(fd, 0)
        os.write(fd, json.dumps({"pid": info.pid, "startedAt": info.started_at}).encode())
        os.fsync(fd)
        self._fd = fd
        return info

    def release(self) -> None:
        """Removes the lock file and drops the lock. Safe to call twice."""
        if self._fd is None:
            return
        with contextlib.suppress(FileNotFoundError):
            self.lock_file.unlink()
        fcntl.flock(self._fd, fcntl.LOCK_UN)
        os.close(self._fd)
        self._fd = None

    def read(self) -> LockInfo | None:
        """Returns the recorded holder, or None if the file is missing or unreadable."""
        try:
            data = json.loads(self.lock_file.read_text())
            return LockInfo(pid=int(data["pid"]), started_at=str(data.get("startedAt", "")))
        except (OSError, ValueError, KeyError, TypeError):
            return None

    def is_locked(self) -> bool:
        """Checks whether a live process holds the lock.

        Reads the recorded pid rather than probing with flock, so a status
        query never competes with a daemon that is acquiring the lock.
        """
        if self._fd is not None:
            return True
        info = self.read()
        return info is not None and is_process_running(info.pid)

    def clear_stale(self) -> bool:
        """Deletes a lock file whose recorded holder is dead.

        Returns:
            bool: True if a file was removed. An empty or unreadable file may
                  belong to a daemon that is still starting and is kept.
        """
        info = self.read()
        if info is None or is_process_running(info.pid):
            return False
        with contextlib.suppress(FileNotFoundError):
            self.lock_file.unlink()
        return True
