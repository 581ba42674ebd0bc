import datetime
import logging
import os
import signal
import sys
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from types import FrameType
from typing import Any

from rich.console import Console

from .commit_message import synthesize
from .config import Config
from .constants import APP_NAME, LOG_FILE_NAME, SIMPLE_COMMIT_MESSAGE, VERSION
from .errors import (
    AutopilotError,
    LockConflict,
    NetworkFailure,
    RepositoryStateError,
    SafetyViolation,
    SubprocessFailure,
)
from .events import EventLog, HttpSender, OutboundQueue, Sender, make_sender
from .git_wrapper import ChangedFile, GitRepo
from .identity import IdentityStore
from .ignore import IgnoreMatcher
from .ledger import CommitLedger
from .paths import get_state_dir
from .safety import SafetyPipeline, check_team
from .signer import TrustSigner
from .state import RepoLock, StateStore
from .watcher import ChangeEvent, RepoWatcher

logger = logging.getLogger(APP_NAME)
logger.setLevel(logging.INFO)

err_console = Console(stderr=True)

IDLE_POLL = 1.0
"""float: Longest the loop sleeps without a pending deadline."""


class CycleOutcome(str, Enum):
    """Result of a single process_changes() run."""

    BUSY = "busy"
    PAUSED = "paused"
    TOO_SOON = "too_soon"
    CLEAN = "clean"
    BLOCKED_BRANCH = "blocked_branch"
    REMOTE_BLOCKED = "remote_blocked"
    UNSAFE = "unsafe"
    ERROR = "error"
    COMMITTED = "committed"
    PUSH_FAILED = "push_failed"
    PUSHED = "pushed"


@dataclass
class DebounceWindow:
    """Timing of the pending burst of events.

    Attributes:
        first_event_at (float): Set once when the window opens; anchors max-wait.
        last_event_at (float): Moved by every event; anchors the debounce.
    """

    first_event_at: float
    last_event_at: float

    def deadline(self, debounce: float, max_wait: float) -> float:
        return min(self.last_event_at + debounce, self.first_event_at + max_wait)


@dataclass(frozen=True)
class StatusSnapshot:
    """Read-only view of a repository's daemon, for `status` and dashboards.

    Attributes:
        state (str): Scheduler state, or 'running'/'stopped' seen from outside.
        paused (bool): Whether the persisted pause flag is set.
        pause_reason (str | None): Why the daemon is paused.
        pid (int | None): The process holding the repository lock.
        last_commit (dict | None): The newest ledger entry.
        pending_files (int): Changed, non-ignored paths in the working tree.
        commits_today (int): Daemon commits since local midnight.
    """

    state: str
    paused: bool
    pause_reason: str | None
    pid: int | None
    last_commit: dict[str, Any] | None
    pending_files: int
    commits_today: int


class Scheduler:
    """Turns filesystem events into at most one commit cycle at a time.

    States: stopped -> starting -> watching <-> debouncing -> processing.
    Events are delivered from the watchdog thread through on_event(); the
    loop thread in run() waits for the next deadline and calls tick().

    Attributes:
        repo_path (Path): The repository root.
        config (Config): The configuration snapshot (changed only by reload()).
        state (str): The current scheduler state.
        last_commit_at (float | None): Clock reading of the last daemon commit.
    """

    def __init__(
        self,
        repo_path: Path,
        config: Config | None = None,
        identity: IdentityStore | None = None,
        queue: OutboundQueue | None = None,
        sender: Sender | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initializes the scheduler without touching the watcher or lock.

        Raises:
            RepositoryStateError: If repo_path is not a git work tree.
            ConfigError: If the config or ignore files are invalid.
        """
        self.repo_path = repo_path.resolve()
        self.config = config or Config.load(self.repo_path)
        self.repo = GitRepo(self.repo_path, timeout=self.config.core.command_timeout)
        self.identity = identity or IdentityStore()
        self.signer = TrustSigner(self.identity)
        self.queue = queue or OutboundQueue(capacity=self.config.limits.queue_size)
        self._sender_injected = sender is not None
        self.sender = sender
        self.clock = clock
        self._flush_thread: threading.Thread | None = None

        self.state_store = StateStore(self.repo_path)
        self.ledger = CommitLedger(self.repo_path, self.config.limits.ledger_size)
        self.events = EventLog(self.repo_path)
        self.lock = RepoLock(self.repo_path)
        self.matcher = IgnoreMatcher.load(self.repo_path, self.config.files.ignore)
        self.watcher = RepoWatcher(self.repo_path, self.matcher, self.on_change)

        self.state = "stopped"
        self.last_commit_at: float | None = None
        self._window: DebounceWindow | None = None
        self._retry_at: float | None = None
        self._window_lock = threading.Lock()
        self._processing = threading.Lock()
        self._wake = threading.Event()
        self._stop = threading.Event()

    @property
    def name(self) -> str:
        return self.repo_path.name

    # --- Lifecycle ---

    def start(self) -> None:
        """Acquires the lock, validates the repository and starts watching.

        Raises:
            LockConflict: If another live daemon holds the lock.
            RepositoryStateError: If the branch is blocked or detached, or a
                merge/rebase/cherry-pick/revert/bisect is in progress.
        """
        if self.state != "stopped":
            return
        self.state = "starting"
        try:
            self.lock.acquire()
        except LockConflict:
            self.state = "stopped"
            raise

        try:
            branch = self._check_startable()
            self._stop.clear()
            self.watcher.start()
        except Exception:
            self.lock.release()
            self.state = "stopped"
            raise

        self.state = "watching"
        self.events.append("session_start", pid=os.getpid(), branch=branch)
        logger.info(f"STARTED {self.name} on '{branch}' (PID {os.getpid()})")

    def _check_startable(self) -> str:
        if self.repo.is_merge_in_progress():
            raise RepositoryStateError(
                f"{self.name}: a merge, rebase, cherry-pick, revert or bisect is in progress"
            )
        branch = self.repo.current_branch()
        if branch is None:
            raise RepositoryStateError(f"{self.name}: HEAD is detached")
        if branch in self.config.core.blocked_branches:
            raise RepositoryStateError(
                f"{self.name}: branch '{branch}' is blocked. Switch to a feature branch."
            )
        return branch

    def run(self, install_signals: bool = True) -> None:
        """Runs the event loop until stop() or a termination signal.

        Args:
            install_signals (bool): Route SIGINT/SIGTERM to stop(). Only
                honoured on the main thread.
        """
        if install_signals and threading.current_thread() is threading.main_thread():
            self._install_signal_handlers()
        self.start()
        try:
            while not self._stop.is_set():
                deadline = self.next_deadline()
                timeout = IDLE_POLL
                if deadline is not None:
                    timeout = min(IDLE_POLL, max(0.0, deadline - self.clock()))
                self._wake.wait(timeout)
                self._wake.clear()
                if self._stop.is_set():
                    break
                self.tick()
        finally:
            self.shutdown()

    def stop(self) -> None:
        """Requests shutdown; safe to call from signal handlers and other threads."""
        self._stop.set()
        self._wake.set()

    def shutdown(self) -> None:
        """Stops the watcher, waits for an in-flight cycle and releases the lock."""
        if self.state == "stopped":
            return
        self._stop.set()
        self.watcher.stop()
        with self._processing:
            pass
        with self._window_lock:
            self._window = None
            self._retry_at = None
        self.events.append("session_stop", pid=os.getpid())
        self.lock.release()
        self.state = "stopped"
        self.wait_for_flush(self.config.telemetry.timeout)
        if not self._sender_injected:
            self._close_sender()
        logger.info(f"STOPPED {self.name}")

    def _install_signal_handlers(self) -> None:
        def handle(signum: int, _frame: FrameType | None) -> None:
            logger.info(f"Received {signal.Signals(signum).name}, shutting down...")
            self.stop()

        signal.signal(signal.SIGINT, handle)
        signal.signal(signal.SIGTERM, handle)

    def reload(self) -> None:
        """Re-reads config and ignore files. On error the old snapshot stays.

        Raises:
            ConfigError: If the new configuration is invalid.
        """
        config = Config.load(self.repo_path)
        matcher = IgnoreMatcher.load(self.repo_path, config.files.ignore)
        self.config = config
        self.matcher = matcher
        self.watcher.set_matcher(matcher)
        self.repo.timeout = config.core.command_timeout
        self.ledger.capacity = max(1, config.limits.ledger_size)
        self.queue.capacity = max(1, config.limits.queue_size)
        if not self._sender_injected:
            self._close_sender()
        logger.info(f"RELOADED {self.name} configuration")

    # --- Scheduling ---

    def on_change(self, event: ChangeEvent) -> None:
        self.on_event(event.path, event.kind)

    def on_event(self, path: str, kind: str, now: float | None = None) -> None:
        """Records a relevant change. Thread-safe.

        The first event of a window anchors max-wait; every event pushes the
        debounce deadline out.
        """
        if self._stop.is_set():
            return
        now = self.clock() if now is None else now
        with self._window_lock:
            if self._window is None:
                self._window = DebounceWindow(first_event_at=now, last_event_at=now)
            else:
                self._window.last_event_at = now
            if self.state == "watching":
                self.state = "debouncing"
        logger.debug(f"EVENT {kind} {path}")
        self._wake.set()

    @property
    def window(self) -> DebounceWindow | None:
        with self._window_lock:
            return None if self._window is None else DebounceWindow(**vars(self._window))

    def next_deadline(self) -> float | None:
        """Returns the clock reading at which the next cycle is due, if any."""
        watch = self.config.watch
        with self._window_lock:
            deadlines = []
            if self._window is not None:
                deadlines.append(
                    self._window.deadline(watch.debounce_seconds, watch.max_wait_seconds)
                )
            if self._retry_at is not None:
                deadlines.append(self._retry_at)
        return min(deadlines) if deadlines else None

    def tick(self, now: float | None = None) -> CycleOutcome | None:
        """Runs a cycle if a deadline has passed and none is in flight."""
        now = self.clock() if now is None else now
        deadline = self.next_deadline()
        if deadline is None or now < deadline:
            return None
        if self._processing.locked():
            return None
        return self.process_changes(now)

    # --- The cycle ---

    def process_changes(self, now: float | None = None) -> CycleOutcome:
        """Runs one commit cycle. Never raises.

        Returns:
            CycleOutcome: What the cycle did, or why it stopped early.
        """
        if not self._processing.acquire(blocking=False):
            logger.debug(f"{self.name}: cycle already in flight")
            return CycleOutcome.BUSY
        previous = self.state
        try:
            with self._window_lock:
                self._window = None
                self._retry_at = None
                self.state = "processing"
            return self._cycle(self.clock() if now is None else now)
        except Exception as e:
            logger.exception(f"CYCLE ERROR {self.name}: {e}")
            return CycleOutcome.ERROR
        finally:
            with self._window_lock:
                if previous == "stopped":
                    self.state = "stopped"
                elif self.state == "processing":
                    self.state = "debouncing" if self._window else "watching"
            self._processing.release()

    def _cycle(self, now: float) -> CycleOutcome:
        config = self.config
        pause = self.state_store.get()
        if pause.paused:
            logger.info(f"SKIPPED {self.name}: paused ({pause.reason})")
            return CycleOutcome.PAUSED

        min_gap = config.watch.min_seconds_between_commits
        if self.last_commit_at is not None and now - self.last_commit_at < min_gap:
            with self._window_lock:
                self._retry_at = self.last_commit_at + min_gap
            logger.info(
                f"SKIPPED {self.name}: last commit {now - self.last_commit_at:.0f}s ago "
                f"(minimum {min_gap:.0f}s)"
            )
            return CycleOutcome.TOO_SOON

        status = self.repo.status()
        if not status.ok:
            logger.error(f"STATUS ERROR {self.name}: {status.error}")
            return CycleOutcome.ERROR
        candidates = self._candidates(status.files)
        if not candidates:
            logger.debug(f"CLEAN {self.name}")
            return CycleOutcome.CLEAN

        branch = self.repo.current_branch()
        if branch is None or branch in config.core.blocked_branches:
            logger.warning(f"SKIPPED {self.name}: branch '{branch or 'HEAD'}' is blocked")
            return CycleOutcome.BLOCKED_BRANCH

        team = check_team(self.repo, config, branch)
        if not team.ok:
            logger.warning(f"SKIPPED {self.name}: {team.reason}")
            if team.action == "pause":
                self.state_store.pause(f"Team conflict: {team.reason}")
                self.events.append("paused", reason=team.reason)
            return CycleOutcome.REMOTE_BLOCKED
        if team.pulled:
            # The rebase rewrote the work tree; the earlier status is stale.
            status = self.repo.status()
            if not status.ok:
                logger.error(f"STATUS ERROR {self.name}: {status.error}")
                return CycleOutcome.ERROR
            candidates = self._candidates(status.files)
            if not candidates:
                logger.debug(f"CLEAN {self.name} after pulling")
                return CycleOutcome.CLEAN

        try:
            SafetyPipeline(self.repo, config).run(candidates).raise_for_violations()
        except SafetyViolation as e:
            for violation in e.violations:
                logger.warning(f"UNSAFE {self.name}: {violation}")
            self.events.append("safety_blocked", violations=e.violations)
            return CycleOutcome.UNSAFE

        return self._commit(candidates, branch)

    def _candidates(self, files: list[ChangedFile]) -> list[ChangedFile]:
        return [f for f in files if not self.matcher.matches(f.path)]

    def _stage_paths(self, candidates: list[ChangedFile]) -> list[str]:
        paths = []
        for f in candidates:
            paths.append(f.path)
            if f.orig_path and not self.matcher.matches(f.orig_path):
                paths.append(f.orig_path)
        return list(dict.fromkeys(paths))

    def _ignored_in_index(self) -> list[str] | None:
        staged = self.repo.staged_files()
        if staged is None:
            return None
        return [p for p in staged if self.matcher.matches(p)]

    def _commit(self, candidates: list[ChangedFile], branch: str) -> CycleOutcome:
        config = self.config

        ignored = self._ignored_in_index()
        if ignored is None:
            logger.error(f"STAGE ERROR {self.name}: could not read the index")
            return CycleOutcome.ERROR
        if ignored:
            logger.warning(f"UNSAFE {self.name}: ignored paths already staged: {ignored}")
            return CycleOutcome.UNSAFE

        paths = self._stage_paths(candidates)
        try:
            self.repo.add(paths).raise_for_status()
        except SubprocessFailure as e:
            logger.error(f"STAGE ERROR {self.name}: {e}")
            self.repo.unstage(paths)
            return CycleOutcome.ERROR

        ignored = self._ignored_in_index()
        if ignored is None or ignored:
            logger.error(f"STAGE ERROR {self.name}: unexpected staged paths {ignored}")
            self.repo.unstage(paths)
            return CycleOutcome.ERROR if ignored is None else CycleOutcome.UNSAFE

        staged = self.repo.staged_files() or []
        if not staged:
            logger.debug(f"CLEAN {self.name}: nothing to commit after staging")
            return CycleOutcome.CLEAN

        if config.core.commit_message_mode == "simple":
            message = SIMPLE_COMMIT_MESSAGE
        else:
            message = synthesize(candidates, self.repo.diff(staged=True))
        subject = message.splitlines()[0]
        if config.core.sign_commits:
            message = self.signer.sign(message)

        try:
            self.repo.commit(message).raise_for_status()
        except SubprocessFailure as e:
            logger.error(f"COMMIT ERROR {self.name}: {e}")
            self.repo.unstage(paths)
            return CycleOutcome.ERROR

        sha = self.repo.head() or ""
        self.ledger.record(sha, message, staged)
        self.last_commit_at = self.clock()
        self.events.append("commit", hash=sha, branch=branch, files=staged, message=subject)
        logger.info(f"COMMITTED {self.name}: {sha[:8]} {subject}")

        if not config.core.auto_push:
            return CycleOutcome.COMMITTED
        return self._push(sha, branch)

    def _push(self, sha: str, branch: str) -> CycleOutcome:
        remote = self.config.core.remote_name
        pushed = self.repo.push(remote, branch)
        try:
            pushed.raise_for_status()
        except NetworkFailure as e:
            logger.error(f"PUSH ERROR {self.name}: {e}")
            self.state_store.pause(f"Push failed: {pushed.error}")
            self.events.append("push_failed", hash=sha, branch=branch, error=pushed.error)
            return CycleOutcome.PUSH_FAILED

        logger.info(f"SUCCESS {self.name}: Pushed to {remote}/{branch}.")
        record = self.events.append("push", hash=sha, branch=branch, remote=remote)
        self.queue.enqueue({**record, "version": VERSION, "user": self.identity.get().id})
        self._flush_in_background()
        return CycleOutcome.PUSHED

    def _flush_in_background(self) -> None:
        """Delivers queued events on a worker thread, off the commit path."""
        sender = self._telemetry_sender()
        if sender is None:
            return
        if self._flush_thread is not None and self._flush_thread.is_alive():
            return
        self._flush_thread = threading.Thread(
            target=self.queue.flush, args=(sender,), name=f"{APP_NAME}-flush", daemon=True
        )
        self._flush_thread.start()

    def wait_for_flush(self, timeout: float | None = None) -> bool:
        """Waits for a background flush. Returns False if it is still running."""
        thread = self._flush_thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def _telemetry_sender(self) -> Sender | None:
        """Builds the HTTP sender on first use when an endpoint is configured."""
        if self.sender is None and not self._sender_injected:
            telemetry = self.config.telemetry
            self.sender = make_sender(telemetry.endpoint, telemetry.timeout)
        return self.sender

    def _close_sender(self) -> None:
        if isinstance(self.sender, HttpSender):
            self.sender.close()
        self.sender = None

    # --- Queries ---

    def snapshot(self) -> StatusSnapshot:
        """Builds a read-only status view. Works from any process."""
        pause = self.state_store.get()
        if self.lock.held:
            state, pid = self.state, os.getpid()
        elif self.lock.is_locked():
            info = self.lock.read()
            state, pid = "running", info.pid if info else None
        else:
            state, pid = "stopped", None

        status = self.repo.status()
        pending = len(self.matcher.filter([f.path for f in status.files])) if status.ok else 0
        last = self.ledger.last()
        midnight = datetime.datetime.now().astimezone().replace(
            hour=0, minute=0, second=0, microsecond=0
        )
        return StatusSnapshot(
            state=state,
            paused=pause.paused,
            pause_reason=pause.reason,
            pid=pid,
            last_commit=vars(last).copy() if last else None,
            pending_files=pending,
            commits_today=self.ledger.count_since(midnight),
        )


def setup_logging(
    interactive: bool, log_file: Path | None = None, max_bytes: int = 5 * 1024 * 1024
) -> None:
    """Configures the logging subsystem.

    Args:
        interactive (bool): If True, logs to stdout. If False, logs to stderr.
        log_file (Path | None): When given, also log to this file with rotation.
        max_bytes (int): Rotation threshold for the log file.
    """
    formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)s: %(message)s", "%Y-%m-%d %H:%M:%S"
    )

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    stream_handler = logging.StreamHandler(sys.stdout if interactive else sys.stderr)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if log_file is not None:
        file_handler = RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=5)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


def main(repo_path: Path | None = None, interactive: bool = True) -> int:
    """Runs the daemon in the foreground for one repository until signalled.

    Args:
        repo_path (Path | None): The repository; defaults to the current directory.
        interactive (bool): Log to stdout instead of stderr.

    Returns:
        int: The process exit status.
    """
    repo_path = (repo_path or Path.cwd()).resolve()
    try:
        scheduler = Scheduler(repo_path)
    except AutopilotError as e:
        err_console.print(f"[bold red]ERROR:[/bold red] {e}")
        return 1

    setup_logging(
        interactive,
        log_file=get_state_dir(repo_path) / LOG_FILE_NAME,
        max_bytes=scheduler.config.limits.max_log_size,
    )
    try:
        scheduler.run()
    except AutopilotError as e:
        logger.error(f"START ERROR {repo_path.name}: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
