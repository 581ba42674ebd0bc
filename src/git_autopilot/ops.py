import json
import logging
import os
import signal
import subprocess
import time
from pathlib import Path
from typing import Any

from rich.console import Console

from . import daemon
from .config import (
    Config,
    get_value,
    read_config_file,
    set_value,
    to_dict,
    write_config_file,
)
from .constants import APP_NAME, DEFAULT_IGNORE_TEMPLATE, LOG_FILE_NAME, STATE_DIR_NAME
from .errors import AutopilotError, ConfigError, RepositoryStateError, SubprocessFailure
from .git_wrapper import GitRepo
from .ledger import CommitLedger, UndoResult, undo
from .paths import (
    get_global_config_path,
    get_ignore_path,
    get_local_config_path,
    get_state_dir,
)
from .state import PauseState, RepoLock, StateStore, is_process_running

console = Console()
logger = logging.getLogger(APP_NAME)

STOP_TIMEOUT = 10.0
"""float: Seconds `stop` waits for the daemon to release its lock."""

STARTER_CONFIG = {
    "core": {"auto_push": True, "commit_message_mode": "smart"},
    "watch": {"debounce_seconds": 20, "min_seconds_between_commits": 180},
}
"""dict: Repo-local settings written by `init`; everything else inherits."""


def find_repo_root(start: Path | None = None) -> Path:
    """Walks up from start (default: cwd) to the directory containing .git.

    Raises:
        RepositoryStateError: If no enclosing git repository exists.
    """
    current = (start or Path.cwd()).resolve()
    for candidate in (current, *current.parents):
        if (candidate / ".git").exists():
            return candidate
    raise RepositoryStateError(f"Not a git repository: {current}")


def _exclude_state_dir(repo: GitRepo) -> None:
    """Keeps the runtime state directory out of `git status` via info/exclude."""
    exclude = repo.git_dir / "info" / "exclude"
    entry = f"/{STATE_DIR_NAME}/"
    try:
        existing = exclude.read_text() if exclude.exists() else ""
        if entry in existing.splitlines():
            return
        exclude.parent.mkdir(parents=True, exist_ok=True)
        with open(exclude, "a") as f:
            if existing and not existing.endswith("\n"):
                f.write("\n")
            f.write(entry + "\n")
    except OSError as e:
        logger.warning(f"Could not update {exclude}: {e}")


def init_repo(repo_path: Path) -> list[Path]:
    """Writes starter config and ignore files into a repository.

    Existing files are left untouched.

    Returns:
        list[Path]: The files that were created.

    Raises:
        RepositoryStateError: If repo_path is not a git repository.
    """
    repo = GitRepo(repo_path)
    created = []

    ignore_path = get_ignore_path(repo_path)
    if ignore_path.exists():
        console.print(f"[dim]{ignore_path.name} already exists.[/dim]")
    else:
        ignore_path.write_text(
            "# Paths Git Autopilot never commits\n" + "\n".join(DEFAULT_IGNORE_TEMPLATE) + "\n"
        )
        created.append(ignore_path)
        console.print(f"[bold green]✔ Created {ignore_path.name}[/bold green]")

    config_path = get_local_config_path(repo_path)
    if config_path.exists():
        console.print(f"[dim]{config_path.name} already exists.[/dim]")
    else:
        write_config_file(config_path, STARTER_CONFIG)
        created.append(config_path)
        console.print(f"[bold green]✔ Created {config_path.name}[/bold green]")

    get_state_dir(repo_path)
    _exclude_state_dir(repo)

    console.print("\n[bold]Next steps:[/bold]")
    console.print(f"  1. Review {config_path.name} and {ignore_path.name}")
    console.print("  2. Switch to a feature branch (main/master are blocked by default)")
    console.print("  3. Run [bold cyan]git-autopilot start[/bold cyan]")
    return created


def start(repo_path: Path) -> int:
    """Runs the daemon in the foreground until Ctrl+C or `git-autopilot stop`."""
    _exclude_state_dir(GitRepo(repo_path))
    console.print(f"Watching [bold cyan]{repo_path}[/bold cyan] (Ctrl+C to stop)...")
    return daemon.main(repo_path, interactive=True)


def stop(repo_path: Path, timeout: float = STOP_TIMEOUT) -> bool:
    """Sends SIGTERM to the daemon holding the repository lock.

    Returns:
        bool: True if a running daemon was stopped, False if none was running.

    Raises:
        AutopilotError: If the daemon could not be signalled or did not exit.
    """
    lock = RepoLock(repo_path)
    if not lock.is_locked():
        if lock.clear_stale():
            console.print("[dim]Removed stale lock file.[/dim]")
        console.print("Not running.", style="yellow")
        return False

    info = lock.read()
    if info is None or not is_process_running(info.pid):
        raise AutopilotError(f"Lock in {repo_path} is held but its PID is unknown")

    try:
        os.kill(info.pid, signal.SIGTERM)
    except ProcessLookupError:
        lock.clear_stale()
        console.print("Not running.", style="yellow")
        return False
    except PermissionError as e:
        raise AutopilotError(f"Cannot signal PID {info.pid}: {e}") from e

    deadline = time.monotonic() + timeout
    with console.status(f"Stopping daemon (PID {info.pid})...", spinner="dots"):
        while lock.is_locked():
            if time.monotonic() > deadline:
                raise AutopilotError(f"Daemon (PID {info.pid}) did not stop within {timeout:.0f}s")
            time.sleep(0.1)

    console.print(f"[bold green]✔ Stopped.[/bold green] PID {info.pid}")
    return True


def status(repo_path: Path) -> daemon.StatusSnapshot:
    """Returns the daemon status snapshot for a repository."""
    return daemon.Scheduler(repo_path).snapshot()


def pause(repo_path: Path, reason: str | None = None) -> PauseState:
    GitRepo(repo_path)
    state = StateStore(repo_path).pause(reason)
    console.print(f"Autopilot paused: {state.reason}", style="bold yellow")
    return state


def resume(repo_path: Path) -> PauseState:
    GitRepo(repo_path)
    state = StateStore(repo_path).resume()
    console.print("Autopilot resumed. Commits active.", style="bold green")
    return state


def run_undo(repo_path: Path, count: int = 1) -> UndoResult:
    """Undoes the newest daemon commits and reports what happened.

    Raises:
        SubprocessFailure: If a reset or revert failed part-way.
    """
    config = Config.load(repo_path)
    repo = GitRepo(repo_path, timeout=config.core.command_timeout)
    ledger = CommitLedger(repo_path, config.limits.ledger_size)

    result = undo(repo, ledger, count)

    for entry in result.skipped:
        console.print(f"[dim]Dropped missing commit {entry.hash[:8]} from history.[/dim]")
    for entry in result.undone:
        subject = entry.message.splitlines()[0] if entry.message else ""
        console.print(f"[green]✔ Undid[/green] {entry.hash[:8]} {subject}")

    if result.error:
        raise SubprocessFailure(
            f"Undo stopped after {len(result.undone)} commit(s): {result.error}"
        )
    if not result.undone:
        console.print("No Autopilot commits to undo.", style="yellow")
    return result


def _config_target(repo_path: Path | None, use_global: bool) -> Path:
    if use_global or repo_path is None:
        return get_global_config_path()
    return get_local_config_path(repo_path)


def config_get(repo_path: Path | None, key: str, use_global: bool = False) -> Any:
    """Reads an effective config value (defaults + global [+ local]).

    Raises:
        ConfigError: If the key does not exist or a config file is invalid.
    """
    config = Config.load(None if use_global else repo_path)
    try:
        return get_value(config, key)
    except KeyError:
        raise ConfigError(f"Unknown config key '{key}'") from None


def config_set(repo_path: Path | None, key: str, raw: str, use_global: bool = False) -> Any:
    path = _config_target(repo_path, use_global)
    value = set_value(path, key, raw)
    console.print(f"[bold green]✔[/bold green] {key} = {json.dumps(value)} [dim]({path})[/dim]")
    return value


def config_list(repo_path: Path | None, use_global: bool = False) -> dict[str, Any]:
    """Returns the effective configuration, or the raw global file with --global."""
    if use_global:
        path = get_global_config_path()
        return read_config_file(path) if path.exists() else {}
    return to_dict(Config.load(repo_path))


def tail_log(repo_path: Path) -> None:
    """Follows the daemon log file in real-time."""
    log_file = repo_path / STATE_DIR_NAME / LOG_FILE_NAME
    if not log_file.exists():
        console.print(f"[red]No log file found yet at {log_file}.[/red]")
        return

    console.print(f"Tailing [bold cyan]{log_file}[/bold cyan] (Ctrl+C to stop)...")
    try:
        subprocess.run(["tail", "-n", "200", "-f", str(log_file)])
    except KeyboardInterrupt:
        console.print("\nStopped.", style="dim")
