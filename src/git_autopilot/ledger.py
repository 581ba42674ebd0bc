import datetime
import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path

from .constants import APP_NAME, HISTORY_FILE_NAME
from .git_wrapper import GitRepo
from .paths import get_state_dir
from .state import now_iso, write_json_atomic

logger = logging.getLogger(APP_NAME)


@dataclass(frozen=True)
class LedgerEntry:
    """A commit authored by the daemon.

    Attributes:
        hash (str): Full commit hash.
        message (str): The commit message (including trailers).
        files (list[str]): Paths included in the commit.
        timestamp (str): ISO timestamp of the commit.
    """

    hash: str
    message: str
    files: list[str] = field(default_factory=list)
    timestamp: str = ""


class CommitLedger:
    """Capped, most-recent-first record of daemon commits, used for undo.

    Attributes:
        history_file (Path): Location of the JSON array.
        capacity (int): Maximum number of entries kept; oldest are dropped.
    """

    def __init__(self, repo_path: Path, capacity: int = 100):
        self.repo_path = repo_path
        self.capacity = max(1, capacity)
        self.history_file = get_state_dir(repo_path) / HISTORY_FILE_NAME

    def entries(self) -> list[LedgerEntry]:
        """Returns all entries, newest first. A corrupt file reads as empty."""
        if not self.history_file.exists():
            return []
        try:
            data = json.loads(self.history_file.read_text())
            if isinstance(data, dict):
                data = data.get("commits", [])
            return [
                LedgerEntry(
                    hash=item["hash"],
                    message=item.get("message", ""),
                    files=list(item.get("files", [])),
                    timestamp=item.get("timestamp", ""),
                )
                for item in data
            ]
        except (OSError, ValueError, TypeError, KeyError, AttributeError) as e:
            logger.warning(f"Corrupt commit ledger {self.history_file} ({e}). Starting empty.")
            return []

    def _save(self, entries: list[LedgerEntry]) -> None:
        write_json_atomic(self.history_file, [asdict(e) for e in entries])

    def record(self, sha: str, message: str, files: list[str]) -> LedgerEntry:
        """Prepends a new entry, trimming the ledger to capacity."""
        entry = LedgerEntry(hash=sha, message=message, files=list(files), timestamp=now_iso())
        entries = [entry, *self.entries()][: self.capacity]
        self._save(entries)
        return entry

    def last(self) -> LedgerEntry | None:
        entries = self.entries()
        return entries[0] if entries else None

    def pop(self) -> LedgerEntry | None:
        """Removes and returns the newest entry."""
        entries = self.entries()
        if not entries:
            return None
        self._save(entries[1:])
        return entries[0]

    def count_since(self, since: datetime.datetime) -> int:
        """Counts entries committed at or after the given aware datetime."""
        count = 0
        for entry in self.entries():
            try:
                ts = datetime.datetime.fromisoformat(entry.timestamp)
            except ValueError:
                continue
            if ts.tzinfo is None:
                ts = ts.astimezone()
            if ts >= since:
                count += 1
        return count


@dataclass(frozen=True)
class UndoResult:
    """Summary of an undo run.

    Attributes:
        undone (list[LedgerEntry]): Entries successfully reset or reverted.
        skipped (list[LedgerEntry]): Stale entries whose commit no longer exists.
        error (str | None): The failure that stopped the run early, if any.
    """

    undone: list[LedgerEntry]
    skipped: list[LedgerEntry]
    error: str | None = None


def undo(repo: GitRepo, ledger: CommitLedger, count: int = 1) -> UndoResult:
    """Undoes the most recent daemon commits.

    The newest ledger entry is soft-reset when it is HEAD (keeping its changes
    in the working tree) and reverted otherwise, since a newer manual commit
    sits on top of it. A missing commit is dropped from the ledger and does not
    count. Any reset/revert failure stops the run.

    Args:
        repo (GitRepo): The repository.
        ledger (CommitLedger): The daemon's commit ledger.
        count (int): How many commits to undo.

    Returns:
        UndoResult: What was undone and why the run stopped.

    Raises:
        ValueError: If count is not a positive integer.
    """
    if count < 1:
        raise ValueError("Invalid count. Must be a positive integer.")

    undone: list[LedgerEntry] = []
    skipped: list[LedgerEntry] = []

    while len(undone) < count:
        entry = ledger.last()
        if entry is None:
            logger.warning("No more Autopilot commits found in history.")
            break

        if not repo.commit_exists(entry.hash):
            logger.warning(
                f"Commit {entry.hash} not found in git history. Removing from ledger."
            )
            ledger.pop()
            skipped.append(entry)
            continue

        if repo.head() == entry.hash:
            logger.info(f"UNDO reset --soft {entry.hash[:8]} ({_subject(entry)})")
            res = repo.reset_soft("HEAD~1")
        else:
            logger.info(f"UNDO revert {entry.hash[:8]} ({_subject(entry)})")
            res = repo.revert(entry.hash)
            if not res.ok and repo.is_merge_in_progress():
                repo.revert_abort()

        if not res.ok:
            logger.error(f"UNDO ERROR {entry.hash[:8]}: {res.error}")
            return UndoResult(undone, skipped, res.error)

        ledger.pop()
        undone.append(entry)

    return UndoResult(undone, skipped)


def _subject(entry: LedgerEntry) -> str:
    lines = entry.message.splitlines()
    return lines[0] if lines else ""
