import logging
import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

from .constants import APP_NAME, GIT_LOCK_FILES
from .errors import NetworkFailure, RepositoryStateError, SubprocessFailure

logger = logging.getLogger(APP_NAME)

NETWORK_COMMANDS = ("fetch", "pull", "push", "ls-remote")
UNMERGED_STATUSES = frozenset({"DD", "AU", "UD", "UA", "DU", "AA", "UU"})


@dataclass(frozen=True)
class GitResult:
    """Outcome of a single git invocation.

    Attributes:
        ok (bool): True if git exited zero within the timeout.
        stdout (str): Captured standard output (right-stripped).
        stderr (str): Captured standard error, or a synthetic message on failure.
        returncode (int | None): Exit status, None if git never finished.
        timed_out (bool): Whether the call was killed at its deadline.
        args (tuple[str, ...]): The git arguments, for diagnostics.
    """

    ok: bool
    stdout: str = ""
    stderr: str = ""
    returncode: int | None = 0
    timed_out: bool = False
    args: tuple[str, ...] = ()

    @property
    def error(self) -> str:
        return (self.stderr or self.stdout or f"exit status {self.returncode}").strip()

    def raise_for_status(self) -> "GitResult":
        """Converts a failed result into the matching taxonomy error.

        Raises:
            NetworkFailure: For failed or timed-out fetch/pull/push calls.
            SubprocessFailure: For any other failed call.
        """
        if self.ok:
            return self
        cmd = " ".join(self.args)
        if self.args and self.args[0] in NETWORK_COMMANDS:
            raise NetworkFailure(f"git {cmd} failed: {self.error}")
        raise SubprocessFailure(f"git {cmd} failed: {self.error}")


@dataclass(frozen=True)
class ChangedFile:
    """One entry of `git status --porcelain`.

    Attributes:
        status (str): The two-letter XY status code (e.g. ' M', 'A ', '??').
        path (str): Repo-relative path (destination for renames).
        orig_path (str | None): Source path for renames and copies.
    """

    status: str
    path: str
    orig_path: str | None = None

    @property
    def is_new(self) -> bool:
        return self.status == "??" or "A" in self.status

    @property
    def is_deleted(self) -> bool:
        return "D" in self.status

    @property
    def is_renamed(self) -> bool:
        return "R" in self.status

    @property
    def is_unmerged(self) -> bool:
        return self.status in UNMERGED_STATUSES


@dataclass(frozen=True)
class StatusResult:
    """Parsed working tree status.

    Attributes:
        ok (bool): Whether git status succeeded.
        files (list[ChangedFile]): Changed entries, empty when clean.
        error (str): The failure text when not ok.
    """

    ok: bool
    files: list[ChangedFile] = field(default_factory=list)
    error: str = ""


def parse_porcelain(output: str) -> list[ChangedFile]:
    """Parses NUL-separated `git status --porcelain=v1 -z` output."""
    entries = output.split("\0")
    files: list[ChangedFile] = []
    i = 0
    while i < len(entries):
        entry = entries[i]
        i += 1
        if len(entry) < 4:
            continue
        status, path = entry[:2], entry[3:]
        orig = None
        if status[0] in "RC" and i < len(entries):
            orig = entries[i]
            i += 1
        files.append(ChangedFile(status=status, path=path, orig_path=orig))
    return files


class GitRepo:
    """A wrapper around the Git command-line interface for a specific repository.

    Every subprocess call is bounded by a timeout and reported as a GitResult;
    failures never escape as exceptions. Callers that want exceptions use
    GitResult.raise_for_status().

    Attributes:
        path (Path): The file system path to the repository root.
        timeout (float): Default seconds allowed per git invocation.
    """

    def __init__(self, path: Path, timeout: float = 60):
        """Initializes the GitRepo instance.

        Args:
            path (Path): The path to the repository root directory.
            timeout (float): Default per-call timeout in seconds.

        Raises:
            RepositoryStateError: If the path does not contain a .git entry.
        """
        self.path = path
        self.timeout = timeout
        if not (self.path / ".git").exists():
            raise RepositoryStateError(f"Not a git repository: {self.path}")

    def _run(
        self,
        args: list[str],
        env: dict | None = None,
        timeout: float | None = None,
    ) -> GitResult:
        """Executes a Git command within the repository context.

        Args:
            args (list[str]): A list of arguments to pass to the git command.
            env (dict | None): Extra environment variables for the subprocess.
            timeout (float | None): Override for the default timeout.

        Returns:
            GitResult: The outcome; never raises for git failures.
        """
        limit = timeout if timeout is not None else self.timeout
        full_env = None
        if env:
            full_env = os.environ.copy()
            full_env.update(env)
        try:
            res = subprocess.run(
                ["git", *args],
                cwd=self.path,
                capture_output=True,
                text=True,
                env=full_env,
                timeout=limit,
            )
        except subprocess.TimeoutExpired:
            logger.warning(f"TIMEOUT git {' '.join(args)} after {limit}s")
            return GitResult(
                ok=False,
                stderr=f"git {args[0]} timed out after {limit}s",
                returncode=None,
                timed_out=True,
                args=tuple(args),
            )
        except OSError as e:
            return GitResult(ok=False, stderr=str(e), returncode=None, args=tuple(args))

        return GitResult(
            ok=res.returncode == 0,
            stdout=res.stdout.rstrip(),
            stderr=res.stderr.strip(),
            returncode=res.returncode,
            args=tuple(args),
        )

    @property
    def git_dir(self) -> Path:
        """Resolves the metadata directory (handles worktrees where .git is a file)."""
        dot_git = self.path / ".git"
        if dot_git.is_dir():
            return dot_git
        res = self._run(["rev-parse", "--absolute-git-dir"])
        return Path(res.stdout) if res.ok and res.stdout else dot_git

    def current_branch(self) -> str | None:
        """Retrieves the name of the currently checked-out branch.

        Returns:
            str | None: The branch name, or None when detached or on error.
        """
        res = self._run(["branch", "--show-current"])
        if not res.ok:
            logger.debug(f"Could not determine branch: {res.error}")
            return None
        return res.stdout.strip() or None

    def status(self) -> StatusResult:
        """Returns the parsed porcelain status, listing untracked files individually."""
        res = self._run(["status", "--porcelain=v1", "-z", "--untracked-files=all"])
        if not res.ok:
            return StatusResult(ok=False, error=res.error)
        return StatusResult(ok=True, files=parse_porcelain(res.stdout))

    def staged_files(self) -> list[str] | None:
        """Lists paths currently in the index that differ from HEAD, or None on error."""
        res = self._run(["diff", "--cached", "--name-only", "-z"])
        if not res.ok:
            return None
        return [p for p in res.stdout.split("\0") if p]

    def diff(self, staged: bool = True) -> str:
        """Returns the unified diff of staged (or unstaged) changes, '' on error."""
        cmd = ["diff", "--no-color", "--no-ext-diff", "-U3"]
        if staged:
            cmd.insert(1, "--cached")
        res = self._run(cmd)
        return res.stdout if res.ok else ""

    def add(self, paths: list[str]) -> GitResult:
        """Stages the given paths, including deletions."""
        if not paths:
            return GitResult(ok=True, args=("add",))
        return self._run(["add", "-A", "--", *paths])

    def unstage(self, paths: list[str]) -> GitResult:
        """Removes paths from the index without touching the working tree."""
        if not paths:
            return GitResult(ok=True, args=("reset",))
        if self.head() is None:
            return self._run(["rm", "--cached", "-r", "-q", "--ignore-unmatch", "--", *paths])
        return self._run(["reset", "-q", "--", *paths])

    def commit(self, message: str) -> GitResult:
        """Creates a new commit with the provided message. Hooks still run."""
        return self._run(["commit", "-m", message])

    def rev_parse(self, rev: str) -> str | None:
        """Resolves a revision (tag, branch, relative ref) to a full SHA-1 hash.

        Returns:
            str | None: The full hash, or None if the revision could not be resolved.
        """
        res = self._run(["rev-parse", "--verify", "--quiet", f"{rev}^{{commit}}"])
        if not res.ok:
            logger.debug(f"rev-parse failed for '{rev}': {res.error}")
            return None
        return res.stdout.strip() or None

    def head(self) -> str | None:
        return self.rev_parse("HEAD")

    def commit_exists(self, sha: str) -> bool:
        return self._run(["cat-file", "-e", f"{sha}^{{commit}}"]).ok

    def fetch(self, remote: str) -> GitResult:
        return self._run(["fetch", "--quiet", remote], env=_batch_env())

    def ahead_behind(self, remote: str, branch: str) -> tuple[int, int] | None:
        """Counts commits ahead of and behind the remote tracking branch.

        Returns:
            tuple[int, int] | None: (ahead, behind), or None if the remote
                                    branch is unknown or output is unparsable.
        """
        upstream = f"refs/remotes/{remote}/{branch}"
        if self.rev_parse(upstream) is None:
            return None
        res = self._run(["rev-list", "--left-right", "--count", f"HEAD...{upstream}"])
        if not res.ok:
            return None
        try:
            ahead, behind = (int(n) for n in res.stdout.split())
        except ValueError:
            logger.warning(f"Unexpected rev-list output: {res.stdout!r}")
            return None
        return ahead, behind

    def pull_rebase(self, remote: str, branch: str) -> GitResult:
        return self._run(
            ["pull", "--rebase", "--autostash", "--quiet", remote, branch],
            env=_batch_env(),
        )

    def unmerged_files(self) -> list[str] | None:
        """Lists paths with unresolved conflicts in the index, or None on error."""
        res = self._run(["diff", "--name-only", "--diff-filter=U", "-z"])
        if not res.ok:
            return None
        return list(dict.fromkeys(p for p in res.stdout.split("\0") if p))

    def stash_count(self) -> int | None:
        """Counts stash entries, or None on error."""
        res = self._run(["stash", "list"])
        if not res.ok:
            return None
        return len(res.stdout.splitlines())

    def rebase_in_progress(self) -> bool:
        git_dir = self.git_dir
        return (git_dir / "rebase-merge").exists() or (git_dir / "rebase-apply").exists()

    def rebase_abort(self) -> GitResult:
        return self._run(["rebase", "--abort"])

    def push(self, remote: str, branch: str) -> GitResult:
        return self._run(["push", remote, branch], env=_batch_env())

    def revert(self, sha: str) -> GitResult:
        return self._run(["revert", "--no-edit", sha])

    def revert_abort(self) -> GitResult:
        return self._run(["revert", "--abort"])

    def reset_soft(self, target: str) -> GitResult:
        return self._run(["reset", "--soft", target])

    def is_merge_in_progress(self) -> bool:
        """Detects merge/rebase/cherry-pick/revert/bisect markers in git metadata."""
        git_dir = self.git_dir
        return any((git_dir / marker).exists() for marker in GIT_LOCK_FILES)


def _batch_env() -> dict[str, str]:
    # Network calls must never block on an interactive credential prompt.
    return {"GIT_TERMINAL_PROMPT": "0", "GIT_SSH_COMMAND": "ssh -o BatchMode=yes"}
