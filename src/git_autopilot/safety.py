import logging
import re
import shlex
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field

from .config import Config
from .constants import APP_NAME
from .errors import SafetyViolation
from .git_wrapper import ChangedFile, GitRepo

logger = logging.getLogger(APP_NAME)

SCAN_LIMIT = 1024 * 1024
"""int: Bytes read from the start of each file by the secret scan."""

SECRET_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    (
        "AWS Access Key",
        re.compile(r"\b(?:A3T[A-Z0-9]|AKIA|AGPA|AIDA|AROA|AIPA|ANPA|ANVA|ASIA)[A-Z0-9]{16}\b"),
    ),
    ("GitHub Token", re.compile(r"\bgh[pousr]_[A-Za-z0-9]{36,255}\b")),
    ("GitLab Token", re.compile(r"\bglpat-[A-Za-z0-9_\-]{20,}")),
    ("Stripe Secret Key", re.compile(r"\bsk_live_[0-9A-Za-z]{24,}")),
    ("Slack Token", re.compile(r"\bxox[abposr]-[0-9A-Za-z\-]{10,}")),
    ("Google API Key", re.compile(r"\bAIza[0-9A-Za-z\-_]{35}")),
    (
        "Generic API Key",
        re.compile(
            r"(?i)\b(?:api[_-]?key|secret[_-]?key|access[_-]?token|auth[_-]?token)\b"
            r"[\"']?\s*[:=]\s*[\"'][A-Za-z0-9_\-+/=]{16,}[\"']"
        ),
    ),
    ("Bearer Token", re.compile(r"\bBearer\s+[A-Za-z0-9\-._~+/]{20,}=*")),
    (
        "Private Key",
        re.compile(r"-----BEGIN (?:RSA |EC |DSA |OPENSSH |ENCRYPTED |PGP )?PRIVATE KEY(?: BLOCK)?-----"),
    ),
]
"""list: (name, pattern) pairs; a match anywhere in a candidate is a violation."""


@dataclass(frozen=True)
class SafetyReport:
    """Result of running the safety checks on a candidate set.

    Attributes:
        ok (bool): True when no check reported a violation.
        violations (list[str]): One message per problem found.
    """

    ok: bool
    violations: list[str] = field(default_factory=list)

    def raise_for_violations(self) -> "SafetyReport":
        """Raises SafetyViolation when any check failed, else returns self."""
        if not self.ok:
            raise SafetyViolation(self.violations)
        return self


Check = Callable[[list[ChangedFile]], list[str]]


def scan_text(text: str) -> list[str]:
    """Returns the names of the secret patterns found in the text."""
    return [name for name, pattern in SECRET_PATTERNS if pattern.search(text)]


class SafetyPipeline:
    """Ordered pre-commit checks.

    The check list is public so callers and tests can inspect or extend it.
    Each check receives the candidate files and returns violation messages;
    a check that raises is reported as a violation rather than skipped.

    Attributes:
        repo (GitRepo): The repository being committed.
        config (Config): The active configuration snapshot.
        checks (list[tuple[str, Check]]): (name, check) pairs, run in order.
    """

    def __init__(self, repo: GitRepo, config: Config):
        self.repo = repo
        self.config = config
        self.checks: list[tuple[str, Check]] = [("merge", self.check_merge_state)]
        if config.safety.check_file_size:
            self.checks.append(("size", self.check_file_sizes))
        if config.safety.scan_secrets:
            self.checks.append(("secrets", self.check_secrets))
        for command in config.safety.checks:
            self.checks.append((command, self._command_check(command)))

    def run(self, candidates: list[ChangedFile]) -> SafetyReport:
        violations: list[str] = []
        for name, check in self.checks:
            try:
                violations.extend(check(candidates))
            except Exception as e:
                logger.error(f"SAFETY ERROR {name} check crashed: {e}")
                violations.append(f"{name} check crashed: {e}")
        return SafetyReport(ok=not violations, violations=violations)

    def _existing(self, candidates: list[ChangedFile]) -> list[ChangedFile]:
        return [
            f for f in candidates if not f.is_deleted and (self.repo.path / f.path).is_file()
        ]

    def check_merge_state(self, candidates: list[ChangedFile]) -> list[str]:
        if self.repo.is_merge_in_progress():
            return ["Repository is in a merge/rebase state"]
        return [f"Unresolved conflict in {f.path}" for f in candidates if f.is_unmerged]

    def check_file_sizes(self, candidates: list[ChangedFile]) -> list[str]:
        limit = self.config.safety.max_file_size
        violations = []
        for f in self._existing(candidates):
            try:
                size = (self.repo.path / f.path).stat().st_size
            except FileNotFoundError:
                continue
            if size > limit:
                violations.append(
                    f"File {f.path} is too large "
                    f"({size / 1024**2:.2f}MB > {limit / 1024**2:.2f}MB)"
                )
        return violations

    def check_secrets(self, candidates: list[ChangedFile]) -> list[str]:
        violations = []
        for f in self._existing(candidates):
            try:
                with open(self.repo.path / f.path, "rb") as fh:
                    text = fh.read(SCAN_LIMIT).decode("utf-8", errors="ignore")
            except FileNotFoundError:
                continue
            for name in scan_text(text):
                violations.append(f"Possible {name} detected in {f.path}")
        return violations

    def _command_check(self, command: str) -> Check:
        def run_command(_candidates: list[ChangedFile]) -> list[str]:
            return self.run_command(command)

        return run_command

    def run_command(self, command: str) -> list[str]:
        """Runs a lint/test command without a shell; non-zero or timeout is a violation."""
        args = shlex.split(command)
        if not args:
            return []
        timeout = self.config.safety.check_timeout
        logger.info(f"Running check: {command}")
        try:
            res = subprocess.run(
                args, cwd=self.repo.path, capture_output=True, text=True, timeout=timeout
            )
        except subprocess.TimeoutExpired:
            return [f"Check '{command}' timed out after {timeout}s"]
        except OSError as e:
            return [f"Check '{command}' could not start: {e}"]
        if res.returncode != 0:
            output = (res.stderr or res.stdout).strip().splitlines()
            detail = f": {output[-1]}" if output else ""
            return [f"Check '{command}' failed (exit {res.returncode}){detail}"]
        return []


@dataclass(frozen=True)
class TeamResult:
    """Outcome of the remote divergence check.

    Attributes:
        ok (bool): Whether the cycle may continue.
        action (str): 'continue', 'abort' (skip this cycle) or 'pause'.
        reason (str): Why the cycle cannot continue.
        pulled (bool): Whether remote commits were rebased into the work tree.
    """

    ok: bool
    action: str = "continue"
    reason: str = ""
    pulled: bool = False


def check_team(repo: GitRepo, config: Config, branch: str) -> TeamResult:
    """Synchronizes with the remote before committing in team mode.

    Args:
        repo (GitRepo): The repository.
        config (Config): The active configuration.
        branch (str): The current branch.

    Returns:
        TeamResult: ok unless the remote could not be reached, the branch is
                    behind and could not be rebased, or a rebase conflicted.
    """
    team = config.team
    if not team.enabled:
        return TeamResult(ok=True)

    remote = config.core.remote_name
    fetched = repo.fetch(remote)
    if not fetched.ok:
        return TeamResult(ok=False, action="abort", reason=f"Fetch failed: {fetched.error}")

    counts = repo.ahead_behind(remote, branch)
    if counts is None:
        # Nothing to diverge from yet (branch never pushed).
        logger.debug(f"No upstream {remote}/{branch}; skipping divergence check.")
        return TeamResult(ok=True)

    ahead, behind = counts
    if ahead > team.max_unpushed_commits:
        logger.warning(f"Too many unpushed commits ({ahead}). Pushing required.")

    if not behind:
        return TeamResult(ok=True)

    if not team.pull_before_push:
        return TeamResult(
            ok=False,
            action="abort",
            reason=f"Branch is {behind} commit(s) behind {remote}/{branch}",
        )

    logger.info(f"Remote is ahead by {behind} commit(s). Pulling changes...")
    action = "pause" if team.conflict_strategy == "pause" else "abort"
    stashes = repo.stash_count()
    pulled = repo.pull_rebase(remote, branch)
    if not pulled.ok:
        if repo.rebase_in_progress():
            aborted = repo.rebase_abort()
            if not aborted.ok:
                logger.error(f"REBASE ABORT ERROR: {aborted.error}")
        return TeamResult(ok=False, action=action, reason=f"Pull failed: {pulled.error}")

    # The pull itself exits zero when only re-applying the autostash conflicts;
    # the stash entry is then kept and the working tree holds conflict markers.
    conflicted = repo.unmerged_files()
    leftover = stashes is not None and (repo.stash_count() or 0) > stashes
    if conflicted is None or conflicted or leftover:
        detail = ", ".join(conflicted or []) or "unknown paths"
        reason = f"Local changes conflict with {remote}/{branch} in {detail}"
        if leftover:
            reason += "; they are kept in the stash"
        return TeamResult(ok=False, action=action, reason=reason)
    return TeamResult(ok=True, pulled=True)
