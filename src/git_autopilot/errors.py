"""Error taxonomy for Git Autopilot.

Commands fail fast on configuration, repository and lock errors. Inside the
watch loop the same errors only skip a cycle; they never crash the daemon.
"""


class AutopilotError(Exception):
    """Base class for all expected, user-facing failures."""


class ConfigError(AutopilotError):
    """A config or ignore file is missing, unreadable or invalid."""


class RepositoryStateError(AutopilotError):
    """The repository cannot be worked on (not a work tree, mid-merge, blocked branch)."""


class LockConflict(AutopilotError):
    """Another live daemon instance holds the repository lock.

    Attributes:
        pid (int | None): The process id recorded by the current holder.
    """

    def __init__(self, message: str, pid: int | None = None):
        super().__init__(message)
        self.pid = pid


class SafetyViolation(AutopilotError):
    """A safety check blocked a commit cycle.

    Attributes:
        violations (list[str]): Human-readable descriptions of each violation.
    """

    def __init__(self, violations: list[str]):
        super().__init__("; ".join(violations))
        self.violations = violations


class NetworkFailure(AutopilotError):
    """A fetch, pull or push did not complete."""


class SubprocessFailure(AutopilotError):
    """A git or check command exited non-zero or timed out."""
