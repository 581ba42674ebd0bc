"""Global constants for Git Autopilot.

This module defines application identifiers, the names of the files the daemon
reads and writes inside a repository, and the git metadata markers that signal
an operation in progress.
"""

# --- Identity ---
APP_NAME = "git-autopilot"
"""str: The human-readable application name (also the logger name)."""

VERSION = "0.4.0"
"""str: The daemon version embedded in commit trailers."""

ENV_HOME = "GIT_AUTOPILOT_HOME"
"""str: Environment variable overriding the per-user config directory."""

# --- Repository files ---
LOCAL_CONFIG_NAME = ".autopilotrc.json"
"""str: Repo-local configuration file (highest precedence)."""

IGNORE_FILE_NAME = ".autopilotignore"
"""str: Newline-delimited ignore patterns in the repository root."""

STATE_DIR_NAME = ".autopilot"
"""str: Hidden per-repository directory holding runtime state."""

STATE_FILE_NAME = "state.json"
"""str: Persisted pause flag."""

HISTORY_FILE_NAME = "history.json"
"""str: Commit ledger of daemon-authored commits."""

LOCK_FILE_NAME = "autopilot.lock"
"""str: Single-instance lock file."""

EVENT_LOG_NAME = "events.log"
"""str: Append-only newline-delimited JSON event log."""

LOG_FILE_NAME = "autopilot.log"
"""str: Rotating daemon log."""

# --- User files ---
GLOBAL_CONFIG_NAME = "config.json"
"""str: Global configuration file inside the user config directory."""

IDENTITY_FILE_NAME = "identity.json"
"""str: Persisted anonymous identity."""

QUEUE_FILE_NAME = "events-queue.json"
"""str: Durable outbound telemetry queue."""

# --- Git / Logic Constants ---
GIT_LOCK_FILES = [
    "MERGE_HEAD",
    "REBASE_HEAD",
    "CHERRY_PICK_HEAD",
    "REVERT_HEAD",
    "BISECT_LOG",
    "rebase-merge",
    "rebase-apply",
]
"""
list[str]: Git internal files indicating an
active operation (merge/rebase/...) that blocks commits.
"""

HARD_IGNORES = [
    ".git/",
    f"{STATE_DIR_NAME}/",
    "node_modules/",
    "dist/",
    "build/",
    ".next/",
    "coverage/",
    "__pycache__/",
    ".venv/",
    "venv/",
    ".idea/",
    ".vscode/",
    LOG_FILE_NAME,
]
"""list[str]: Exclusions that user configuration cannot remove."""

DEFAULT_IGNORE_TEMPLATE = [
    ".env",
    ".env.*",
    "*.log",
    ".DS_Store",
]
"""list[str]: Patterns written to a fresh .autopilotignore by `init`."""

SIMPLE_COMMIT_MESSAGE = "chore: auto-commit changes"
"""str: Message used when commit_message_mode is 'simple'."""
