import os
from pathlib import Path

from .constants import (
    ENV_HOME,
    GLOBAL_CONFIG_NAME,
    IDENTITY_FILE_NAME,
    IGNORE_FILE_NAME,
    LOCAL_CONFIG_NAME,
    QUEUE_FILE_NAME,
    STATE_DIR_NAME,
)


def get_config_dir() -> Path:
    """Returns the per-user configuration directory.

    Resolved on every call so that tests (and users) can redirect it with
    the GIT_AUTOPILOT_HOME environment variable.
    """
    override = os.environ.get(ENV_HOME)
    if override:
        return Path(override)
    xdg = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg) if xdg else Path.home() / ".config"
    return base / "git-autopilot"


def get_global_config_path() -> Path:
    return get_config_dir() / GLOBAL_CONFIG_NAME


def get_identity_path() -> Path:
    return get_config_dir() / IDENTITY_FILE_NAME


def get_queue_path() -> Path:
    return get_config_dir() / QUEUE_FILE_NAME


def get_local_config_path(repo_path: Path) -> Path:
    return repo_path / LOCAL_CONFIG_NAME


def get_ignore_path(repo_path: Path) -> Path:
    return repo_path / IGNORE_FILE_NAME


def get_state_dir(repo_path: Path) -> Path:
    """Returns the hidden runtime state directory, creating it if needed."""
    state_dir = repo_path / STATE_DIR_NAME
    state_dir.mkdir(parents=True, exist_ok=True)
    return state_dir
