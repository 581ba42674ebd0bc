import contextlib
import json
import logging
import os
import re
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any

from .constants import APP_NAME
from .errors import ConfigError
from .paths import get_global_config_path, get_local_config_path

logger = logging.getLogger(APP_NAME)


def parse_size(value: int | str) -> int:
    """Converts human-readable size strings (e.g., '50MB') to bytes."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid size format '{value}'")
    if isinstance(value, int):
        return value
    match = re.match(r"^(\d+(?:\.\d+)?)\s*([kmg]b?)$", str(value).strip().lower())
    if not match:
        raise ValueError(f"Invalid size format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {
        "k": 1024,
        "kb": 1024,
        "m": 1024**2,
        "mb": 1024**2,
        "g": 1024**3,
        "gb": 1024**3,
    }
    return int(num * multiplier[unit])


def parse_time(value: int | float | str) -> float:
    """Converts human-readable time strings (e.g., '20s', '2min') to seconds."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid time format '{value}'")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"Invalid time format '{value}'")
        return value
    match = re.match(
        r"^(\d+(?:\.\d+)?)\s*(s|sec|m|min|h|hr)s?$", str(value).strip().lower()
    )
    if not match:
        raise ValueError(f"Invalid time format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {"s": 1, "sec": 1, "m": 60, "min": 60, "h": 3600, "hr": 3600}
    return num * multiplier[unit]


@dataclass(frozen=True)
class CoreConfig:
    """Core application settings.

    Attributes:
        remote_name (str): The git remote to fetch from and push to.
        auto_push (bool): Whether to push after every successful commit.
        blocked_branches (tuple[str, ...]): Branches the daemon never commits on.
        commit_message_mode (str): 'smart' (synthesized) or 'simple' (fixed text).
        sign_commits (bool): Whether to append trust trailers to messages.
        command_timeout (float): Seconds before any git call is abandoned.
        preset (str | None): A workflow preset name (e.g. 'safe-team').
    """

    remote_name: str = "origin"
    auto_push: bool = True
    blocked_branches: tuple[str, ...] = ("main", "master")
    commit_message_mode: str = "smart"
    sign_commits: bool = True
    command_timeout: float = 60
    preset: str | None = None


@dataclass(frozen=True)
class WatchConfig:
    """Scheduling settings.

    Attributes:
        debounce_seconds (float): Quiet period after the last event before a cycle.
        max_wait_seconds (float): Hard cap from the first event of a window.
        min_seconds_between_commits (float): Minimum spacing of daemon commits.
    """

    debounce_seconds: float = 20
    max_wait_seconds: float = 120
    min_seconds_between_commits: float = 180


@dataclass(frozen=True)
class SafetyConfig:
    """Pre-commit safety settings.

    Attributes:
        check_file_size (bool): Whether oversized files block a commit.
        max_file_size (int): Byte threshold for the size check.
        scan_secrets (bool): Whether to scan candidates for credentials.
        checks (tuple[str, ...]): Lint/test commands that must exit zero.
        check_timeout (float): Seconds before a check command is abandoned.
    """

    check_file_size: bool = True
    max_file_size: int = 50 * 1024 * 1024
    scan_secrets: bool = True
    checks: tuple[str, ...] = ()
    check_timeout: float = 300


@dataclass(frozen=True)
class TeamConfig:
    """Team mode settings.

    Attributes:
        enabled (bool): Whether to check the remote before committing.
        pull_before_push (bool): Whether to rebase-pull when behind.
        conflict_strategy (str): 'abort' skips the cycle, 'pause' pauses the daemon.
        max_unpushed_commits (int): Ahead count above which a warning is logged.
    """

    enabled: bool = False
    pull_before_push: bool = True
    conflict_strategy: str = "abort"
    max_unpushed_commits: int = 5


@dataclass(frozen=True)
class FilesConfig:
    """File selection settings.

    Attributes:
        ignore (tuple[str, ...]): Extra ignore patterns (appended across layers).
    """

    ignore: tuple[str, ...] = ()


@dataclass(frozen=True)
class LimitsConfig:
    """Resource limitation settings.

    Attributes:
        max_log_size (int): Max bytes for the daemon log before rotation.
        ledger_size (int): Number of commits kept in the undo ledger.
        queue_size (int): Telemetry events kept queued before the oldest drop.
    """

    max_log_size: int = 5 * 1024 * 1024
    ledger_size: int = 100
    queue_size: int = 200


@dataclass(frozen=True)
class TelemetryConfig:
    """Outbound event delivery settings.

    Attributes:
        endpoint (str | None): URL receiving queued events; None keeps them local.
        timeout (float): Seconds allowed per delivery attempt.
    """

    endpoint: str | None = None
    timeout: float = 5


PRESETS: dict[str, dict[str, Any]] = {
    "safe-team": {
        "description": "Safe configuration for team collaboration",
        "config": {
            "team": {
                "enabled": True,
                "pull_before_push": True,
                "conflict_strategy": "abort",
            },
            "safety": {"scan_secrets": True},
            "core": {"commit_message_mode": "smart"},
            "watch": {"debounce_seconds": 30, "min_seconds_between_commits": 300},
        },
    },
    "solo-speed": {
        "description": "Fast-paced configuration for solo developers",
        "config": {
            "team": {"enabled": False, "pull_before_push": False},
            "core": {"commit_message_mode": "simple", "auto_push": True},
            "watch": {"debounce_seconds": 5, "min_seconds_between_commits": 60},
        },
    },
    "strict-ci": {
        "description": "Strict configuration ensuring quality checks pass",
        "config": {
            "safety": {
                "scan_secrets": True,
                "check_file_size": True,
                "checks": ["npm test", "npm run lint"],
            },
        },
    },
}
"""dict: Named workflow presets, expanded before a file's explicit keys."""

_CHOICES = {
    "commit_message_mode": ("smart", "simple"),
    "conflict_strategy": ("abort", "pause"),
}

_SIZE_KEYS = ("max_file_size", "max_log_size")
_TIME_KEYS = (
    "debounce_seconds",
    "max_wait_seconds",
    "min_seconds_between_commits",
    "command_timeout",
    "check_timeout",
    "timeout",
)


@dataclass(frozen=True)
class Config:
    """Effective configuration snapshot.

    Built once per session (and on explicit reload) from built-in defaults,
    the global file and the repo-local file, in that order.
    """

    core: CoreConfig = field(default_factory=CoreConfig)
    watch: WatchConfig = field(default_factory=WatchConfig)
    safety: SafetyConfig = field(default_factory=SafetyConfig)
    team: TeamConfig = field(default_factory=TeamConfig)
    files: FilesConfig = field(default_factory=FilesConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)

    @classmethod
    def load(
        cls, repo_path: Path | None = None, global_path: Path | None = None
    ) -> "Config":
        """Loads and merges configuration from defaults, global, and local sources.

        Args:
            repo_path (Path | None): The repository root holding .autopilotrc.json.
            global_path (Path | None): Override for the global config file.

        Returns:
            Config: The fully merged configuration object.

        Raises:
            ConfigError: If any present file is unreadable or invalid.
        """
        instance = cls()

        global_file = global_path or get_global_config_path()
        if global_file.exists():
            instance = instance.merged(read_config_file(global_file), source=global_file)

        if repo_path:
            local_file = get_local_config_path(repo_path)
            if local_file.exists():
                instance = instance.merged(
                    read_config_file(local_file), source=local_file
                )

        return instance

    def merged(self, data: dict[str, Any], source: Path | None = None) -> "Config":
        """Returns a new Config with the given raw sections applied on top.

        Raises:
            ConfigError: If a section or value is invalid.
        """
        where = f" in {source}" if source else ""
        result = self

        core = data.get("core")
        preset = core.get("preset") if isinstance(core, dict) else None
        if preset is not None:
            if preset not in PRESETS:
                raise ConfigError(
                    f"Unknown preset '{preset}'{where}. "
                    f"Options: {', '.join(PRESETS)}"
                )
            result = result._apply_sections(PRESETS[preset]["config"], where)

        return result._apply_sections(data, where)

    def _apply_sections(self, data: dict[str, Any], where: str) -> "Config":
        valid_sections = {f.name for f in fields(self)}
        unknown = set(data) - valid_sections
        if unknown:
            logger.warning(
                f"Unknown config sections{where}: {', '.join(sorted(unknown))}. Ignoring."
            )

        updates = {}
        for name in valid_sections & set(data):
            section = data[name]
            if not isinstance(section, dict):
                raise ConfigError(f"Config section [{name}]{where} must be an object")
            current = getattr(self, name)
            if name == "files" and "ignore" in section:
                # Ignore lists accumulate across layers instead of replacing.
                section = dict(section)
                extra = _to_tuple("files", "ignore", section.pop("ignore"), where)
                current = replace(
                    current, ignore=tuple(dict.fromkeys(current.ignore + extra))
                )
            updates[name] = _update_dataclass(name, current, section, where)

        return replace(self, **updates)


def _to_tuple(section: str, key: str, value: Any, where: str) -> tuple[str, ...]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"Config error in [{section}].{key}{where}: expected a list of strings")
    return tuple(value)


def _update_dataclass(section_name: str, instance: Any, updates: dict, where: str) -> Any:
    """Updates a section dataclass, warning on unknown keys and rejecting bad values."""
    valid = {f.name: f for f in fields(instance)}

    invalid_keys = set(updates) - set(valid)
    if invalid_keys:
        logger.warning(
            f"Unknown config keys in [{section_name}]{where}: "
            f"{', '.join(sorted(invalid_keys))}. Ignoring."
        )

    filtered = {}
    for key, value in updates.items():
        if key not in valid:
            continue
        default = getattr(type(instance)(), key)
        try:
            filtered[key] = _coerce(key, value, default)
        except ValueError as e:
            raise ConfigError(f"Config error in [{section_name}].{key}{where}: {e}") from e

    return replace(instance, **filtered)


def _coerce(key: str, value: Any, default: Any) -> Any:
    if key in _SIZE_KEYS:
        return parse_size(value)
    if key in _TIME_KEYS:
        return parse_time(value)
    if key in _CHOICES:
        if value not in _CHOICES[key]:
            raise ValueError(f"expected one of {', '.join(_CHOICES[key])}, got '{value}'")
        return value
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ValueError(f"expected true/false, got '{value}'")
        return value
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"expected an integer, got '{value}'")
        return value
    if isinstance(default, tuple):
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise ValueError("expected a list of strings")
        return tuple(value)
    if value is not None and not isinstance(value, str):
        raise ValueError(f"expected a string, got '{value}'")
    return value


def read_config_file(path: Path) -> dict[str, Any]:
    """Reads a raw JSON config file.

    Raises:
        ConfigError: If the file cannot be read or is not a JSON object.
    """
    try:
        with open(path) as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Config syntax error in {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Could not read config {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    return data


def write_config_file(path: Path, data: dict[str, Any]) -> None:
    """Persists a raw config dictionary atomically."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_file = path.with_suffix(".tmp")
    try:
        with open(tmp_file, "w") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_file, path)
    except OSError as e:
        if tmp_file.exists():
            with contextlib.suppress(OSError):
                tmp_file.unlink()
        raise ConfigError(f"Could not write config {path}: {e}") from e


def to_dict(config: Config) -> dict[str, Any]:
    """Returns the configuration as plain JSON-compatible data."""
    data = asdict(config)
    for section in data.values():
        for key, value in section.items():
            if isinstance(value, tuple):
                section[key] = list(value)
    return data


def get_value(config: Config, key: str) -> Any:
    """Looks up a dotted key (e.g. 'watch.debounce_seconds').

    Raises:
        KeyError: If the key does not exist.
    """
    node: Any = to_dict(config)
    for part in key.split("."):
        if not isinstance(node, dict) or part not in node:
            raise KeyError(key)
        node = node[part]
    return node


def parse_value(raw: str) -> Any:
    """Interprets a CLI value as JSON (true, 12, ["a"]) or falls back to a string."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def set_value(path: Path, key: str, raw: str) -> Any:
    """Sets a dotted key in a raw config file after validating the result.

    Args:
        path (Path): The config file to edit (global or repo-local).
        key (str): Dotted key such as 'core.auto_push'.
        raw (str): Value as typed by the user.

    Returns:
        Any: The typed value that was written.

    Raises:
        ConfigError: If the key is unknown or the value invalid. Nothing is written.
    """
    parts = key.split(".")
    if len(parts) != 2:
        raise ConfigError(f"Config keys have the form <section>.<name>, got '{key}'")
    section_name, name = parts

    try:
        get_value(Config(), key)
    except KeyError:
        raise ConfigError(f"Unknown config key '{key}'") from None

    data = read_config_file(path) if path.exists() else {}
    value = parse_value(raw)
    section = data.setdefault(section_name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"Config section [{section_name}] in {path} must be an object")
    section[name] = value

    Config().merged(data, source=path)
    write_config_file(path, data)
    return value
