"""Tests for the configuration management subsystem."""

import json
from pathlib import Path

import pytest

from git_autopilot.config import (
    PRESETS,
    Config,
    get_value,
    parse_size,
    parse_time,
    parse_value,
    set_value,
    to_dict,
)
from git_autopilot.errors import ConfigError
from git_autopilot.paths import get_global_config_path


def write_json(path: Path, data: dict) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data))
    return path


def test_config_defaults() -> None:
    """Verifies that the configuration initializes with sensible defaults."""
    conf = Config()
    assert conf.core.remote_name == "origin"
    assert conf.core.auto_push is True
    assert conf.core.blocked_branches == ("main", "master")
    assert conf.core.commit_message_mode == "smart"
    assert conf.watch.debounce_seconds == 20
    assert conf.watch.max_wait_seconds == 120
    assert conf.watch.min_seconds_between_commits == 180
    assert conf.safety.max_file_size == 50 * 1024 * 1024
    assert conf.team.enabled is False
    assert conf.telemetry.endpoint is None


def test_parse_size() -> None:
    """Verifies human-readable sizes convert to bytes."""
    assert parse_size(123) == 123
    assert parse_size("10kb") == 10 * 1024
    assert parse_size("50MB") == 50 * 1024**2
    assert parse_size("1.5 g") == int(1.5 * 1024**3)

    with pytest.raises(ValueError):
        parse_size("lots")
    with pytest.raises(ValueError):
        parse_size(True)


def test_parse_time() -> None:
    """Verifies human-readable durations convert to seconds."""
    assert parse_time(15) == 15
    assert parse_time("20s") == 20
    assert parse_time("2min") == 120
    assert parse_time("1h") == 3600

    with pytest.raises(ValueError):
        parse_time(-1)
    with pytest.raises(ValueError):
        parse_time("soon")


def test_config_load_merges_layers(tmp_path: Path) -> None:
    """Verifies the cascading merge logic (Defaults -> Global -> Local).

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
    """
    write_json(
        get_global_config_path(),
        {
            "core": {"remote_name": "upstream"},
            "watch": {"debounce_seconds": 50},
            "files": {"ignore": ["*.log"]},
        },
    )
    write_json(
        tmp_path / ".autopilotrc.json",
        {"watch": {"debounce_seconds": "10s"}, "files": {"ignore": ["*.tmp"]}},
    )

    conf = Config.load(repo_path=tmp_path)

    assert conf.core.remote_name == "upstream"  # From Global
    assert conf.watch.debounce_seconds == 10  # Local overrides Global
    assert conf.watch.max_wait_seconds == 120  # Default survives
    assert conf.files.ignore == ("*.log", "*.tmp")  # Appended across layers


def test_config_load_without_files_is_default(tmp_path: Path) -> None:
    """Verifies that missing files simply yield the built-in defaults."""
    assert Config.load(repo_path=tmp_path) == Config()


def test_config_preset_applies_before_explicit_keys(tmp_path: Path) -> None:
    """Verifies that a preset expands first and explicit keys still win.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
    """
    write_json(
        tmp_path / ".autopilotrc.json",
        {"core": {"preset": "safe-team"}, "watch": {"debounce_seconds": 7}},
    )

    conf = Config.load(repo_path=tmp_path)

    assert conf.team.enabled is True
    assert conf.team.conflict_strategy == "abort"
    assert conf.watch.min_seconds_between_commits == 300  # From preset
    assert conf.watch.debounce_seconds == 7  # Explicit override


@pytest.mark.parametrize("name", sorted(PRESETS))
def test_every_preset_is_valid(name: str) -> None:
    """Verifies that each shipped preset merges cleanly."""
    conf = Config().merged({"core": {"preset": name}})
    assert conf.core.preset == name


def test_unknown_preset_is_rejected() -> None:
    with pytest.raises(ConfigError, match="Unknown preset"):
        Config().merged({"core": {"preset": "yolo"}})


@pytest.mark.parametrize(
    "data",
    [
        {"watch": {"debounce_seconds": "fast"}},
        {"core": {"auto_push": "yes"}},
        {"core": {"commit_message_mode": "poetic"}},
        {"team": {"conflict_strategy": "merge"}},
        {"safety": {"max_file_size": "huge"}},
        {"safety": {"checks": "npm test"}},
        {"files": {"ignore": "*.log"}},
        {"watch": []},
    ],
)
def test_invalid_values_raise_config_error(data: dict) -> None:
    """Verifies that wrong types and out-of-range choices fail loudly."""
    with pytest.raises(ConfigError):
        Config().merged(data)


def test_unknown_keys_only_warn(caplog: pytest.LogCaptureFixture) -> None:
    """Verifies that unknown sections and keys are logged and skipped.

    Args:
        caplog (pytest.LogCaptureFixture): Pytest fixture for captured logs.
    """
    conf = Config().merged({"core": {"colour": "blue"}, "extras": {}})

    assert conf == Config()
    assert "Unknown config keys in [core]" in caplog.text
    assert "Unknown config sections" in caplog.text


def test_syntax_error_names_the_file(tmp_path: Path) -> None:
    """Verifies that malformed JSON is reported as a ConfigError."""
    (tmp_path / ".autopilotrc.json").write_text("{not json")

    with pytest.raises(ConfigError, match="syntax error"):
        Config.load(repo_path=tmp_path)


def test_get_value_dotted_keys() -> None:
    conf = Config()
    assert get_value(conf, "watch.debounce_seconds") == 20
    assert get_value(conf, "core.blocked_branches") == ["main", "master"]
    assert isinstance(get_value(conf, "team"), dict)

    with pytest.raises(KeyError):
        get_value(conf, "watch.nope")


def test_parse_value() -> None:
    assert parse_value("true") is True
    assert parse_value("12") == 12
    assert parse_value('["a", "b"]') == ["a", "b"]
    assert parse_value("origin") == "origin"


def test_set_value_writes_and_validates(tmp_path: Path) -> None:
    """Verifies that set_value persists typed values and rejects bad ones.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
    """
    path = tmp_path / ".autopilotrc.json"

    assert set_value(path, "core.auto_push", "false") is False
    assert set_value(path, "watch.debounce_seconds", "5") == 5

    data = json.loads(path.read_text())
    assert data == {"core": {"auto_push": False}, "watch": {"debounce_seconds": 5}}

    with pytest.raises(ConfigError, match="Unknown config key"):
        set_value(path, "core.colour", "blue")
    with pytest.raises(ConfigError):
        set_value(path, "core.auto_push", "maybe")

    # Rejected values never reach the file.
    assert json.loads(path.read_text()) == data


def test_to_dict_is_json_serializable() -> None:
    data = to_dict(Config())
    assert json.loads(json.dumps(data)) == data
    assert data["files"]["ignore"] == []
