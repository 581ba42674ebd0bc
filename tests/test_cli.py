"""Tests for the Command Line Interface (CLI) module."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from git_autopilot import cli
from git_autopilot.daemon import StatusSnapshot
from git_autopilot.errors import LockConflict


@pytest.fixture
def mock_ops(mocker: MagicMock, tmp_path: Path) -> MagicMock:
    """Replaces the ops layer and pins the repository root to tmp_path.

    Args:
        mocker (MagicMock): Pytest fixture for mocking.
        tmp_path (Path): Pytest fixture for a temporary directory.
    """
    ops = mocker.patch("git_autopilot.cli.ops")
    ops.find_repo_root.return_value = tmp_path
    return ops


def test_no_command_prints_help(capsys: pytest.CaptureFixture) -> None:
    cli.main([])
    assert "usage: git-autopilot" in capsys.readouterr().out


@pytest.mark.parametrize(
    ("argv", "method", "args"),
    [
        (["init"], "init_repo", ()),
        (["stop"], "stop", ()),
        (["resume"], "resume", ()),
        (["pause", "code", "review"], "pause", ("code review",)),
        (["pause"], "pause", (None,)),
        (["undo"], "run_undo", (1,)),
        (["undo", "-n", "3"], "run_undo", (3,)),
        (["log"], "tail_log", ()),
    ],
)
def test_commands_dispatch_to_ops(
    mock_ops: MagicMock, tmp_path: Path, argv: list[str], method: str, args: tuple
) -> None:
    """Verifies each subcommand calls its operation with the repo root.

    Args:
        mock_ops (MagicMock): The mocked ops module.
        tmp_path (Path): Pytest fixture for a temporary directory.
        argv (list[str]): Command line arguments.
        method (str): The expected ops function.
        args (tuple): Expected arguments after the repo path.
    """
    cli.main(argv)
    getattr(mock_ops, method).assert_called_once_with(tmp_path, *args)


def test_start_exit_code_propagates(mock_ops: MagicMock) -> None:
    mock_ops.start.return_value = 1
    with pytest.raises(SystemExit) as exc:
        cli.main(["start"])
    assert exc.value.code == 1


def test_undo_rejects_non_positive_count(mock_ops: MagicMock) -> None:
    with pytest.raises(SystemExit) as exc:
        cli.main(["undo", "--count", "0"])
    assert exc.value.code == 2
    mock_ops.run_undo.assert_not_called()


def test_errors_are_reported_not_raised(
    mock_ops: MagicMock, capsys: pytest.CaptureFixture
) -> None:
    """Verifies expected failures print one line and exit 1.

    Args:
        mock_ops (MagicMock): The mocked ops module.
        capsys (pytest.CaptureFixture): Pytest fixture for capturing output.
    """
    mock_ops.stop.side_effect = LockConflict("already running", 42)

    with pytest.raises(SystemExit) as exc:
        cli.main(["stop"])

    assert exc.value.code == 1
    assert "ERROR: already running" in capsys.readouterr().err


def test_config_commands(mock_ops: MagicMock, tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
    mock_ops.config_get.return_value = 20
    cli.main(["config", "get", "watch.debounce_seconds"])
    mock_ops.config_get.assert_called_once_with(tmp_path, "watch.debounce_seconds", False)
    assert capsys.readouterr().out.strip() == "20"

    cli.main(["config", "set", "core.auto_push", "false", "--global"])
    mock_ops.config_set.assert_called_once_with(tmp_path, "core.auto_push", "false", True)

    mock_ops.config_list.return_value = {"watch": {"debounce_seconds": 20}}
    cli.main(["config", "list"])
    assert "watch.debounce_seconds" in capsys.readouterr().out


def test_config_outside_repo_uses_none(mock_ops: MagicMock) -> None:
    mock_ops.find_repo_root.side_effect = cli.AutopilotError("Not a git repository")
    mock_ops.config_get.return_value = True

    cli.main(["config", "get", "core.auto_push"])

    mock_ops.config_get.assert_called_once_with(None, "core.auto_push", False)


def test_show_status_renders_snapshot(tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
    """Verifies that the status panel shows pause reason and last commit.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
        capsys (pytest.CaptureFixture): Pytest fixture for capturing stdout.
    """
    snapshot = StatusSnapshot(
        state="running",
        paused=True,
        pause_reason="Push failed: rejected",
        pid=4242,
        last_commit={
            "hash": "0123456789abcdef",
            "message": "feat(search): add search\n\n- Added src/search.py",
            "files": ["src/search.py"],
            "timestamp": "2026-01-01T10:00:00+00:00",
        },
        pending_files=3,
        commits_today=7,
    )

    cli.show_status(snapshot, tmp_path)

    out = capsys.readouterr().out
    assert "PID 4242" in out
    assert "Push failed: rejected" in out
    assert "01234567 feat(search): add search" in out
    assert "Pending files: 3" in out
    assert "Commits today: 7" in out


def test_status_command(mock_ops: MagicMock, capsys: pytest.CaptureFixture) -> None:
    mock_ops.status.return_value = StatusSnapshot(
        state="stopped",
        paused=False,
        pause_reason=None,
        pid=None,
        last_commit=None,
        pending_files=0,
        commits_today=0,
    )
    cli.main(["status"])
    assert "Stopped" in capsys.readouterr().out


def test_version_flag(capsys: pytest.CaptureFixture) -> None:
    with pytest.raises(SystemExit):
        cli.main(["--version"])
    assert cli.VERSION in capsys.readouterr().out
