"""Tests for the commit ledger and undo."""

import datetime
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from conftest import git

from git_autopilot.git_wrapper import GitRepo, GitResult
from git_autopilot.ledger import CommitLedger, undo


def daemon_commit(repo: GitRepo, ledger: CommitLedger, name: str, content: str) -> str:
    (repo.path / name).write_text(content)
    repo.add([name])
    repo.commit(f"feat: {name}")
    sha = repo.head()
    ledger.record(sha, f"feat: {name}", [name])
    return sha


def test_record_is_newest_first_and_capped(tmp_path: Path) -> None:
    """Verifies ordering and the capacity limit.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
    """
    ledger = CommitLedger(tmp_path, capacity=3)
    for i in range(5):
        ledger.record(f"sha{i}", f"msg {i}", [f"f{i}"])

    assert [e.hash for e in ledger.entries()] == ["sha4", "sha3", "sha2"]
    assert ledger.last().files == ["f4"]
    assert ledger.pop().hash == "sha4"
    assert ledger.last().hash == "sha3"


def test_corrupt_ledger_reads_as_empty(tmp_path: Path) -> None:
    ledger = CommitLedger(tmp_path)
    ledger.history_file.write_text("not json")
    assert ledger.entries() == []
    assert ledger.pop() is None


def test_count_since(tmp_path: Path) -> None:
    ledger = CommitLedger(tmp_path)
    ledger.record("a", "m", [])
    ledger.record("b", "m", [])

    an_hour_ago = datetime.datetime.now().astimezone() - datetime.timedelta(hours=1)
    tomorrow = datetime.datetime.now().astimezone() + datetime.timedelta(days=1)
    assert ledger.count_since(an_hour_ago) == 2
    assert ledger.count_since(tomorrow) == 0


def test_undo_soft_resets_head(git_repo: Path) -> None:
    """Verifies that undoing HEAD keeps its changes in the working tree.

    Args:
        git_repo (Path): A repository on branch 'feature' with one commit.
    """
    repo = GitRepo(git_repo)
    ledger = CommitLedger(git_repo)
    base = repo.head()
    daemon_commit(repo, ledger, "work.txt", "draft\n")

    result = undo(repo, ledger, 1)

    assert len(result.undone) == 1
    assert result.error is None
    assert repo.head() == base
    assert (git_repo / "work.txt").read_text() == "draft\n"
    assert repo.staged_files() == ["work.txt"]
    assert ledger.entries() == []


def test_undo_reverts_when_not_head(git_repo: Path) -> None:
    """Verifies that a daemon commit buried under a manual one is reverted.

    Args:
        git_repo (Path): A repository on branch 'feature' with one commit.
    """
    repo = GitRepo(git_repo)
    ledger = CommitLedger(git_repo)
    daemon_commit(repo, ledger, "auto.txt", "auto\n")

    (git_repo / "manual.txt").write_text("manual\n")
    git(git_repo, "add", "manual.txt")
    git(git_repo, "commit", "-q", "-m", "manual work")
    manual_head = repo.head()

    result = undo(repo, ledger, 1)

    assert len(result.undone) == 1
    assert not (git_repo / "auto.txt").exists()
    assert (git_repo / "manual.txt").exists()
    assert git(git_repo, "rev-parse", "HEAD~1") == manual_head


def test_undo_skips_missing_commits(git_repo: Path) -> None:
    repo = GitRepo(git_repo)
    ledger = CommitLedger(git_repo)
    base = repo.head()
    real = daemon_commit(repo, ledger, "real.txt", "x\n")
    ledger.record("f" * 40, "feat: lost", ["lost.txt"])

    result = undo(repo, ledger, 1)

    assert [e.hash for e in result.skipped] == ["f" * 40]
    assert [e.hash for e in result.undone] == [real]
    assert repo.head() == base


def test_undo_more_than_available(git_repo: Path) -> None:
    repo = GitRepo(git_repo)
    ledger = CommitLedger(git_repo)
    daemon_commit(repo, ledger, "one.txt", "1\n")

    result = undo(repo, ledger, 3)

    assert len(result.undone) == 1
    assert result.error is None


def test_undo_stops_on_failure_and_keeps_entry(tmp_path: Path, mocker: MagicMock) -> None:
    """Verifies that a failed revert aborts cleanly and stays in the ledger.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
        mocker (MagicMock): Pytest fixture for mocking.
    """
    repo = mocker.MagicMock(spec=GitRepo)
    repo.commit_exists.return_value = True
    repo.head.return_value = "other"
    repo.revert.return_value = GitResult(ok=False, stderr="conflict", returncode=1)
    repo.is_merge_in_progress.return_value = True
    ledger = CommitLedger(tmp_path)
    ledger.record("abc", "feat: x", ["x"])

    result = undo(repo, ledger, 1)

    assert result.error == "conflict"
    assert result.undone == []
    repo.revert_abort.assert_called_once()
    assert ledger.last().hash == "abc"


def test_undo_rejects_non_positive_count(tmp_path: Path, mocker: MagicMock) -> None:
    with pytest.raises(ValueError):
        undo(mocker.MagicMock(spec=GitRepo), CommitLedger(tmp_path), 0)
