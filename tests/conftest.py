"""Shared fixtures for the Git Autopilot test suite."""

import subprocess
from pathlib import Path

import pytest

from git_autopilot.constants import ENV_HOME


@pytest.fixture(autouse=True)
def isolated_home(tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Points the per-user config directory at a throwaway location.

    Args:
        tmp_path_factory (pytest.TempPathFactory): Pytest temp directory factory.
        monkeypatch (pytest.MonkeyPatch): Pytest fixture for patching the environment.
    """
    home = tmp_path_factory.mktemp("autopilot-home")
    monkeypatch.setenv(ENV_HOME, str(home))
    return home


def git(repo: Path, *args: str) -> str:
    """Runs a git command in repo and returns its stripped stdout."""
    res = subprocess.run(
        ["git", *args], cwd=repo, capture_output=True, text=True, check=True
    )
    return res.stdout.strip()


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Creates a real repository on branch 'feature' with one initial commit.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
    """
    repo = tmp_path / "project"
    repo.mkdir()
    git(repo, "init", "-q")
    git(repo, "checkout", "-q", "-b", "feature")
    git(repo, "config", "user.name", "Autopilot Tests")
    git(repo, "config", "user.email", "tests@example.com")
    git(repo, "config", "commit.gpgsign", "false")
    (repo / "README.md").write_text("# Project\n")
    git(repo, "add", "README.md")
    git(repo, "commit", "-q", "-m", "initial")
    return repo
