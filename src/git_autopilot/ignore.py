import fnmatch
import logging
import os
from pathlib import Path

from .constants import APP_NAME, HARD_IGNORES
from .errors import ConfigError
from .paths import get_ignore_path

logger = logging.getLogger(APP_NAME)


def read_ignore_file(repo_path: Path) -> list[str]:
    """Reads .autopilotignore, skipping blank lines and '#' comments.

    Returns:
        list[str]: The user patterns, or an empty list if the file is absent.

    Raises:
        ConfigError: If the file exists but cannot be read.
    """
    ignore_path = get_ignore_path(repo_path)
    if not ignore_path.exists():
        return []
    try:
        content = ignore_path.read_text()
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"Could not read ignore file {ignore_path}: {e}") from e

    return [
        line.strip()
        for line in content.splitlines()
        if line.strip() and not line.strip().startswith("#")
    ]


def normalize_path(path: str) -> str:
    """Normalizes a relative path to forward slashes without a leading './'."""
    path = path.replace(os.sep, "/")
    while path.startswith("./"):
        path = path[2:]
    return path


class IgnoreMatcher:
    """Decides whether a repository path is irrelevant to the daemon.

    Hard-coded exclusions are always applied on top of user patterns. One
    instance is shared by the filesystem watch and the pre-staging check.

    Attributes:
        root (Path): The repository root used to relativize absolute paths.
        patterns (tuple[str, ...]): The full pattern list, hard exclusions first.
    """

    def __init__(self, root: Path, patterns: list[str] | tuple[str, ...] = ()):
        self.root = root.resolve()
        self.patterns = tuple(dict.fromkeys([*HARD_IGNORES, *patterns]))

        self._exact: set[str] = set()
        self._dirs: list[str] = []
        self._suffixes: list[str] = []
        self._globs: list[str] = []
        for pattern in self.patterns:
            self._compile(normalize_path(pattern.strip()))

    @classmethod
    def load(cls, repo_path: Path, extra: tuple[str, ...] = ()) -> "IgnoreMatcher":
        """Builds a matcher from .autopilotignore plus configured patterns."""
        return cls(repo_path, [*read_ignore_file(repo_path), *extra])

    def _compile(self, pattern: str) -> None:
        if not pattern:
            return
        pattern = pattern.lstrip("/")
        if pattern.endswith("/"):
            self._dirs.append(pattern.rstrip("/"))
        elif pattern.startswith("*.") and not any(c in pattern[2:] for c in "*?["):
            self._suffixes.append(pattern[1:])
        elif any(c in pattern for c in "*?["):
            self._globs.append(pattern)
        else:
            # A bare name matches the exact path and, if it is a directory, its contents.
            self._exact.add(pattern)

    def relative(self, path: str | Path) -> str | None:
        """Returns the repo-relative form of a path, or None if outside the repo."""
        candidate = Path(path)
        if candidate.is_absolute():
            try:
                candidate = candidate.resolve().relative_to(self.root)
            except ValueError:
                return None
        return normalize_path(str(candidate))

    def matches(self, path: str | Path) -> bool:
        """Returns True if the path should be ignored.

        Paths outside the repository are always ignored.
        """
        rel = self.relative(path)
        if rel is None:
            return True
        if rel in ("", "."):
            return False

        for exact in self._exact:
            if rel == exact or rel.startswith(exact + "/"):
                return True

        segments = rel.split("/")
        for directory in self._dirs:
            if "/" in directory:
                if rel == directory or rel.startswith(directory + "/"):
                    return True
            elif directory in segments:
                # Single-segment directory patterns match at any depth.
                return True

        name = segments[-1]
        if any(name.endswith(suffix) for suffix in self._suffixes):
            return True

        return any(
            fnmatch.fnmatchcase(rel, glob) or fnmatch.fnmatchcase(name, glob)
            for glob in self._globs
        )

    def filter(self, paths: list[str]) -> list[str]:
        """Returns the paths that are not ignored, preserving order."""
        return [p for p in paths if not self.matches(p)]
