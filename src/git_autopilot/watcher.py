import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from .constants import APP_NAME
from .ignore import IgnoreMatcher

logger = logging.getLogger(APP_NAME)

KIND_BY_EVENT = {
    EVENT_TYPE_CREATED: "create",
    EVENT_TYPE_MODIFIED: "modify",
    EVENT_TYPE_DELETED: "delete",
}


@dataclass(frozen=True)
class ChangeEvent:
    """A relevant filesystem change.

    Attributes:
        path (str): Repo-relative path.
        kind (str): 'create', 'modify' or 'delete'.
        observed_at (float): Wall-clock time the event was received.
    """

    path: str
    kind: str
    observed_at: float = field(default_factory=time.time)


class ChangeHandler(FileSystemEventHandler):
    """Translates watchdog events into ChangeEvents, dropping ignored paths.

    Only create/modify/delete/move notifications count. Open and close
    notifications are dropped because the daemon's own git calls read files.
    """

    def __init__(self, matcher: IgnoreMatcher, callback: Callable[[ChangeEvent], None]):
        self.matcher = matcher
        self.callback = callback

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        if event.event_type == EVENT_TYPE_MOVED:
            self._emit(_as_str(event.src_path), "delete")
            self._emit(_as_str(event.dest_path), "create")
            return
        kind = KIND_BY_EVENT.get(event.event_type)
        if kind:
            self._emit(_as_str(event.src_path), kind)

    def _emit(self, path: str, kind: str) -> None:
        if not path or self.matcher.matches(path):
            return
        rel = self.matcher.relative(path)
        if rel is None:
            return
        try:
            self.callback(ChangeEvent(path=rel, kind=kind))
        except Exception as e:
            # Never let a callback failure kill the observer thread.
            logger.error(f"WATCH ERROR handling {rel}: {e}")


def _as_str(path: str | bytes) -> str:
    return path.decode() if isinstance(path, bytes) else path


class RepoWatcher:
    """Manages the watchdog observer lifecycle for one repository."""

    def __init__(
        self,
        repo_path: Path,
        matcher: IgnoreMatcher,
        callback: Callable[[ChangeEvent], None],
    ):
        self.repo_path = repo_path
        self.handler = ChangeHandler(matcher, callback)
        self.observer: Observer | None = None

    @property
    def is_running(self) -> bool:
        return self.observer is not None

    def set_matcher(self, matcher: IgnoreMatcher) -> None:
        self.handler.matcher = matcher

    def start(self) -> None:
        if self.is_running:
            logger.warning("Watcher already running")
            return
        self.observer = Observer()
        self.observer.schedule(self.handler, str(self.repo_path), recursive=True)
        self.observer.start()
        logger.info(f"Watching {self.repo_path}")

    def stop(self) -> None:
        """Stops the observer and joins its thread."""
        if not self.is_running:
            return
        self.observer.stop()
        self.observer.join()
        self.observer = None
        logger.info("Watcher stopped")
