"""Git Autopilot: safe, continuous auto-commits for a git working tree.

This package provides the watch-decide-act loop (filesystem watcher,
debounced scheduler, safety pipeline, commit-message synthesizer), the
durable per-repository state it relies on, and a small command-line
interface around it.
"""

from . import (
    cli,
    commit_message,
    config,
    constants,
    daemon,
    errors,
    events,
    git_wrapper,
    identity,
    ignore,
    ledger,
    ops,
    paths,
    safety,
    signer,
    state,
    watcher,
)

__all__ = [
    "cli",
    "commit_message",
    "config",
    "constants",
    "daemon",
    "errors",
    "events",
    "git_wrapper",
    "identity",
    "ignore",
    "ledger",
    "ops",
    "paths",
    "safety",
    "signer",
    "state",
    "watcher",
]
