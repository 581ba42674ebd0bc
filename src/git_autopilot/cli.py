import argparse
import json
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from . import ops
from .constants import APP_NAME, VERSION
from .daemon import StatusSnapshot
from .errors import AutopilotError

logger = logging.getLogger(APP_NAME)
console = Console()
err_console = Console(stderr=True)


def show_status(snapshot: StatusSnapshot, repo_path: Path) -> None:
    """Renders a status snapshot as a panel."""
    content = Text()
    content.append("Daemon: ", style="bold")
    if snapshot.state == "stopped":
        content.append("Stopped\n", style="bold red")
    else:
        content.append(f"Running (PID {snapshot.pid})\n", style="bold green")

    content.append("Mode:   ", style="bold")
    if snapshot.paused:
        content.append(f"Paused: {snapshot.pause_reason}\n", style="bold yellow")
    else:
        content.append("Active\n", style="green")

    content.append("Pending files: ", style="bold")
    content.append(f"{snapshot.pending_files}\n")
    content.append("Commits today: ", style="bold")
    content.append(f"{snapshot.commits_today}\n")

    content.append("Last commit:   ", style="bold")
    if snapshot.last_commit:
        subject = snapshot.last_commit["message"].splitlines()[0]
        content.append(f"{snapshot.last_commit['hash'][:8]} {subject}", style="cyan")
        content.append(f"\n               {snapshot.last_commit['timestamp']}", style="dim")
    else:
        content.append("None", style="dim")

    console.print(Panel(content, title=f"Autopilot: {repo_path.name}", expand=False))


def show_config(data: dict) -> None:
    """Renders configuration sections as a key/value table."""
    table = Table(title="Configuration", show_header=True, header_style="bold magenta")
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    for section, values in data.items():
        if not isinstance(values, dict):
            table.add_row(section, json.dumps(values))
            continue
        for key, value in values.items():
            table.add_row(f"{section}.{key}", json.dumps(value))
    console.print(table)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="git-autopilot",
        description="Watches a git working tree and commits safely in the background.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument(
        "-C",
        dest="path",
        type=Path,
        default=None,
        help="Run as if started in this directory",
    )

    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("init", help="Create config and ignore files in this repo")
    subparsers.add_parser("start", help="Watch this repo in the foreground")
    subparsers.add_parser("stop", help="Stop the daemon watching this repo")
    subparsers.add_parser("status", help="Show daemon and repo status")

    pause_parser = subparsers.add_parser("pause", help="Suspend automatic commits")
    pause_parser.add_argument("reason", nargs="*", help="Why the daemon is paused")
    subparsers.add_parser("resume", help="Resume automatic commits")

    undo_parser = subparsers.add_parser("undo", help="Undo the latest Autopilot commits")
    undo_parser.add_argument(
        "--count", "-n", type=int, default=1, help="Number of commits to undo (default: 1)"
    )

    config_parser = subparsers.add_parser("config", help="Read or change configuration")
    config_sub = config_parser.add_subparsers(dest="action", required=True)
    get_parser = config_sub.add_parser("get", help="Print a value (e.g. watch.debounce_seconds)")
    get_parser.add_argument("key")
    set_parser = config_sub.add_parser("set", help="Set a value in the config file")
    set_parser.add_argument("key")
    set_parser.add_argument("value")
    list_parser = config_sub.add_parser("list", help="Show the effective configuration")
    for sub in (get_parser, set_parser, list_parser):
        sub.add_argument(
            "--global",
            dest="use_global",
            action="store_true",
            help="Use the global config instead of the repo's",
        )

    subparsers.add_parser("log", help="Tail the daemon log file")
    return parser


def _run(args: argparse.Namespace, parser: argparse.ArgumentParser) -> int:
    if args.command is None:
        parser.print_help()
        return 0

    if args.command == "config":
        repo_path = _optional_repo(args.path)
        if args.action == "get":
            value = ops.config_get(repo_path, args.key, args.use_global)
            console.print(json.dumps(value))
        elif args.action == "set":
            ops.config_set(repo_path, args.key, args.value, args.use_global)
        elif args.action == "list":
            show_config(ops.config_list(repo_path, args.use_global))
        return 0

    repo_path = ops.find_repo_root(args.path)

    if args.command == "init":
        ops.init_repo(repo_path)
    elif args.command == "start":
        return ops.start(repo_path)
    elif args.command == "stop":
        ops.stop(repo_path)
    elif args.command == "status":
        show_status(ops.status(repo_path), repo_path)
    elif args.command == "pause":
        ops.pause(repo_path, " ".join(args.reason) or None)
    elif args.command == "resume":
        ops.resume(repo_path)
    elif args.command == "undo":
        if args.count < 1:
            parser.error("--count must be a positive integer")
        ops.run_undo(repo_path, args.count)
    elif args.command == "log":
        ops.tail_log(repo_path)
    return 0


def _optional_repo(path: Path | None) -> Path | None:
    try:
        return ops.find_repo_root(path)
    except AutopilotError:
        return None


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the Git Autopilot CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        code = _run(args, parser)
    except AutopilotError as e:
        err_console.print(f"[bold red]ERROR:[/bold red] {e}")
        sys.exit(1)
    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
