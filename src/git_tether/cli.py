import argparse
import logging
import os
import subprocess
import sys
import threading
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from . import daemon, service
from .config import Config
from .constants import APP_NAME, LOG_FILE, PID_FILE, __version__
from .errors import ConfigError, TetherError, VcsError
from .git_wrapper import GitRepo

logger = logging.getLogger(APP_NAME)
console = Console()

CONFIG_TEMPLATE = """# Git Tether Configuration

[repo]
url = ""
branch = "main"
remote = "origin"
workdir = "~/Notes"

[sync]
debounce = "5s"
poll_interval = "5m"

[commit]
prefix = "auto:"
max_files_in_summary = 5
include_timestamp = false

[files]
ignore = []
"""


def _load_config(path: Path | None) -> Config:
    """Loads the configuration or exits with a readable error."""
    try:
        return Config.load(path)
    except ConfigError as e:
        console.print(f"[bold red]Config Error:[/bold red] {e}")
        sys.exit(1)


def _daemon_running() -> bool:
    if not PID_FILE.exists():
        return False
    try:
        pid = int(PID_FILE.read_text().strip())
        os.kill(pid, 0)
    except (ValueError, OSError):
        return False
    return True


def run_once(config_path: Path | None, pull_only: bool = False) -> None:
    """Runs a single sync (or pull) cycle in the foreground.

    Args:
        config_path (Path | None): Explicit config file.
        pull_only (bool): Only pull remote changes; commit nothing.
    """
    config = _load_config(config_path)
    daemon.setup_logging(interactive=True)
    repo = GitRepo.from_config(config)
    engine = daemon.SyncEngine(config, repo, threading.Event())

    try:
        with console.status("Preparing repository...", spinner="dots"):
            repo.ensure_repository(config.repo.url)
        if pull_only:
            with console.status("Pulling remote changes...", spinner="dots"):
                engine.poll_once()
            console.print("[bold green]✔ Up to date.[/bold green]")
            return
        with console.status("Synchronizing local changes...", spinner="dots"):
            pushed = engine.sync_once()
    except TetherError as e:
        console.print(f"[bold red]SYNC ERROR:[/bold red] {e}")
        sys.exit(1)

    if pushed:
        console.print("[bold green]✔ Changes pushed.[/bold green]")
    else:
        console.print("[dim]Nothing to synchronize.[/dim]")


def show_status(config_path: Path | None) -> None:
    """Displays daemon liveness, the effective settings and pending changes."""
    config = _load_config(config_path)

    if _daemon_running():
        status_text, status_style = "Active (Running)", "bold green"
    elif service.is_service_enabled():
        status_text, status_style = "Enabled (Not Running)", "yellow"
    else:
        status_text, status_style = "Stopped", "bold red"

    system_content = Text()
    system_content.append("Daemon: ", style="bold")
    system_content.append(status_text, style=status_style)
    console.print(Panel(system_content, title="System Status", expand=False))

    repo_content = Text()
    repo_content.append(f"Remote:      {config.repo.remote} -> {config.repo.url}\n")
    repo_content.append(f"Branch:      {config.repo.branch}\n")
    repo_content.append(f"Workdir:     {config.repo.workdir}\n")
    repo_content.append(
        f"Timing:      debounce {config.sync.debounce}s, "
        f"poll every {config.sync.poll_interval}s\n",
        style="dim",
    )

    repo = GitRepo.from_config(config)
    try:
        pending = repo.list_changed_files()
        repo_content.append(f"Pending:     {len(pending)} files changed")
        for path in pending[: config.commit.max_files_in_summary]:
            repo_content.append(f"\n   ~ {path}", style="yellow")
    except VcsError as e:
        logger.debug(f"Status query failed: {e}")
        repo_content.append(f"Pending:     unavailable ({e})", style="bold red")

    console.print(Panel(repo_content, title="Repository Status", expand=False))


def open_config(config_path: Path | None) -> None:
    """Opens the configuration file in the system default editor."""
    path = Config.resolve_path(config_path)
    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(CONFIG_TEMPLATE)

    editor = os.environ.get("EDITOR")
    if not editor:
        editor = "open" if sys.platform == "darwin" else "nano"

    console.print(f"Opening [cyan]{path}[/cyan]...")
    try:
        subprocess.run([editor, str(path)])
    except OSError as e:
        console.print(f"[red]Could not open editor: {e}[/red]")


def show_config_reference() -> None:
    """Displays a formatted table of all available configuration options."""
    table = Table(title="Git Tether Configuration Schema", show_lines=True)
    table.add_column("Section", style="cyan", justify="right")
    table.add_column("Key", style="green")
    table.add_column("Type", style="dim")
    table.add_column("Default", style="yellow")
    table.add_column("Description")

    rows = [
        ("repo", "url", "str", "(required)", "Remote repository URL."),
        ("", "branch", "str", '"main"', "The branch kept in sync."),
        ("", "remote", "str", '"origin"', "Name of the git remote."),
        ("", "workdir", "path", "(required)", "Local working directory."),
        ("sync", "debounce", "int | str", '"5s"', "Quiet period after a change (min 1s)."),
        ("", "poll_interval", "int | str", '"5m"', "Remote pull interval (min 30s)."),
        ("commit", "prefix", "str", '"auto:"', "Leading token of commit messages."),
        ("", "max_files_in_summary", "int", "5", "Files named in the message before summarizing."),
        ("", "include_timestamp", "bool", "false", "Append a UTC timestamp."),
        ("files", "ignore", "list", "[]", "Extra globs that never trigger a sync."),
        ("git", "executable", "str", '"git"', "Git binary override."),
        ("", "author_name", "str", "None", "Author/committer name override."),
        ("", "author_email", "str", "None", "Author/committer email override."),
        ("", "credentials_file", "path", "None", "File for the 'store' credential helper."),
        ("self_update", "enabled", "bool", "false", "Run the update command periodically."),
        ("", "command", "str", "None", "Shell command performing the update."),
        ("", "interval", "int | str", '"24h"', "Time between update checks (min 1h)."),
        ("limits", "max_log_size", "int | str", '"5mb"', "Log size before rotation."),
    ]
    for row in rows:
        table.add_row(*row)

    console.print(table)


def tail_log() -> None:
    """Follows the daemon log file in real-time."""
    if not LOG_FILE.exists():
        console.print(f"[red]No log file found yet at {LOG_FILE}.[/red]")
        return

    console.print(f"Tailing [bold cyan]{LOG_FILE}[/bold cyan] (Ctrl+C to stop)...")
    try:
        subprocess.run(["tail", "-n", "1000", "-f", str(LOG_FILE)])
    except KeyboardInterrupt:
        console.print("\nStopped.", style="dim")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="git-tether",
        description="Mirror a working directory to a git branch in the background.",
    )
    parser.add_argument(
        "--config", "-c", type=Path, default=None, help="Path to config.toml"
    )
    parser.add_argument(
        "--version", "-V", action="version", version=f"{APP_NAME} {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("run", help="Run the sync daemon in the foreground")
    subparsers.add_parser("sync", help="Commit and push local changes once")
    subparsers.add_parser("pull", help="Pull remote changes once")
    subparsers.add_parser("status", help="Show daemon and repository status")
    config_parser = subparsers.add_parser("config", help="Open the config file")
    config_parser.add_argument(
        "--list",
        "-l",
        action="store_true",
        help="List all available configuration options and their descriptions",
    )
    subparsers.add_parser("log", help="Tail the daemon log file")
    subparsers.add_parser("install-service", help="Install the background service")
    subparsers.add_parser("uninstall-service", help="Remove the background service")
    return parser


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the Git Tether CLI."""
    args = build_parser().parse_args(argv)

    if args.command == "sync":
        run_once(args.config)
    elif args.command == "pull":
        run_once(args.config, pull_only=True)
    elif args.command == "status":
        show_status(args.config)
    elif args.command == "config":
        if args.list:
            show_config_reference()
        else:
            open_config(args.config)
    elif args.command == "log":
        tail_log()
    elif args.command == "install-service":
        with console.status("Installing background service...", spinner="dots"):
            service.install(args.config)
    elif args.command == "uninstall-service":
        with console.status("Uninstalling service...", spinner="dots"):
            service.uninstall()
    else:
        # Default action: run the daemon.
        daemon.main(args.config)


if __name__ == "__main__":
    main()
