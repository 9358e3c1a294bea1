import shutil
import subprocess
import sys
from pathlib import Path

from rich.console import Console

from .constants import APP_LABEL

console = Console()


def get_executable() -> str:
    """Locates the installed daemon executable in the system path.

    Returns:
        str: The absolute path to the 'git-tether-daemon' executable.

    Raises:
        SystemExit: If the executable is not found in the PATH.
    """
    exe = shutil.which("git-tether-daemon")
    if not exe:
        console.print(
            "[bold red]ERROR:[/bold red] Could not find 'git-tether-daemon'. "
            "Ensure the package is installed."
        )
        sys.exit(1)
    return exe


def get_unit_path() -> Path:
    """Resolves the systemd user unit path.

    Raises:
        NotImplementedError: On platforms without systemd user units.
    """
    if sys.platform.startswith("linux"):
        return Path.home() / f".config/systemd/user/{APP_LABEL}.service"
    raise NotImplementedError("Service installation is only automated on Linux.")


def render_unit(executable: str, config_path: Path | None = None) -> str:
    """Builds the systemd unit for a long-running daemon.

    Args:
        executable (str): The daemon executable.
        config_path (Path | None): Explicit config file baked into the unit.

    Returns:
        str: The unit file content.
    """
    exec_start = executable
    if config_path is not None:
        exec_start += f" --config {config_path}"
    return f"""[Unit]
Description=Git Tether Sync Daemon
After=network-online.target

[Service]
Type=simple
ExecStart={exec_start}
KillSignal=SIGINT
Restart=on-failure
RestartSec=30

[Install]
WantedBy=default.target
"""


def install(config_path: Path | None = None) -> None:
    """Installs and starts the daemon as a systemd user service.

    On macOS this only prints guidance; launchd agents are left to the user.

    Args:
        config_path (Path | None): Explicit config file for the service.
    """
    if sys.platform == "darwin":
        console.print(
            "\n[bold yellow]NOTE:[/bold yellow] Automatic service setup is not "
            "available on macOS."
        )
        console.print("Create a LaunchAgent that runs:")
        console.print("   [green]git-tether-daemon[/green]\n")
        return

    exe = get_executable()
    unit_path = get_unit_path()
    unit_path.parent.mkdir(parents=True, exist_ok=True)
    unit_path.write_text(render_unit(exe, config_path))

    subprocess.run(["systemctl", "--user", "daemon-reload"], check=True)
    subprocess.run(
        ["systemctl", "--user", "enable", "--now", unit_path.name], check=True
    )
    console.print(
        f"[bold green]SUCCESS:[/bold green] Tether service active (Linux).\n"
        f"Check status: systemctl --user status {unit_path.name}"
    )


def uninstall() -> None:
    """Stops and removes the systemd user service."""
    if sys.platform == "darwin":
        console.print(
            "\n[bold yellow]NOTE:[/bold yellow] Remove the LaunchAgent you "
            "created for git-tether-daemon.\n"
        )
        return

    unit_path = get_unit_path()
    subprocess.run(
        ["systemctl", "--user", "disable", "--now", unit_path.name],
        stderr=subprocess.DEVNULL,
    )
    if unit_path.exists():
        unit_path.unlink()
    subprocess.run(["systemctl", "--user", "daemon-reload"])

    console.print("[bold green]SUCCESS:[/bold green] Service uninstalled.")


def is_service_enabled() -> bool:
    """Checks whether the systemd user service is enabled."""
    if not sys.platform.startswith("linux"):
        return False
    try:
        res = subprocess.run(
            ["systemctl", "--user", "is-enabled", f"{APP_LABEL}.service"],
            capture_output=True,
            text=True,
        )
    except FileNotFoundError:
        return False
    return res.returncode == 0
