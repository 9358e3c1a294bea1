import os
from pathlib import Path

"""Global constants and path definitions for Git Tether.

This module defines the filesystem layout (adhering to XDG standards where applicable),
application identifiers, and the timing constants that bound the sync loop.
"""

# --- Identity ---
APP_NAME = "git-tether"
"""str: The human-readable application name."""

APP_LABEL = "com.gittether.daemon"
"""str: The reverse-DNS style application identifier."""

__version__ = "0.3.0"
"""str: The distribution version."""

# --- Paths ---
_XDG_STATE = os.environ.get("XDG_STATE_HOME")
_BASE_STATE = Path(_XDG_STATE) if _XDG_STATE else Path.home() / ".local/state"

STATE_DIR = _BASE_STATE / "git-tether"
"""Path: The directory for runtime state data (logs, pid)."""

# Ensure state directory exists immediately upon module import.
STATE_DIR.mkdir(parents=True, exist_ok=True)

LOG_FILE = STATE_DIR / "daemon.log"
"""Path: The file path for the daemon process logs."""

PID_FILE = STATE_DIR / "daemon.pid"
"""Path: The file path storing the daemon's process ID."""

# --- Configuration Paths ---
CONFIG_DIR: Path = Path.home() / ".config/git-tether"
"""Path: The directory for user configuration files."""

CONFIG_FILE: Path = CONFIG_DIR / "config.toml"
"""Path: The main configuration file path."""

CONFIG_ENV_VAR = "GIT_TETHER_CONFIG"
"""str: Environment variable that overrides the configuration file path."""

LOG_LEVEL_ENV_VAR = "GIT_TETHER_LOG"
"""str: Environment variable selecting the log level (e.g. 'debug')."""

# --- Git / Logic Constants ---
BUILTIN_IGNORES = [
    "/.git",
    "/.git/**",
    "/.gitignore",
    "**/.DS_Store",
    "**/Thumbs.db",
]
"""
list[str]: Paths that never trigger a sync, whatever the user configures.
Matched with gitignore semantics, so '*' does not cross directories.
"""

AUTOSTASH_MESSAGE = "git-tether-autostash"
"""str: Marker message for the stash created around pull --rebase."""

# --- Timing (seconds) ---
MIN_DEBOUNCE = 1
MIN_POLL_INTERVAL = 30
MIN_UPDATE_INTERVAL = 3600

MAX_BACKOFF_STEP = 6
MAX_BACKOFF_SECONDS = 300.0

MAX_IDLE_WAIT = 300.0
"""float: Hard ceiling on a single idle wait, so shutdown is re-checked."""

MIN_IDLE_WAIT = 0.2
"""float: Floor on a single idle wait, preventing a busy loop on due deadlines."""

SHUTDOWN_SLICE = 60.0
"""float: Longest uninterrupted sleep of the self-update worker."""
