"""Git Tether: keep a working directory mirrored to a git branch.

This package provides the background sync daemon (filesystem watcher, debounce
and backoff state machine, autostash-protected pull --rebase), the git facade
it drives, and the command-line interface around them.
"""

from . import (
    cli,
    config,
    constants,
    daemon,
    errors,
    git_wrapper,
    ignore,
    service,
    updater,
    watcher,
)
from .constants import __version__

__all__ = [
    "__version__",
    "cli",
    "config",
    "constants",
    "daemon",
    "errors",
    "git_wrapper",
    "ignore",
    "service",
    "updater",
    "watcher",
]
