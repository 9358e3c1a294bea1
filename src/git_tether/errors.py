"""Exception hierarchy shared by the facade, the engine and the CLI."""


class TetherError(Exception):
    """Base class for all Git Tether errors."""


class ConfigError(TetherError):
    """The settings are unusable. Fatal at startup."""


class VcsError(TetherError):
    """Base class for failures raised by the version-control facade."""


class NotARepositoryError(VcsError):
    """The working directory does not contain a git repository."""

    def __init__(self, path: object):
        super().__init__(f"Not a git repository: {path}")
        self.path = path


class RepositoryStateError(VcsError):
    """The target directory is non-empty and is not a repository.

    Requires operator intervention; the daemon refuses to start.
    """


ConflictError = RepositoryStateError


class VcsCommandError(VcsError):
    """A git subprocess exited non-zero (or could not be spawned).

    Attributes:
        args_list (list[str]): The git arguments that were executed.
        exit_code (int | None): The exit status, or None if git never ran.
        stderr (str): The captured standard error.
    """

    def __init__(
        self, args_list: list[str], exit_code: int | None, stderr: str = ""
    ) -> None:
        self.args_list = list(args_list)
        self.exit_code = exit_code
        self.stderr = stderr
        detail = stderr.strip() or "no output"
        code = "could not be executed" if exit_code is None else f"exit {exit_code}"
        super().__init__(f"git {format_args(self.args_list)} ({code}): {detail}")


class WatcherError(TetherError):
    """The filesystem watcher could not be started."""


class ChannelDisconnected(TetherError):
    """The event channel was closed by its producer."""


def format_args(args: list[str]) -> str:
    """Renders an argument vector for log output, quoting arguments with spaces."""
    return " ".join(f'"{a}"' if " " in a else a for a in args)
