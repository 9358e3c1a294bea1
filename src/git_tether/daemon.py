import argparse
import atexit
import datetime
import logging
import os
import signal
import sys
import threading
import time
from collections.abc import Callable
from logging.handlers import RotatingFileHandler
from pathlib import Path
from types import FrameType

from rich.console import Console

from .config import CommitConfig, Config
from .constants import (
    APP_NAME,
    LOG_FILE,
    LOG_LEVEL_ENV_VAR,
    MAX_BACKOFF_SECONDS,
    MAX_BACKOFF_STEP,
    MAX_IDLE_WAIT,
    MIN_IDLE_WAIT,
    PID_FILE,
)
from .errors import ChannelDisconnected, ConfigError, TetherError, VcsError
from .git_wrapper import GitRepo, VcsFacade
from .ignore import ChangeFilter
from .updater import SelfUpdateWorker
from .watcher import (
    Changed,
    EventChannel,
    RescanRequested,
    SyncEvent,
    WatcherAdapter,
    WatcherFailed,
)

logger = logging.getLogger(APP_NAME)
logger.setLevel(logging.INFO)

err_console = Console(stderr=True)


def backoff_delay(step: int) -> float:
    """Seconds to wait after the `step`-th consecutive failure.

    Doubles from 1s and never exceeds MAX_BACKOFF_SECONDS.
    """
    step = max(0, min(step, 16))
    return min(float(2**step), MAX_BACKOFF_SECONDS)


def build_commit_message(
    files: list[str],
    policy: CommitConfig,
    now: datetime.datetime | None = None,
) -> str:
    """Builds '<prefix> <summary>' for an automatic commit.

    Args:
        files (list[str]): The changed paths.
        policy (CommitConfig): Prefix, summary limit and timestamp flag.
        now (datetime.datetime | None): Timestamp override (UTC now by default).

    Returns:
        str: The commit message.
    """
    if len(files) <= policy.max_files_in_summary:
        summary = ", ".join(files)
    else:
        summary = f"updated {len(files)} files"

    message = f"{policy.prefix.strip()} {summary}"
    if policy.include_timestamp:
        now = now or datetime.datetime.now(datetime.timezone.utc)
        message += f" ({now.strftime('%Y-%m-%dT%H:%M:%SZ')})"
    return message


def compute_timeout(
    now: float,
    dirty_since: float | None,
    debounce: float,
    last_poll: float,
    poll_interval: float,
    backoff_until: float | None,
) -> float:
    """Seconds until the nearest deadline, clamped to [MIN_IDLE_WAIT, MAX_IDLE_WAIT].

    While backing off, nothing can run before the window ends, so the window
    is the only deadline.
    """
    deadline = now + MAX_IDLE_WAIT
    if backoff_until is not None:
        deadline = min(deadline, backoff_until)
    else:
        if dirty_since is not None:
            deadline = min(deadline, dirty_since + debounce)
        deadline = min(deadline, last_poll + poll_interval)

    return min(max(deadline - now, MIN_IDLE_WAIT), MAX_IDLE_WAIT)


class SyncEngine:
    """The single-threaded sync loop.

    Each iteration evaluates, in priority order: an active backoff window
    (do nothing), debounced local changes (stage, commit, pull --rebase,
    push), a due remote poll (pull --rebase only), and otherwise an idle
    wait on the event channel until the nearest deadline.

    Attributes:
        dirty_since (float | None): When the first unsynced change was seen.
        last_poll (float): When the remote was last pulled (or pushed to).
        backoff_until (float | None): End of the current backoff window.
        backoff_step (int): Consecutive failures, capped at MAX_BACKOFF_STEP.
    """

    def __init__(
        self,
        config: Config,
        repo: VcsFacade,
        shutdown: threading.Event,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.repo = repo
        self.shutdown = shutdown
        self.clock = clock
        self.debounce = float(config.sync.debounce)
        self.poll_interval = float(config.sync.poll_interval)

        self.dirty_since: float | None = None
        # Start overdue so the first iteration pulls.
        self.last_poll = self.clock() - self.poll_interval
        self.backoff_until: float | None = None
        self.backoff_step = 0

    # --- Operations ---

    def sync_once(self) -> bool:
        """Runs one local synchronization cycle.

        Returns:
            bool: True if a commit was pushed, False if there was nothing to sync.

        Raises:
            VcsError: If any git step fails.
        """
        self.repo.stage_all()
        files = self.repo.list_changed_files()
        if not files:
            logger.debug("No changes to commit")
            return False

        message = build_commit_message(files, self.config.commit)
        self.repo.commit(message)
        self.repo.pull_rebase()
        self.repo.push()
        logger.info(f"SYNCED: pushed {len(files)} file(s): {', '.join(files)}")
        return True

    def poll_once(self) -> None:
        """Pulls remote updates without committing anything."""
        self.repo.pull_rebase()

    # --- State transitions ---

    def _succeeded(self) -> None:
        self.backoff_step = 0
        self.backoff_until = None
        self.last_poll = self.clock()

    def _failed(self) -> None:
        self.backoff_step = min(self.backoff_step + 1, MAX_BACKOFF_STEP)
        delay = backoff_delay(self.backoff_step)
        self.backoff_until = self.clock() + delay
        logger.info(f"Backing off for {delay:.0f}s (step {self.backoff_step})")

    def tick(self) -> float | None:
        """Evaluates the state machine once.

        Returns:
            float | None: None if an action ran and the state should be
            re-evaluated immediately, otherwise the idle wait in seconds.
        """
        now = self.clock()

        if self.backoff_until is not None and now >= self.backoff_until:
            self.backoff_until = None
            logger.debug("Backoff window elapsed, resuming")

        if self.backoff_until is None:
            if self.dirty_since is not None and now - self.dirty_since >= self.debounce:
                try:
                    if self.sync_once():
                        logger.info("Local changes synchronized")
                except VcsError as e:
                    logger.error(f"SYNC ERROR: {e}")
                    self._failed()
                    return None
                self.dirty_since = None
                self._succeeded()
                return None

            if now - self.last_poll >= self.poll_interval:
                try:
                    self.poll_once()
                except VcsError as e:
                    logger.warning(f"PULL ERROR: {e}")
                    self._failed()
                    return None
                self._succeeded()
                return None

        return compute_timeout(
            now,
            self.dirty_since,
            self.debounce,
            self.last_poll,
            self.poll_interval,
            self.backoff_until,
        )

    def handle_event(self, event: SyncEvent) -> None:
        """Folds one watcher event into the engine state."""
        if isinstance(event, (Changed, RescanRequested)):
            self.dirty_since = self.clock()
            logger.debug(f"Change detected: {event}")
        elif isinstance(event, WatcherFailed):
            logger.warning(f"Watcher error: {event.message}")

    def run(self, channel: EventChannel) -> None:
        """Runs until shutdown is requested.

        An in-flight git command is always allowed to finish; shutdown is only
        observed between iterations.

        Raises:
            ChannelDisconnected: If the watcher side of the channel goes away.
        """
        while not self.shutdown.is_set():
            timeout = self.tick()
            if timeout is None:
                continue
            try:
                event = channel.recv(timeout)
            except ChannelDisconnected:
                logger.error("Watcher channel disconnected, stopping sync loop")
                raise
            if event is not None:
                self.handle_event(event)

        logger.info("Sync loop stopped")


def setup_logging(interactive: bool, max_log_size: int = 5 * 1024 * 1024) -> None:
    """Configures the logging subsystem.

    Args:
        interactive (bool): If True, logs to stdout. If False, logs to stderr and
                            to the rotating log file.
        max_log_size (int): Rotation threshold for the log file in bytes.
    """
    level_name = os.environ.get(LOG_LEVEL_ENV_VAR, "INFO").upper()
    logger.setLevel(getattr(logging, level_name, logging.INFO))

    formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)s: %(message)s", "%Y-%m-%d %H:%M:%S"
    )

    # Always log to a stream (stderr is captured by systemd).
    stream_handler = logging.StreamHandler(
        sys.stderr if not interactive else sys.stdout
    )
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if not interactive:
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=max_log_size,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


def _write_pid_file() -> None:
    try:
        with open(PID_FILE, "w") as f:
            f.write(str(os.getpid()))
        atexit.register(lambda: PID_FILE.unlink(missing_ok=True))
    except OSError as e:
        logger.warning(f"Could not write PID file: {e}")


def run_daemon(
    config: Config,
    shutdown: threading.Event,
    channel: EventChannel | None = None,
) -> None:
    """Prepares the repository, starts the workers and runs the sync loop.

    Args:
        config (Config): The validated configuration.
        shutdown (threading.Event): Shared cancellation token.
        channel (EventChannel | None): The event channel. Whoever sets
            `shutdown` should also `wake` it so an idle wait ends promptly.

    Raises:
        TetherError: If the repository cannot be prepared or the watcher fails
            to start.
    """
    workdir = config.repo.workdir
    if workdir is None:
        raise ConfigError("Missing required setting [repo].workdir")
    logger.info(f"Starting {APP_NAME} for {workdir} ({config.repo.branch})")

    repo = GitRepo.from_config(config)
    repo.ensure_repository(config.repo.url)

    if channel is None:
        channel = EventChannel()
    change_filter = ChangeFilter(workdir, config.files.ignore)
    watcher = WatcherAdapter(workdir, change_filter, channel, shutdown)
    updater = SelfUpdateWorker(config.self_update, shutdown)

    watcher.start()
    updater.start()
    try:
        SyncEngine(config, repo, shutdown).run(channel)
    finally:
        shutdown.set()
        channel.wake()
        watcher.stop()
        updater.join()
        logger.info(f"{APP_NAME} shut down")


def main(config_path: Path | None = None) -> None:
    """Entry point for the background daemon.

    Args:
        config_path (Path | None): Explicit configuration file.
    """
    try:
        config = Config.load(config_path)
    except ConfigError as e:
        setup_logging(interactive=False)
        logger.critical(f"CONFIG ERROR: {e}")
        err_console.print(f"[bold red]FATAL:[/bold red] {e}")
        sys.exit(1)

    setup_logging(interactive=False, max_log_size=config.limits.max_log_size)
    _write_pid_file()

    shutdown = threading.Event()
    channel = EventChannel()

    def interrupt_handler(_signum: int, _frame: FrameType | None) -> None:
        logger.info("Interrupt received, finishing current operation")
        shutdown.set()
        channel.wake()

    signal.signal(signal.SIGINT, interrupt_handler)

    try:
        run_daemon(config, shutdown, channel)
    except TetherError as e:
        logger.critical(f"FATAL: {e}")
        sys.exit(1)


def entrypoint() -> None:
    """Console-script entry point for `git-tether-daemon`."""
    parser = argparse.ArgumentParser(prog="git-tether-daemon")
    parser.add_argument("--config", "-c", type=Path, help="Path to config.toml")
    args = parser.parse_args()
    main(args.config)


if __name__ == "__main__":
    entrypoint()
