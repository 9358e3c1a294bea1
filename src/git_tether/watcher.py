import logging
import os
import queue
import threading
from dataclasses import dataclass
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .constants import APP_NAME
from .errors import ChannelDisconnected, WatcherError
from .ignore import ChangeFilter

logger = logging.getLogger(APP_NAME)


@dataclass(frozen=True)
class Changed:
    """A relevant path under the working directory changed."""

    path: str


@dataclass(frozen=True)
class RescanRequested:
    """The whole tree may have changed; treat it as dirty."""


@dataclass(frozen=True)
class WatcherFailed:
    """The watcher reported a problem. Non-fatal for the engine."""

    message: str


SyncEvent = Changed | RescanRequested | WatcherFailed

_CLOSED = object()
_WAKE = object()


class EventChannel:
    """Multi-producer, single-consumer queue of sync events.

    Once closed, every further `recv` raises `ChannelDisconnected`. Backed by
    a `queue.SimpleQueue`, whose `put` may be called from a signal handler.
    """

    def __init__(self) -> None:
        self._queue: queue.SimpleQueue = queue.SimpleQueue()
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def send(self, event: SyncEvent) -> None:
        """Publishes an event. Events sent after `close` are dropped."""
        if not self._closed.is_set():
            self._queue.put(event)

    def wake(self) -> None:
        """Interrupts a pending `recv`, which then returns None."""
        self._queue.put(_WAKE)

    def close(self) -> None:
        if not self._closed.is_set():
            self._closed.set()
            self._queue.put(_CLOSED)

    def recv(self, timeout: float) -> SyncEvent | None:
        """Waits up to `timeout` seconds for the next event.

        Returns:
            SyncEvent | None: The event, or None if the wait timed out or was
            interrupted by `wake`.

        Raises:
            ChannelDisconnected: If the channel has been closed.
        """
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _WAKE:
            return None
        if item is _CLOSED:
            # Keep the sentinel so later receivers see the closure too.
            self._queue.put(_CLOSED)
            raise ChannelDisconnected("event channel closed")
        return item


class ChangeHandler(FileSystemEventHandler):
    """Translates watchdog events into channel events, applying the filter."""

    _SKIPPED_TYPES = {"opened", "closed", "closed_no_write"}

    def __init__(self, root: Path, change_filter: ChangeFilter, channel: EventChannel):
        self.root = Path(os.path.abspath(root))
        self.change_filter = change_filter
        self.channel = channel

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type in self._SKIPPED_TYPES:
            return
        # Directory mtime updates accompany every child change.
        if event.is_directory and event.event_type == "modified":
            return

        src = os.fsdecode(event.src_path)
        if event.event_type == "deleted" and Path(os.path.abspath(src)) == self.root:
            self.channel.send(WatcherFailed(f"watched directory removed: {src}"))
            return

        paths = [src]
        dest = getattr(event, "dest_path", "")
        if dest:
            paths.append(os.fsdecode(dest))

        for path in paths:
            if not self.change_filter.should_ignore(path):
                self.channel.send(Changed(path))
                return


class WatcherAdapter:
    """Runs a recursive watchdog observer on the working directory.

    A supervisor thread watches the observer itself; if it dies the failure is
    reported and the channel is closed, which ends the sync loop.

    Attributes:
        root (Path): The watched directory.
        channel (EventChannel): Where translated events are published.
    """

    def __init__(
        self,
        root: Path,
        change_filter: ChangeFilter,
        channel: EventChannel,
        shutdown: threading.Event,
        supervise_interval: float = 1.0,
    ):
        self.root = Path(root)
        self.channel = channel
        self.shutdown = shutdown
        self.supervise_interval = supervise_interval
        self.handler = ChangeHandler(self.root, change_filter, channel)
        self.observer = Observer()
        self._supervisor: threading.Thread | None = None

    def start(self) -> None:
        """Starts watching and requests an initial rescan.

        Raises:
            WatcherError: If the observer cannot be started.
        """
        try:
            self.observer.schedule(self.handler, str(self.root), recursive=True)
            self.observer.start()
        except OSError as e:
            raise WatcherError(f"Failed to start watcher on {self.root}: {e}") from e

        logger.info(f"Watching {self.root}")
        self.channel.send(RescanRequested())

        self._supervisor = threading.Thread(
            target=self._supervise, name="git-tether-watch-supervisor"
        )
        self._supervisor.start()

    def _supervise(self) -> None:
        while not self.shutdown.wait(self.supervise_interval):
            if not self.observer.is_alive():
                logger.error("Filesystem observer stopped unexpectedly")
                self.channel.send(WatcherFailed("filesystem observer stopped"))
                self.channel.close()
                return

    def stop(self) -> None:
        """Stops the observer and supervisor and waits for both."""
        self.shutdown.set()
        if self.observer.is_alive():
            self.observer.stop()
            self.observer.join(timeout=10)
        if self._supervisor is not None:
            self._supervisor.join(timeout=10)
