import logging
import subprocess
import threading
import time

from .config import SelfUpdateConfig
from .constants import APP_NAME, SHUTDOWN_SLICE

logger = logging.getLogger(APP_NAME)


class SelfUpdateWorker:
    """Runs the configured update command on its own timer thread.

    The worker shares nothing with the sync engine except the shutdown token,
    and sleeps in slices so a multi-hour interval still stops promptly.
    """

    def __init__(self, config: SelfUpdateConfig, shutdown: threading.Event):
        self.config = config
        self.shutdown = shutdown
        self._thread: threading.Thread | None = None

    def start(self) -> bool:
        """Spawns the worker thread if enabled.

        Returns:
            bool: True if a thread was started.
        """
        if not self.config.enabled:
            return False
        if not self.config.command:
            logger.warning("Self-update enabled but no [self_update].command set; skipping")
            return False

        self._thread = threading.Thread(
            target=self._loop, name="git-tether-self-update"
        )
        self._thread.start()
        return True

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def check_now(self) -> bool:
        """Runs the update command once.

        Returns:
            bool: True if the command exited successfully.
        """
        command = self.config.command
        if not command:
            return False

        logger.info(f"Running self-update command: {command}")
        try:
            res = subprocess.run(command, shell=True, capture_output=True, text=True)
        except OSError as e:
            logger.warning(f"Self-update command could not be started: {e}")
            return False

        if res.returncode != 0:
            logger.warning(
                f"Self-update command exited with {res.returncode}: "
                f"{(res.stderr or res.stdout).strip()}"
            )
            return False
        logger.info("Self-update command finished")
        return True

    def _sleep(self, seconds: float) -> bool:
        """Sleeps for `seconds` in bounded slices.

        Returns:
            bool: False if shutdown was requested while sleeping.
        """
        deadline = time.monotonic() + seconds
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return not self.shutdown.is_set()
            if self.shutdown.wait(min(remaining, SHUTDOWN_SLICE)):
                return False

    def _loop(self) -> None:
        logger.debug("Self-update worker started")
        while not self.shutdown.is_set():
            self.check_now()
            if not self._sleep(self.config.interval):
                break
        logger.debug("Self-update worker stopped")
