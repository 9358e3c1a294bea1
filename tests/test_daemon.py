"""Tests for the sync engine state machine and the daemon entry point."""

import datetime
import itertools
import logging
import signal
import threading
import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from git_tether import daemon
from git_tether.config import CommitConfig, Config
from git_tether.errors import ChannelDisconnected, ConfigError, RepositoryStateError
from git_tether.watcher import Changed, EventChannel, RescanRequested, WatcherFailed

from conftest import FakeVcs, ManualClock


@pytest.fixture
def engine(config: Config, fake_vcs: FakeVcs, clock: ManualClock) -> daemon.SyncEngine:
    """An engine whose startup poll has already happened."""
    eng = daemon.SyncEngine(config, fake_vcs, threading.Event(), clock=clock)
    assert eng.tick() is None
    fake_vcs.calls.clear()
    return eng


def test_first_tick_polls_remote(
    config: Config, fake_vcs: FakeVcs, clock: ManualClock
) -> None:
    """Verifies that a fresh engine pulls immediately instead of waiting a full interval."""
    eng = daemon.SyncEngine(config, fake_vcs, threading.Event(), clock=clock)

    assert eng.tick() is None
    assert fake_vcs.calls == ["pull_rebase"]
    assert eng.last_poll == clock.now


def test_idle_wait_targets_next_poll(engine: daemon.SyncEngine, clock: ManualClock) -> None:
    """Verifies that an idle engine sleeps until the poll deadline (capped at 300s)."""
    clock.advance(100)
    assert engine.tick() == pytest.approx(200)

    engine.poll_interval = 3600
    assert engine.tick() == pytest.approx(daemon.MAX_IDLE_WAIT)


def test_changes_wait_for_debounce(
    engine: daemon.SyncEngine, fake_vcs: FakeVcs, clock: ManualClock
) -> None:
    """Verifies that a change is not synced before the debounce interval elapses."""
    fake_vcs.changed = ["a.md"]
    engine.handle_event(Changed("/work/a.md"))

    clock.advance(2)
    assert engine.tick() == pytest.approx(3)
    assert fake_vcs.calls == []

    clock.advance(3)
    assert engine.tick() is None
    assert fake_vcs.calls == [
        "stage_all",
        "list_changed_files",
        "commit",
        "pull_rebase",
        "push",
    ]
    assert fake_vcs.pushed == ["auto: a.md"]
    assert engine.dirty_since is None


def test_rapid_changes_coalesce_into_one_sync(
    engine: daemon.SyncEngine, fake_vcs: FakeVcs, clock: ManualClock
) -> None:
    """Verifies that events arriving faster than the debounce produce exactly one cycle."""
    for name in ["a.md", "b.md", "c.md", "d.md"]:
        fake_vcs.changed.append(name)
        engine.handle_event(Changed(f"/work/{name}"))
        clock.advance(4)
        assert engine.tick() is not None

    clock.advance(1)
    assert engine.tick() is None
    clock.advance(1)
    engine.tick()

    assert fake_vcs.calls.count("push") == 1
    assert fake_vcs.pushed == ["auto: a.md, b.md, c.md, d.md"]


def test_rescan_marks_dirty(engine: daemon.SyncEngine, clock: ManualClock) -> None:
    engine.handle_event(RescanRequested())
    assert engine.dirty_since == clock.now


def test_watcher_error_does_not_touch_state(
    engine: daemon.SyncEngine, caplog: pytest.LogCaptureFixture
) -> None:
    """Verifies that watcher errors are logged but leave the sync state alone."""
    caplog.set_level(logging.WARNING)
    engine.handle_event(WatcherFailed("inotify limit reached"))

    assert engine.dirty_since is None
    assert engine.backoff_until is None
    assert "Watcher error: inotify limit reached" in caplog.text


def test_empty_sync_clears_dirty_without_commit(
    engine: daemon.SyncEngine, fake_vcs: FakeVcs, clock: ManualClock
) -> None:
    """Verifies that a change that nets out to nothing is a successful no-op."""
    engine.handle_event(Changed("/work/a.md"))
    clock.advance(10)

    assert engine.tick() is None
    assert fake_vcs.calls == ["stage_all", "list_changed_files"]
    assert engine.dirty_since is None
    assert engine.backoff_step == 0


def test_failed_sync_enters_backoff(
    engine: daemon.SyncEngine, fake_vcs: FakeVcs, clock: ManualClock
) -> None:
    """Verifies backoff on failure, quiet during the window, and reset on success."""
    fake_vcs.changed = ["a.md"]
    fake_vcs.failures["stage_all"] = 1
    engine.handle_event(Changed("/work/a.md"))
    clock.advance(10)

    assert engine.tick() is None
    assert engine.backoff_step == 1
    assert engine.backoff_until == clock.now + 2
    assert engine.dirty_since is not None

    # Inside the window nothing runs, and the wait ends at the window.
    fake_vcs.calls.clear()
    clock.advance(1)
    assert engine.tick() == pytest.approx(1)
    assert fake_vcs.calls == []

    clock.advance(1)
    assert engine.tick() is None
    assert "push" in fake_vcs.calls
    assert engine.backoff_step == 0
    assert engine.backoff_until is None
    assert engine.dirty_since is None


def test_backoff_step_is_capped(
    engine: daemon.SyncEngine, fake_vcs: FakeVcs, clock: ManualClock
) -> None:
    """Verifies that consecutive poll failures stop escalating at step 6."""
    fake_vcs.failures["pull_rebase"] = 20
    engine.last_poll = clock.now - engine.poll_interval

    for _ in range(10):
        if engine.backoff_until is not None:
            clock.now = engine.backoff_until
        assert engine.tick() is None

    assert engine.backoff_step == daemon.MAX_BACKOFF_STEP
    assert engine.backoff_until == clock.now + daemon.backoff_delay(6)


def test_poll_success_resets_backoff(
    engine: daemon.SyncEngine, fake_vcs: FakeVcs, clock: ManualClock
) -> None:
    engine.backoff_step = 4
    clock.advance(engine.poll_interval)

    assert engine.tick() is None
    assert fake_vcs.calls == ["pull_rebase"]
    assert engine.backoff_step == 0
    assert engine.backoff_until is None


def test_run_stops_when_shutdown_is_set(config: Config, fake_vcs: FakeVcs) -> None:
    shutdown = threading.Event()
    shutdown.set()
    daemon.SyncEngine(config, fake_vcs, shutdown).run(EventChannel())

    assert fake_vcs.calls == []


def test_run_raises_on_disconnected_channel(config: Config, fake_vcs: FakeVcs) -> None:
    """Verifies that losing the watcher terminates the loop."""
    channel = EventChannel()
    channel.close()

    with pytest.raises(ChannelDisconnected):
        daemon.SyncEngine(config, fake_vcs, threading.Event()).run(channel)

    assert fake_vcs.calls == ["pull_rebase"]


def test_run_syncs_events_from_channel(config: Config, fake_vcs: FakeVcs) -> None:
    """Drives the full loop: poll, receive a change, sync, then observe shutdown."""
    shutdown = threading.Event()
    ticks = itertools.count(start=0, step=10)
    fake_vcs.changed = ["notes/today.md"]
    fake_vcs.on_push = shutdown.set

    channel = EventChannel()
    channel.send(Changed("/work/notes/today.md"))

    engine = daemon.SyncEngine(config, fake_vcs, shutdown, clock=lambda: next(ticks))
    engine.run(channel)

    assert fake_vcs.pushed == ["auto: notes/today.md"]
    assert fake_vcs.calls.index("commit") < fake_vcs.calls.index("push")


def test_compute_timeout_floor() -> None:
    """Verifies that overdue deadlines still wait a little rather than spin."""
    assert daemon.compute_timeout(100.0, 0.0, 5.0, 0.0, 30.0, None) == daemon.MIN_IDLE_WAIT


def test_compute_timeout_picks_nearest_deadline() -> None:
    timeout = daemon.compute_timeout(
        now=100.0,
        dirty_since=98.0,
        debounce=5.0,
        last_poll=90.0,
        poll_interval=300.0,
        backoff_until=None,
    )
    assert timeout == pytest.approx(3.0)


def test_compute_timeout_during_backoff_waits_for_window() -> None:
    """Verifies that overdue sync deadlines do not cut a backoff wait short."""
    timeout = daemon.compute_timeout(
        now=100.0,
        dirty_since=50.0,
        debounce=5.0,
        last_poll=90.0,
        poll_interval=30.0,
        backoff_until=108.0,
    )
    assert timeout == pytest.approx(8.0)


def test_backoff_delay_values() -> None:
    assert [daemon.backoff_delay(s) for s in range(7)] == [1, 2, 4, 8, 16, 32, 64]
    assert daemon.backoff_delay(9) == 300
    assert daemon.backoff_delay(1000) == 300


@pytest.mark.parametrize(
    ("files", "expected"),
    [
        (
            ["a.md", "b.md", "c.md", "d.md", "e.md"],
            "auto: a.md, b.md, c.md, d.md, e.md",
        ),
        (["a.md", "b.md", "c.md", "d.md", "e.md", "f.md"], "auto: updated 6 files"),
    ],
)
def test_build_commit_message(files: list[str], expected: str) -> None:
    assert daemon.build_commit_message(files, CommitConfig()) == expected


def test_build_commit_message_timestamp() -> None:
    policy = CommitConfig(prefix="sync:", include_timestamp=True)
    now = datetime.datetime(2026, 3, 1, 12, 30, 5, tzinfo=datetime.timezone.utc)

    message = daemon.build_commit_message(["x.md"], policy, now=now)

    assert message == "sync: x.md (2026-03-01T12:30:05Z)"


def test_main_exits_on_config_error(mocker: MagicMock) -> None:
    """Verifies that unusable settings are fatal at startup."""
    mocker.patch("git_tether.daemon.Config.load", side_effect=ConfigError("bad"))
    mocker.patch("git_tether.daemon.setup_logging")
    run = mocker.patch("git_tether.daemon.run_daemon")

    with pytest.raises(SystemExit) as exc:
        daemon.main(Path("/nonexistent.toml"))

    assert exc.value.code == 1
    run.assert_not_called()


def test_main_exits_on_repository_state_error(
    mocker: MagicMock, config: Config
) -> None:
    mocker.patch("git_tether.daemon.Config.load", return_value=config)
    mocker.patch("git_tether.daemon.setup_logging")
    mocker.patch("git_tether.daemon._write_pid_file")
    mocker.patch("git_tether.daemon.signal.signal")
    mocker.patch(
        "git_tether.daemon.run_daemon",
        side_effect=RepositoryStateError("not empty"),
    )

    with pytest.raises(SystemExit) as exc:
        daemon.main()

    assert exc.value.code == 1


def test_run_daemon_wires_components(mocker: MagicMock, config: Config) -> None:
    """Verifies startup order and that workers are stopped when the loop ends."""
    repo = mocker.patch("git_tether.daemon.GitRepo").from_config.return_value
    watcher = mocker.patch("git_tether.daemon.WatcherAdapter").return_value
    updater = mocker.patch("git_tether.daemon.SelfUpdateWorker").return_value
    engine_cls = mocker.patch("git_tether.daemon.SyncEngine")
    engine_cls.return_value.run.side_effect = ChannelDisconnected("gone")
    shutdown = threading.Event()

    with pytest.raises(ChannelDisconnected):
        daemon.run_daemon(config, shutdown)

    repo.ensure_repository.assert_called_once_with(config.repo.url)
    watcher.start.assert_called_once()
    updater.start.assert_called_once()
    watcher.stop.assert_called_once()
    updater.join.assert_called_once()
    assert shutdown.is_set()


def test_shutdown_during_idle_wait_stops_promptly(
    config: Config, fake_vcs: FakeVcs
) -> None:
    """Verifies that an interrupt ends a long idle wait instead of sleeping it out."""
    shutdown = threading.Event()
    channel = EventChannel()
    engine = daemon.SyncEngine(config, fake_vcs, shutdown)
    loop = threading.Thread(target=engine.run, args=(channel,))
    loop.start()

    # The startup poll runs, then the engine idles for up to five minutes.
    deadline = time.monotonic() + 5
    while "pull_rebase" not in fake_vcs.calls and time.monotonic() < deadline:
        time.sleep(0.01)
    time.sleep(0.2)

    shutdown.set()
    channel.wake()
    loop.join(timeout=5)

    assert not loop.is_alive()


def test_interrupt_handler_wakes_channel(mocker: MagicMock, config: Config) -> None:
    """Verifies that SIGINT both requests shutdown and wakes the sync loop."""
    mocker.patch("git_tether.daemon.Config.load", return_value=config)
    mocker.patch("git_tether.daemon.setup_logging")
    mocker.patch("git_tether.daemon._write_pid_file")
    install = mocker.patch("git_tether.daemon.signal.signal")
    channel = mocker.patch("git_tether.daemon.EventChannel").return_value
    run = mocker.patch("git_tether.daemon.run_daemon")

    daemon.main()

    shutdown = run.call_args.args[1]
    assert run.call_args.args[2] is channel
    handler = install.call_args.args[1]
    handler(signal.SIGINT, None)

    assert shutdown.is_set()
    channel.wake.assert_called_once()


def test_run_daemon_requires_workdir(config: Config) -> None:
    config.repo.workdir = None

    with pytest.raises(ConfigError, match="workdir"):
        daemon.run_daemon(config, threading.Event())
