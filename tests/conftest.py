"""Shared fixtures: an in-memory VCS, a manual clock and real git sandboxes."""

import os
import shutil
import subprocess
from pathlib import Path

import pytest

from git_tether.config import Config
from git_tether.errors import VcsCommandError


class FakeVcs:
    """In-memory stand-in for GitRepo that records every operation.

    Attributes:
        calls (list[str]): Operation names in call order.
        changed (list[str]): Paths currently modified in the "working tree".
        commits (list[str]): Local commit messages.
        pushed (list[str]): Commit messages that reached the "remote".
        failures (dict[str, int]): Remaining forced failures per operation.
    """

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.changed: list[str] = []
        self.staged: list[str] = []
        self.commits: list[str] = []
        self.pushed: list[str] = []
        self.failures: dict[str, int] = {}
        self.on_push = None

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if self.failures.get(name, 0) > 0:
            self.failures[name] -= 1
            raise VcsCommandError([name], 1, f"{name} failed")

    def ensure_repository(self, remote_url: str) -> None:
        self._call("ensure_repository")

    def checkout_branch(self) -> None:
        self._call("checkout_branch")

    def stage_all(self) -> None:
        self._call("stage_all")
        self.staged = list(self.changed)

    def list_changed_files(self) -> list[str]:
        self._call("list_changed_files")
        return list(self.changed)

    def commit(self, message: str) -> bool:
        self._call("commit")
        if not self.staged:
            return False
        self.commits.append(message)
        self.changed, self.staged = [], []
        return True

    def pull_rebase(self) -> None:
        self._call("pull_rebase")

    def push(self) -> None:
        self._call("push")
        self.pushed.extend(c for c in self.commits if c not in self.pushed)
        if self.on_push is not None:
            self.on_push()


class ManualClock:
    """A monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_vcs() -> FakeVcs:
    return FakeVcs()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """A valid configuration pointing at a temporary working directory."""
    conf = Config()
    conf.repo.url = "https://example.com/notes.git"
    conf.repo.workdir = tmp_path / "work"
    return conf


def git(cwd: Path, *args: str) -> str:
    """Runs git in `cwd` for test setup, returning stdout."""
    res = subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True, check=True
    )
    return res.stdout.strip()


@pytest.fixture
def git_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Isolates git from the user's global configuration."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test User")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "test@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test User")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "test@example.com")
    monkeypatch.delenv("GIT_DIR", raising=False)
    monkeypatch.delenv("GIT_WORK_TREE", raising=False)


@pytest.fixture
def remote_repo(tmp_path: Path, git_env: None) -> Path:
    """A bare remote whose 'main' branch holds a single README commit."""
    remote = tmp_path / "remote.git"
    remote.mkdir()
    git(remote, "init", "--bare")
    git(remote, "symbolic-ref", "HEAD", "refs/heads/main")

    seed = tmp_path / "seed"
    seed.mkdir()
    git(seed, "init")
    git(seed, "symbolic-ref", "HEAD", "refs/heads/main")
    (seed / "README.md").write_text("hello\n")
    git(seed, "add", "README.md")
    git(seed, "commit", "-m", "initial")
    git(seed, "remote", "add", "origin", os.fspath(remote))
    git(seed, "push", "origin", "main")
    return remote


@pytest.fixture
def other_clone(tmp_path: Path, remote_repo: Path) -> Path:
    """A second checkout of the remote, standing in for another machine."""
    other = tmp_path / "other"
    git(tmp_path, "clone", "--branch", "main", os.fspath(remote_repo), "other")
    return other
