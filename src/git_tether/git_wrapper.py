import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .config import Config
from .constants import APP_NAME, AUTOSTASH_MESSAGE
from .errors import (
    ConfigError,
    NotARepositoryError,
    RepositoryStateError,
    VcsCommandError,
    VcsError,
    format_args,
)

logger = logging.getLogger(APP_NAME)


class VcsFacade(Protocol):
    """The repository operations the sync engine depends on."""

    def ensure_repository(self, remote_url: str) -> None: ...

    def checkout_branch(self) -> None: ...

    def list_changed_files(self) -> list[str]: ...

    def stage_all(self) -> None: ...

    def commit(self, message: str) -> bool: ...

    def pull_rebase(self) -> None: ...

    def push(self) -> None: ...


@dataclass(frozen=True)
class Attempt:
    """Outcome of a best-effort git command.

    Cleanup steps return this instead of raising, and the caller decides
    whether the error is worth a warning.
    """

    args: tuple[str, ...]
    error: VcsCommandError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class GitRepo:
    """A wrapper around the Git command-line interface for the synced working directory.

    Every method is a fresh subprocess invocation; nothing about the repository
    is cached, so callers always see the current state. All invocations run
    non-interactively (no credential prompts, SSH in batch mode) with the C
    locale so output parsing is deterministic.

    Attributes:
        path (Path): The working directory (may not exist before cloning).
        remote (str): The remote name.
        branch (str): The branch kept in sync.
        executable (str): The git binary.
    """

    def __init__(
        self,
        path: Path,
        remote: str = "origin",
        branch: str = "main",
        executable: str | None = None,
        author_name: str | None = None,
        author_email: str | None = None,
        credentials_file: Path | None = None,
    ):
        """Initializes the GitRepo instance.

        Args:
            path (Path): The working directory.
            remote (str): The remote name. Defaults to 'origin'.
            branch (str): The target branch. Defaults to 'main'.
            executable (str | None): Override for the git binary.
            author_name (str | None): Author/committer name for commits.
            author_email (str | None): Author/committer email for commits.
            credentials_file (Path | None): Backing file for the 'store' helper.
        """
        self.path = Path(path)
        self.remote = remote
        self.branch = branch
        self.executable = executable or "git"
        self.author_name = author_name
        self.author_email = author_email
        self.credentials_file = credentials_file

    @classmethod
    def from_config(cls, config: Config) -> "GitRepo":
        """Builds a facade from the loaded settings."""
        if config.repo.workdir is None:
            raise ConfigError("Missing required setting [repo].workdir")
        return cls(
            config.repo.workdir,
            remote=config.repo.remote,
            branch=config.repo.branch,
            executable=config.git.executable,
            author_name=config.git.author_name,
            author_email=config.git.author_email,
            credentials_file=config.git.credentials_file,
        )

    def is_repository(self) -> bool:
        """Checks whether the working directory contains a .git entry."""
        return (self.path / ".git").exists()

    def _env(self, author: bool) -> dict[str, str]:
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        env["GIT_SSH_COMMAND"] = "ssh -o BatchMode=yes"
        env["LC_ALL"] = "C"
        env["LANG"] = "C"
        if author:
            if self.author_name:
                env["GIT_AUTHOR_NAME"] = self.author_name
                env["GIT_COMMITTER_NAME"] = self.author_name
            if self.author_email:
                env["GIT_AUTHOR_EMAIL"] = self.author_email
                env["GIT_COMMITTER_EMAIL"] = self.author_email
        return env

    def _run(
        self,
        args: list[str],
        strip: bool = True,
        author: bool = False,
        needs_repo: bool = True,
    ) -> str:
        """Executes a Git command within the working directory.

        Args:
            args (list[str]): Arguments passed to git.
            strip (bool, optional): Whether to strip the returned stdout.
                                    Defaults to True.
            author (bool, optional): Whether to apply author/committer overrides.
                                     Defaults to False.
            needs_repo (bool, optional): Whether a repository must already exist.
                                         Defaults to True.

        Returns:
            str: The stdout of the command.

        Raises:
            NotARepositoryError: If `needs_repo` and there is no repository.
            VcsCommandError: If git exits non-zero or cannot be started.
        """
        if needs_repo and not self.is_repository():
            raise NotARepositoryError(self.path)

        cmd = [self.executable, "-c", "core.quotepath=false"]
        if self.credentials_file:
            cmd += ["-c", f"credential.helper=store --file={self.credentials_file}"]
        cmd += args

        logger.debug(f"Running git {format_args(args)}")
        try:
            res = subprocess.run(
                cmd,
                cwd=self.path,
                capture_output=True,
                encoding="utf-8",
                errors="replace",
                env=self._env(author),
            )
        except OSError as e:
            raise VcsCommandError(args, None, str(e)) from e

        if res.stderr and res.stderr.strip():
            logger.debug(f"git {format_args(args)} stderr: {res.stderr.strip()}")
        if res.returncode != 0:
            raise VcsCommandError(args, res.returncode, res.stderr or res.stdout or "")
        return res.stdout.strip() if strip else res.stdout

    def _attempt(self, args: list[str]) -> Attempt:
        """Runs a cleanup command whose failure must not mask the primary error."""
        try:
            self._run(args)
        except VcsCommandError as e:
            return Attempt(tuple(args), e)
        return Attempt(tuple(args))

    # --- Repository setup ---

    def ensure_repository(self, remote_url: str) -> None:
        """Makes the working directory a checkout of the target branch.

        An existing repository has its remote URL reconciled, is fetched, and is
        switched to the branch. Otherwise the directory (created if needed) must
        be empty and receives a fresh clone.

        Args:
            remote_url (str): The URL the remote should point at.

        Raises:
            RepositoryStateError: If the directory is non-empty and not a repository.
            VcsCommandError: If any git step fails.
        """
        if self.is_repository():
            logger.debug(f"Repository present at {self.path}, refreshing configuration")
            self.set_remote(remote_url)
            self.fetch()
            self.checkout_branch()
            return

        if self.path.exists():
            if not self.path.is_dir() or any(self.path.iterdir()):
                raise RepositoryStateError(
                    f"Target directory {self.path} is not empty and does not "
                    "contain a git repository"
                )
        self.path.mkdir(parents=True, exist_ok=True)

        self.clone(remote_url)
        self.checkout_branch()

    def clone(self, remote_url: str) -> None:
        """Clones the target branch into the (empty) working directory."""
        logger.info(f"Cloning {remote_url} ({self.branch}) into {self.path}")
        self._run(
            ["clone", "--origin", self.remote, "--branch", self.branch, remote_url, "."],
            needs_repo=False,
        )

    def set_remote(self, remote_url: str) -> None:
        """Adds the remote if absent, or updates its URL if it differs."""
        try:
            current = self._run(["remote", "get-url", self.remote])
        except VcsCommandError:
            logger.debug(f"Adding missing remote {self.remote} -> {remote_url}")
            self._run(["remote", "add", self.remote, remote_url])
            return

        if current != remote_url:
            logger.info(f"Updating remote {self.remote}: {current} -> {remote_url}")
            self._run(["remote", "set-url", self.remote, remote_url])

    def fetch(self) -> None:
        """Fetches the configured remote."""
        self._run(["fetch", self.remote])

    def current_branch(self) -> str:
        """Retrieves the name of the currently checked-out branch.

        Returns:
            str: The branch name ('HEAD' when detached).
        """
        return self._run(["rev-parse", "--abbrev-ref", "HEAD"])

    def checkout_branch(self) -> None:
        """Switches to the target branch, creating a tracking branch if needed.

        Raises:
            VcsCommandError: If neither a direct checkout nor creating the
                tracking branch succeeds.
        """
        try:
            if self.current_branch() == self.branch:
                return
        except VcsCommandError as e:
            # Unborn HEAD in an empty clone.
            logger.debug(f"Could not resolve current branch: {e}")

        try:
            self._run(["checkout", self.branch])
        except VcsCommandError as e:
            logger.debug(f"Checkout of {self.branch} failed, creating tracking branch: {e}")
            self._run(["checkout", "-b", self.branch, f"{self.remote}/{self.branch}"])

    # --- Working tree ---

    def status_porcelain(self) -> list[str]:
        """Returns the raw porcelain status entries (NUL-separated form).

        Returns:
            list[str]: Entries of the form 'XY path'; a rename or copy entry is
            followed by a bare entry holding the original path.
        """
        output = self._run(["status", "--porcelain", "-z"], strip=False)
        return [entry for entry in output.split("\0") if entry]

    def is_clean(self) -> bool:
        """Checks whether the working tree has no changes, untracked files included."""
        return not self.status_porcelain()

    def list_changed_files(self) -> list[str]:
        """Lists every changed path in the working tree.

        Renames and copies report only their destination path.

        Returns:
            list[str]: Paths relative to the working directory, in status order.
        """
        entries = self.status_porcelain()
        files = []
        skip_next = False
        for entry in entries:
            if skip_next:
                skip_next = False
                continue
            code, path = entry[:2], entry[3:]
            if "R" in code or "C" in code:
                skip_next = True
            if path:
                files.append(path)
        return files

    def stage_all(self) -> None:
        """Stages all modifications, additions and deletions."""
        self._run(["add", "-A"])

    def staged_files(self) -> list[str]:
        """Lists the paths currently staged for commit."""
        output = self._run(["diff", "--cached", "--name-only", "-z"], strip=False)
        return [p for p in output.split("\0") if p]

    def commit(self, message: str) -> bool:
        """Commits the staged changes.

        Args:
            message (str): The commit message.

        Returns:
            bool: False (and no commit) if nothing is staged, True otherwise.
        """
        if not self.staged_files():
            return False
        self._run(["commit", "-m", message], author=True)
        return True

    # --- Remote exchange ---

    def _find_autostash(self) -> str:
        """Locates the stash entry created by `_autostash`.

        Falls back to the newest entry when no entry carries the marker, which
        can pick the wrong stash if someone stashes manually at the same time.
        """
        listing = self._run(["stash", "list", "--format=%gd:%gs"])
        for line in listing.splitlines():
            ref, _, subject = line.partition(":")
            subject = subject.strip()
            if subject == AUTOSTASH_MESSAGE or subject.endswith(f": {AUTOSTASH_MESSAGE}"):
                return ref.strip()
        logger.warning("Autostash entry not found by label, assuming stash@{0}")
        return "stash@{0}"

    def _autostash(self) -> str | None:
        """Stashes local changes (untracked included) if the tree is dirty.

        Returns:
            str | None: The stash reference, or None if the tree was clean.
        """
        if self.is_clean():
            return None

        self._run(
            ["stash", "push", "--include-untracked", "--message", AUTOSTASH_MESSAGE]
        )
        return self._find_autostash()

    def _restore_stash(self, stash_ref: str) -> None:
        attempt = self._attempt(["stash", "pop", stash_ref])
        if not attempt.ok:
            logger.warning(
                f"Could not restore {stash_ref} after pull --rebase; "
                f"recover it manually with 'git stash list': {attempt.error}"
            )

    def pull_rebase(self) -> None:
        """Pulls the remote branch with --rebase, protecting local edits.

        Dirty working trees are stashed first and restored afterwards. A failed
        rebase is aborted so the repository is never left mid-rebase, the stash
        is restored, and the original error is re-raised. A failed stash pop is
        only a warning.

        Raises:
            VcsCommandError: If stashing or the pull itself fails.
        """
        stash_ref = self._autostash()
        try:
            self._run(["pull", "--rebase", self.remote, self.branch])
        except VcsError:
            logger.warning("git pull --rebase failed, aborting rebase")
            abort = self._attempt(["rebase", "--abort"])
            if not abort.ok:
                logger.debug(f"rebase --abort: {abort.error}")
            if stash_ref:
                self._restore_stash(stash_ref)
            raise

        if stash_ref:
            self._restore_stash(stash_ref)

    def push(self) -> None:
        """Pushes the target branch to the remote. Never retried here."""
        self._run(["push", self.remote, self.branch])
