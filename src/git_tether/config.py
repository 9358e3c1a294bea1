import logging
import os
import re
import tomllib
from dataclasses import MISSING, dataclass, field, replace
from pathlib import Path
from typing import Any

from .constants import (
    APP_NAME,
    CONFIG_ENV_VAR,
    CONFIG_FILE,
    MIN_DEBOUNCE,
    MIN_POLL_INTERVAL,
    MIN_UPDATE_INTERVAL,
)
from .errors import ConfigError

logger = logging.getLogger(APP_NAME)


def parse_size(value: int | str) -> int:
    """Converts human-readable size strings (e.g., '100MB') to bytes."""
    if isinstance(value, int):
        return value
    match = re.match(r"^(\d+(?:\.\d+)?)\s*([kmg]b?)$", str(value).strip().lower())
    if not match:
        raise ValueError(f"Invalid size format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {
        "k": 1024,
        "kb": 1024,
        "m": 1024**2,
        "mb": 1024**2,
        "g": 1024**3,
        "gb": 1024**3,
    }
    return int(num * multiplier[unit])


def parse_time(value: int | str) -> int:
    """Converts human-readable time strings (e.g., '1hr', '30m') to seconds."""
    if isinstance(value, int):
        return value
    match = re.match(
        r"^(\d+(?:\.\d+)?)\s*(s|sec|m|min|h|hr)s?$", str(value).strip().lower()
    )
    if not match:
        raise ValueError(f"Invalid time format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {"s": 1, "sec": 1, "m": 60, "min": 60, "h": 3600, "hr": 3600}
    return int(num * multiplier[unit])


def check_type(instance: Any, key: str, value: Any) -> None:
    """Checks a raw config value against the type of the field's default.

    Optional fields (default None) expect a string. Booleans are not
    accepted where an integer is expected.

    Raises:
        TypeError: If the value has the wrong type.
    """
    spec = instance.__dataclass_fields__[key]
    if spec.default_factory is not MISSING:
        default = spec.default_factory()
    else:
        default = spec.default
    expected = str if default is None else type(default)

    if (isinstance(value, bool) and expected is not bool) or not isinstance(
        value, expected
    ):
        raise TypeError(f"expected {expected.__name__}, got {type(value).__name__}")
    if expected is list and not all(isinstance(item, str) for item in value):
        raise TypeError("expected a list of strings")


@dataclass
class RepoConfig:
    """Which repository is mirrored where.

    Attributes:
        url (str): The remote URL to clone from and push to.
        branch (str): The single branch kept in sync.
        remote (str): The name of the git remote.
        workdir (Path | None): The local working directory.
    """

    url: str = ""
    branch: str = "main"
    remote: str = "origin"
    workdir: Path | None = None

    def __post_init__(self) -> None:
        if self.workdir is not None:
            self.workdir = Path(self.workdir).expanduser()


@dataclass
class SyncConfig:
    """Sync loop timing.

    Both intervals are clamped on construction, so the engine never
    observes a zero interval.

    Attributes:
        debounce (int): Seconds of quiet required after a change before syncing.
        poll_interval (int): Seconds between remote pulls while idle.
    """

    debounce: int = 5
    poll_interval: int = 300

    def __post_init__(self) -> None:
        self.debounce = max(int(self.debounce), MIN_DEBOUNCE)
        self.poll_interval = max(int(self.poll_interval), MIN_POLL_INTERVAL)


@dataclass
class CommitConfig:
    """Commit message policy.

    Attributes:
        prefix (str): Leading token of every automatic commit message.
        max_files_in_summary (int): Largest file count listed by name.
        include_timestamp (bool): Whether to append a UTC timestamp.
    """

    prefix: str = "auto:"
    max_files_in_summary: int = 5
    include_timestamp: bool = False

    def __post_init__(self) -> None:
        if not str(self.prefix).strip():
            self.prefix = "auto:"
        if self.max_files_in_summary <= 0:
            self.max_files_in_summary = 5


@dataclass
class FilesConfig:
    """File filtering settings.

    Attributes:
        ignore (list[str]): Glob patterns added to the built-in exclusions.
    """

    ignore: list[str] = field(default_factory=list)


@dataclass
class GitConfig:
    """Overrides for the git subprocess.

    Attributes:
        executable (str | None): Path to the git binary (defaults to 'git').
        author_name (str | None): Author and committer name for sync commits.
        author_email (str | None): Author and committer email for sync commits.
        credentials_file (Path | None): File for the 'store' credential helper.
    """

    executable: str | None = None
    author_name: str | None = None
    author_email: str | None = None
    credentials_file: Path | None = None

    def __post_init__(self) -> None:
        if self.credentials_file is not None:
            self.credentials_file = Path(self.credentials_file).expanduser()


@dataclass
class SelfUpdateConfig:
    """Optional self-update worker settings.

    Attributes:
        enabled (bool): Whether the worker runs at all.
        command (str | None): Shell command that performs the update.
        interval (int): Seconds between update checks.
    """

    enabled: bool = False
    command: str | None = None
    interval: int = 24 * 3600

    def __post_init__(self) -> None:
        self.interval = max(int(self.interval), MIN_UPDATE_INTERVAL)


@dataclass
class LimitsConfig:
    """Resource limitation settings.

    Attributes:
        max_log_size (int): Max bytes for log files before rotation.
    """

    max_log_size: int = 5 * 1024 * 1024


_TIME_KEYS = {"debounce", "poll_interval", "interval"}
_SIZE_KEYS = {"max_log_size"}


@dataclass
class Config:
    """Global configuration aggregator.

    Attributes:
        repo (RepoConfig): Repository identity.
        sync (SyncConfig): Loop timing.
        commit (CommitConfig): Commit message policy.
        files (FilesConfig): Ignore patterns.
        git (GitConfig): Git subprocess overrides.
        self_update (SelfUpdateConfig): Self-update worker.
        limits (LimitsConfig): Resource limits.
    """

    repo: RepoConfig = field(default_factory=RepoConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    commit: CommitConfig = field(default_factory=CommitConfig)
    files: FilesConfig = field(default_factory=FilesConfig)
    git: GitConfig = field(default_factory=GitConfig)
    self_update: SelfUpdateConfig = field(default_factory=SelfUpdateConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)

    @staticmethod
    def resolve_path(explicit: Path | None = None) -> Path:
        """Picks the config file: explicit path, then env var, then the default."""
        if explicit is not None:
            return Path(explicit).expanduser()
        if env_path := os.environ.get(CONFIG_ENV_VAR):
            return Path(env_path).expanduser()
        return CONFIG_FILE

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Loads the configuration file and validates it.

        Args:
            path (Path | None): An explicit config path. See `resolve_path`.

        Returns:
            Config: The populated, validated configuration.

        Raises:
            ConfigError: If the file is missing, unreadable, malformed, or lacks
                the repository URL or working directory.
        """
        config_path = cls.resolve_path(path)
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")

        instance = cls()
        instance._merge_from_file(config_path)
        instance.validate()
        return instance

    def validate(self) -> None:
        """Checks the settings the daemon cannot run without.

        Raises:
            ConfigError: If `repo.url` or `repo.workdir` is missing.
        """
        if not self.repo.url.strip():
            raise ConfigError("Missing required setting [repo].url")
        if self.repo.workdir is None:
            raise ConfigError("Missing required setting [repo].workdir")

    def _merge_from_file(self, path: Path) -> None:
        """Parses a TOML file and merges it into the current instance.

        Args:
            path (Path): Path to the TOML file.

        Raises:
            ConfigError: If the file cannot be read or parsed.
        """
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Config syntax error in {path}: {e}") from e
        except OSError as e:
            raise ConfigError(f"Could not read config {path}: {e}") from e

        unknown = set(data) - set(self.__dataclass_fields__)
        if unknown:
            logger.warning(
                f"Unknown config sections in {path.name}: {', '.join(sorted(unknown))}. Ignoring."
            )

        for section in self.__dataclass_fields__:
            updates = data.get(section)
            if not isinstance(updates, dict):
                continue
            if section == "files":
                # Extract ignore list so it extends rather than replaces.
                new_ignores = updates.pop("ignore", [])
                self.files = self._update_dataclass("files", self.files, updates)
                try:
                    check_type(self.files, "ignore", new_ignores)
                except TypeError as e:
                    logger.warning(
                        f"Config error in [files].ignore: {e}. Falling back to default."
                    )
                    continue
                if new_ignores:
                    self.files.ignore.extend(new_ignores)
                    self.files.ignore = list(dict.fromkeys(self.files.ignore))
                continue
            setattr(
                self,
                section,
                self._update_dataclass(section, getattr(self, section), updates),
            )

    @staticmethod
    def _update_dataclass(section_name: str, instance: Any, updates: dict) -> Any:
        """Updates a dataclass, warning on invalid keys and parsing human-readable formats."""
        valid_keys = instance.__dataclass_fields__.keys()

        # 1. Catch and warn about typos / unknown keys
        invalid_keys = set(updates.keys()) - set(valid_keys)
        if invalid_keys:
            logger.warning(
                f"Unknown config keys in [{section_name}]: {', '.join(sorted(invalid_keys))}. Ignoring."
            )

        # 2. Process valid keys one at a time
        for k, v in updates.items():
            if k not in valid_keys:
                continue

            try:
                if k in _SIZE_KEYS:
                    v = parse_size(v)
                elif k in _TIME_KEYS:
                    v = parse_time(v)
                check_type(instance, k, v)
                instance = replace(instance, **{k: v})
            except (TypeError, ValueError) as e:
                logger.warning(
                    f"Config error in [{section_name}].{k}: {e}. Falling back to default."
                )

        return instance
