import fnmatch
import logging
import os
import re
from pathlib import Path

from pathspec import GitIgnoreSpec

from .constants import APP_NAME, BUILTIN_IGNORES

logger = logging.getLogger(APP_NAME)

_BRACES = re.compile(r"\{([^{}]*,[^{}]*)\}")


def expand_braces(pattern: str) -> list[str]:
    """Expands '{a,b}' alternations into one pattern per alternative.

    Args:
        pattern (str): A glob that may contain brace groups.

    Returns:
        list[str]: The expanded patterns, in order. A pattern without a brace
        group comes back unchanged.
    """
    match = _BRACES.search(pattern)
    if not match:
        return [pattern]
    head, tail = pattern[: match.start()], pattern[match.end() :]
    expanded = []
    for alternative in match.group(1).split(","):
        expanded.extend(expand_braces(f"{head}{alternative}{tail}"))
    return expanded


class ChangeFilter:
    """Decides whether a filesystem event under the working directory matters.

    Built-in exclusions (git metadata, OS artifacts) are always active and use
    gitignore semantics, where '*' stops at a path separator and '**' is
    needed to cross directories. User patterns are additive: a path is
    ignored if it matches one as a gitignore pattern (so '**/x' also covers
    the root and 'x/' covers a directory's contents) or as an fnmatch glob
    whose wildcards may cross separators. Brace groups are expanded first.
    User patterns can never re-include a built-in.

    Attributes:
        root (Path): The working directory the paths are relative to.
        patterns (list[str]): The user-supplied patterns, blanks removed and
            braces expanded.
    """

    def __init__(self, root: Path, patterns: list[str] | None = None):
        self.root = Path(os.path.abspath(root))
        self.patterns = [
            expanded
            for p in patterns or []
            if p.strip()
            for expanded in expand_braces(p.strip())
            if expanded
        ]
        self._builtin = GitIgnoreSpec.from_lines(BUILTIN_IGNORES)
        self._user = GitIgnoreSpec.from_lines(self._compilable(self.patterns))

    @staticmethod
    def _compilable(patterns: list[str]) -> list[str]:
        valid = []
        for pattern in patterns:
            try:
                GitIgnoreSpec.from_lines([pattern])
            except ValueError as e:
                logger.warning(
                    f"Ignore pattern '{pattern}' is not valid gitignore syntax "
                    f"({e}); matching it as a plain glob only."
                )
                continue
            valid.append(pattern)
        return valid

    def relative(self, path: str | Path) -> str | None:
        """Returns the POSIX-style path relative to the root, or None if outside."""
        candidate = Path(os.path.abspath(path))
        try:
            rel = candidate.relative_to(self.root)
        except ValueError:
            return None
        return rel.as_posix()

    def should_ignore(self, path: str | Path) -> bool:
        """Checks a path against the built-in and user patterns.

        Args:
            path (str | Path): An absolute path, or one relative to the CWD.

        Returns:
            bool: True if the path must not trigger a sync. The root itself and
            paths outside the root are never ignored.
        """
        rel = self.relative(path)
        if rel is None or rel in ("", "."):
            return False

        if self._builtin.match_file(rel):
            return True
        if self._user.match_file(rel):
            return True
        return any(fnmatch.fnmatchcase(rel, pattern) for pattern in self.patterns)
