"""Utilities for handling ignore patterns and file filtering."""

import fnmatch
from pathlib import Path
from typing import Iterable, Optional, Set, Tuple

from loguru import logger

# Common directories and patterns that never take part in a sync
DEFAULT_IGNORE_PATTERNS = {
    ".git",
    ".hg",
    ".svn",
    "__pycache__",
    ".pytest_cache",
    ".mypy_cache",
    ".ruff_cache",
    "*.pyc",
    "*.pyo",
    ".DS_Store",
    "Thumbs.db",
    "desktop.ini",
    "*.treesync-tmp",
}

IGNORE_FILE_NAME = ".syncignore"


def load_ignore_patterns(base_path: Path, extra: Optional[Iterable[str]] = None) -> Set[str]:
    """Load ignore patterns from a .syncignore file and add default patterns.

    Args:
        base_path: The directory to search for a .syncignore file
        extra: Additional patterns, usually from configuration

    Returns:
        Set of patterns to ignore
    """
    patterns = set(DEFAULT_IGNORE_PATTERNS)
    if extra:
        patterns.update(extra)

    ignore_file = base_path / IGNORE_FILE_NAME
    if ignore_file.exists():
        try:
            with ignore_file.open("r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    # Skip empty lines and comments
                    if line and not line.startswith("#"):
                        patterns.add(line)
        except OSError as e:
            # If we can't read the file, just use default patterns
            logger.warning(f"Could not read {ignore_file}: {e}")

    return patterns


def _matches(parts: Tuple[str, ...], pattern: str) -> bool:
    """Match one gitignore-style pattern against the parts of a relative path."""
    posix = "/".join(parts)
    if pattern.startswith("/"):
        anchored = pattern[1:]
        if anchored.endswith("/"):
            return len(parts) > 1 and parts[0] == anchored[:-1]
        return fnmatch.fnmatch(posix, anchored)
    if pattern.endswith("/"):
        # directory patterns never match the file itself
        return pattern[:-1] in parts[:-1]
    if pattern in parts:
        return True
    return fnmatch.fnmatch(posix, pattern) or fnmatch.fnmatch(parts[-1], pattern)


def should_ignore_path(file_path: Path, base_path: Path, ignore_patterns: Set[str]) -> bool:
    """Check if a file path should be ignored based on ignore patterns.

    Supported forms are plain names (``.git``), globs (``*.pyc``), directory
    patterns (``cache/``) and patterns anchored at the base (``/build/``).
    Paths outside ``base_path`` are never ignored.
    """
    try:
        parts = file_path.relative_to(base_path).parts
    except ValueError:
        return False
    if not parts:
        return False
    return any(_matches(parts, pattern) for pattern in ignore_patterns)


def matches_any(relative_path: str, patterns: Iterable[str]) -> bool:
    """Return True if a forward-slash relative path matches one of the glob patterns."""
    name = relative_path.rsplit("/", 1)[-1]
    return any(
        fnmatch.fnmatch(relative_path, pattern) or fnmatch.fnmatch(name, pattern)
        for pattern in patterns
    )
