"""Collaborators that materialize a candidate tree."""

import shutil
from pathlib import Path
from typing import Protocol

from loguru import logger

from treesync.ignore_utils import DEFAULT_IGNORE_PATTERNS
from treesync.sync.exceptions import FetchError
from treesync.utils.file_utils import FileError, remove_tree


class Fetcher(Protocol):
    """Materializes a complete candidate tree at ``candidate_root``.

    Implementations raise FetchError when the tree cannot be produced.
    """

    def fetch(self, candidate_root: Path) -> None: ...


class DirectoryFetcher:
    """Produces the candidate tree by copying a local source directory."""

    def __init__(self, source: Path):
        self.source = source

    def fetch(self, candidate_root: Path) -> None:
        if not self.source.is_dir():
            raise FetchError(f"Source directory does not exist: {self.source}")

        logger.info(f"Copying {self.source} to {candidate_root}")
        try:
            remove_tree(candidate_root)
            shutil.copytree(
                self.source,
                candidate_root,
                ignore=shutil.ignore_patterns(*DEFAULT_IGNORE_PATTERNS),
            )
        except (OSError, FileError) as e:
            raise FetchError(f"Failed to copy {self.source}: {e}") from e
