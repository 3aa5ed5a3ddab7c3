"""Service for detecting changes between a candidate tree and the live tree."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Optional, Set

from loguru import logger

from treesync.ignore_utils import DEFAULT_IGNORE_PATTERNS, should_ignore_path
from treesync.sync.utils import Changeset
from treesync.utils.file_utils import FileError, compute_checksum


@dataclass
class ScanResult:
    """Result of scanning a directory."""

    # relative posix path -> absolute path
    files: Dict[str, Path] = field(default_factory=dict)
    ignored: int = 0


class FileChangeScanner:
    """
    Service for detecting changes between two directory trees.
    The candidate tree is treated as the source of truth.
    """

    def __init__(self, ignore_patterns: Optional[Iterable[str]] = None):
        self.ignore_patterns: Set[str] = (
            set(ignore_patterns) if ignore_patterns is not None else set(DEFAULT_IGNORE_PATTERNS)
        )

    async def scan_directory(self, directory: Path) -> ScanResult:
        """
        Scan directory recursively for files.

        Args:
            directory: Directory to scan

        Returns:
            ScanResult keyed by forward-slash relative path
        """
        logger.debug(f"Scanning directory: {directory}")
        result = ScanResult()

        if not directory.exists():
            logger.debug(f"Directory does not exist: {directory}")
            return result

        for path in sorted(directory.rglob("*")):
            if not path.is_file():
                continue
            if should_ignore_path(path, directory, self.ignore_patterns):
                result.ignored += 1
                continue
            result.files[path.relative_to(directory).as_posix()] = path

        logger.debug(f"Found {len(result.files)} files ({result.ignored} ignored) in {directory}")
        return result

    async def find_changes(self, candidate_root: Path, live_root: Path) -> Changeset:
        """
        Find changes that would bring the live tree in line with the candidate.

        Args:
            candidate_root: Freshly fetched tree
            live_root: Currently active tree, may not exist yet

        Returns:
            Changeset detailing new, modified and deleted paths

        Raises:
            FileError: If the candidate root is missing
            FingerprintError: If a file cannot be read for comparison
        """
        if not candidate_root.is_dir():
            raise FileError(f"Candidate directory does not exist: {candidate_root}")

        candidate = await self.scan_directory(candidate_root)
        changeset = Changeset()

        if not live_root.exists():
            logger.info(f"Live tree {live_root} does not exist, every candidate file is new")
            changeset.new.update(candidate.files)
            return changeset

        live_index = dict((await self.scan_directory(live_root)).files)

        for rel_path, candidate_path in candidate.files.items():
            live_path = live_index.pop(rel_path, None)
            if live_path is None:
                changeset.new.add(rel_path)
                continue

            candidate_checksum = await compute_checksum(candidate_path)
            if candidate_checksum != await compute_checksum(live_path):
                logger.debug(f"{rel_path} ({candidate_checksum[:8]}) modified")
                changeset.modified.add(rel_path)

        # Whatever is left in the live index was never matched by the candidate
        changeset.deleted.update(live_index)

        logger.debug(f"Changes found: {changeset.total_changes}")
        logger.debug(f"  New: {len(changeset.new)}")
        logger.debug(f"  Modified: {len(changeset.modified)}")
        logger.debug(f"  Deleted: {len(changeset.deleted)}")

        type_changes = changeset.type_changes
        if type_changes:
            logger.info(f"Paths changing between file and directory: {type_changes}")

        return changeset
