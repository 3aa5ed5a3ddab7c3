"""Backup snapshots of live files and restoration after a failed apply."""

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from loguru import logger

from treesync.sync.exceptions import BackupError
from treesync.utils.file_utils import FileError, copy_file, ensure_directory, remove_tree

# on_progress(done, total)
ProgressCallback = Callable[[int, int], None]


@dataclass
class RestoreReport:
    """What a restore managed to put back."""

    restored: List[str] = field(default_factory=list)
    # relative path -> error message
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return not self.failed


class BackupManager:
    """
    Snapshots live files into an isolated backup root.

    The backup root holds exactly one snapshot, scoped to the current
    changeset; any earlier content is discarded when a new snapshot starts.
    """

    def __init__(self, backup_root: Path):
        self.backup_root = backup_root
        # relative path -> backup copy
        self.snapshot_files: Dict[str, Path] = {}

    def backup_path(self, rel_path: str) -> Path:
        return self.backup_root / Path(rel_path)

    def discard(self) -> None:
        """Drop the previous snapshot."""
        try:
            remove_tree(self.backup_root)
        except FileError as e:
            raise BackupError(f"Could not discard previous backup at {self.backup_root}: {e}") from e
        self.snapshot_files = {}

    async def snapshot(
        self,
        live_root: Path,
        paths: Sequence[str],
        on_progress: Optional[ProgressCallback] = None,
    ) -> Dict[str, Path]:
        """
        Copy every listed live file into the backup root.

        Paths that do not exist under ``live_root`` are skipped.

        Args:
            live_root: Tree the paths are relative to
            paths: Relative paths about to be modified or deleted
            on_progress: Called with (done, total) after each file

        Returns:
            Mapping of relative path to backup copy

        Raises:
            BackupError: If any copy fails
        """
        self.discard()
        try:
            ensure_directory(self.backup_root)
        except FileError as e:
            raise BackupError(str(e)) from e

        total = len(paths)
        logger.info(f"Backing up {total} files from {live_root} to {self.backup_root}")
        for done, rel_path in enumerate(paths, start=1):
            source = live_root / Path(rel_path)
            if source.is_file():
                target = self.backup_path(rel_path)
                try:
                    await asyncio.to_thread(copy_file, source, target)
                except FileError as e:
                    raise BackupError(f"Failed to back up {rel_path}: {e}") from e
                self.snapshot_files[rel_path] = target
                logger.debug(f"Backed up {rel_path}")
            else:
                logger.debug(f"Nothing to back up for {rel_path}")

            if on_progress:
                on_progress(done, total)

        logger.info(f"Backup complete: {len(self.snapshot_files)} files")
        return dict(self.snapshot_files)

    async def restore(self, live_root: Path) -> RestoreReport:
        """
        Copy every file under the backup root back into the live tree.

        Restoration is best-effort: a file that cannot be restored is logged
        and recorded, and the remaining files are still restored.
        """
        report = RestoreReport()
        if not self.backup_root.exists():
            logger.warning(f"No backup found at {self.backup_root}, nothing to restore")
            return report

        for backup_file in sorted(self.backup_root.rglob("*")):
            if not backup_file.is_file():
                continue
            rel_path = backup_file.relative_to(self.backup_root).as_posix()
            try:
                await asyncio.to_thread(copy_file, backup_file, live_root / Path(rel_path))
                report.restored.append(rel_path)
                logger.debug(f"Restored {rel_path}")
            except FileError as e:
                logger.error(f"Could not restore {rel_path}: {e}")
                report.failed[rel_path] = str(e)

        return report


class RollbackCoordinator:
    """Returns the live tree to its pre-apply state from a backup snapshot.

    Files that were newly added by the failed apply are left in place.
    """

    def __init__(self, backup_manager: BackupManager):
        self.backup_manager = backup_manager

    async def rollback(self, live_root: Path) -> RestoreReport:
        logger.warning(f"Rolling back {live_root} from {self.backup_manager.backup_root}")
        report = await self.backup_manager.restore(live_root)
        if report.complete:
            logger.info(f"Rollback restored {len(report.restored)} files")
        else:
            logger.error(
                f"Rollback incomplete: {len(report.failed)} files could not be restored, "
                f"manual intervention required. Backup kept at {self.backup_manager.backup_root}"
            )
            for rel_path, error in report.failed.items():
                logger.error(f"  {rel_path}: {error}")
        return report
