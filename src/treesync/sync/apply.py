"""Applies a changeset to the live tree."""

import asyncio
import threading
from pathlib import Path
from typing import Callable, Dict, Optional

from loguru import logger

from treesync.sync.backup import BackupManager, ProgressCallback
from treesync.sync.exceptions import ApplyError
from treesync.sync.utils import Changeset
from treesync.utils.file_utils import (
    FileError,
    copy_file,
    delete_file,
    ensure_directory,
    prune_empty_directories,
)

# on_progress(stage, done, total) where stage is "copy" or "delete"
ApplyProgressCallback = Callable[[str, int, int], None]


class CancelToken:
    """Cooperative cancellation signal, safe to set from any thread."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class ApplyExecutor:
    """
    Performs a changeset against the live tree.

    Work is done in a fixed order across the whole changeset: paths switching
    between file and directory are cleared, missing directories are created,
    new and modified files are copied in, the remaining deleted files are
    removed, and directories emptied by the deletions are pruned.
    Cancellation is only honoured between two files.
    """

    def __init__(
        self,
        candidate_root: Path,
        live_root: Path,
        backup_manager: BackupManager,
        cancel_token: Optional[CancelToken] = None,
    ):
        self.candidate_root = candidate_root
        self.live_root = live_root
        self.backup_manager = backup_manager
        self.cancel_token = cancel_token or CancelToken()

    async def backup(
        self, changeset: Changeset, on_progress: Optional[ProgressCallback] = None
    ) -> Dict[str, Path]:
        """Snapshot every live file the changeset modifies or deletes."""
        return await self.backup_manager.snapshot(self.live_root, changeset.to_backup, on_progress)

    def _check_cancelled(self) -> None:
        if self.cancel_token.cancelled:
            logger.warning("Apply cancelled")
            raise ApplyError("apply cancelled")

    async def apply(
        self, changeset: Changeset, on_progress: Optional[ApplyProgressCallback] = None
    ) -> None:
        """
        Apply the changeset.

        Deletions listed in ``changeset.type_changes`` run first, since a path
        cannot become a directory while a file sits there (or the reverse).
        Copies and deletes run on a worker thread, one file at a time.

        Raises:
            ApplyError: If a directory, copy or delete operation fails, or
                cancellation was requested
        """
        to_copy = changeset.to_copy
        type_changes = changeset.type_changes
        to_delete = [p for p in sorted(changeset.deleted) if p not in type_changes]
        logger.info(
            f"Applying {len(to_copy)} copies and {len(changeset.deleted)} deletions to {self.live_root}"
        )
        self._check_cancelled()

        if type_changes:
            for rel_path in type_changes:
                await self._delete(rel_path)
            prune_empty_directories(
                self.live_root, ((self.live_root / Path(p)).parent for p in type_changes)
            )
            logger.info(f"Cleared {len(type_changes)} paths changing between file and directory")

        directories = sorted({(self.live_root / Path(p)).parent for p in to_copy})
        for directory in [self.live_root, *directories]:
            try:
                ensure_directory(directory)
            except FileError as e:
                raise ApplyError(f"Failed to create {directory}: {e}") from e

        for done, rel_path in enumerate(to_copy, start=1):
            self._check_cancelled()
            try:
                await asyncio.to_thread(
                    copy_file, self.candidate_root / Path(rel_path), self.live_root / Path(rel_path)
                )
            except FileError as e:
                raise ApplyError(f"Failed to copy {rel_path}: {e}", path=rel_path) from e
            logger.debug(f"Copied {rel_path}")
            if on_progress:
                on_progress("copy", done, len(to_copy))

        for done, rel_path in enumerate(to_delete, start=1):
            self._check_cancelled()
            await self._delete(rel_path)
            if on_progress:
                on_progress("delete", done, len(to_delete))

        pruned = prune_empty_directories(
            self.live_root, ((self.live_root / Path(p)).parent for p in to_delete)
        )
        if pruned:
            logger.info(f"Pruned {len(pruned)} empty directories")

    async def _delete(self, rel_path: str) -> None:
        try:
            await asyncio.to_thread(delete_file, self.live_root / Path(rel_path))
        except FileError as e:
            raise ApplyError(f"Failed to delete {rel_path}: {e}", path=rel_path) from e
        logger.debug(f"Deleted {rel_path}")
