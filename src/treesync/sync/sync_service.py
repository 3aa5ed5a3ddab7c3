"""Service that runs a sync cycle from candidate tree to live tree."""

import asyncio
import os
import threading
import uuid
from pathlib import Path
from typing import Optional, Set

from loguru import logger

from treesync.config import SyncConfig
from treesync.ignore_utils import load_ignore_patterns
from treesync.sync.apply import ApplyExecutor, CancelToken
from treesync.sync.backup import BackupManager, RollbackCoordinator
from treesync.sync.exceptions import (
    ApplyError,
    BackupError,
    FetchError,
    SyncInProgressError,
    ValidationFailure,
)
from treesync.sync.fetch import Fetcher
from treesync.sync.file_change_scanner import FileChangeScanner
from treesync.sync.status import (
    ERROR_PERCENT,
    PHASE_RANGES,
    ProgressReporter,
    StatusRecord,
    SyncOutcome,
    SyncPhase,
    is_process_alive,
    scale_percent,
)
from treesync.sync.utils import Changeset
from treesync.sync.validation import CheckFunction, ValidationGate
from treesync.utils.file_utils import FileError, remove_tree

# live roots, backup roots and status files used by a cycle in flight in this process
_active_paths: Set[Path] = set()
_active_lock = threading.Lock()

COPY_RANGE = (30, 90)
DELETE_RANGE = (90, 100)


class SyncOrchestrator:
    """
    Runs one sync cycle at a time against a live tree.

    Fetching, validation and comparison run in the caller's task. Backup and
    apply run on a worker thread with its own event loop, so the cycle
    finishes even if the caller's loop exits first. The caller follows the
    apply through the status record or by awaiting ``wait()``.
    """

    def __init__(
        self,
        config: SyncConfig,
        check: CheckFunction,
        fetcher: Optional[Fetcher] = None,
        reporter: Optional[ProgressReporter] = None,
    ):
        self.config = config
        self.check = check
        self.fetcher = fetcher
        self.reporter = reporter or ProgressReporter(config.status_path)
        self.backup_manager = BackupManager(config.backup_root)
        self.cancel_token = CancelToken()
        self.cycle_id: Optional[str] = None
        self._worker: Optional[threading.Thread] = None
        self._outcome: Optional[SyncOutcome] = None

    @property
    def claimed_paths(self) -> Set[Path]:
        """Locations a cycle owns exclusively while it runs."""
        return {
            self.config.live_root.resolve(),
            self.config.backup_root.resolve(),
            self.config.status_path.resolve(),
        }

    @property
    def in_flight(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def _report(self, phase: SyncPhase, percent: int, message: str = "") -> StatusRecord:
        previous = self.reporter.current
        if percent == ERROR_PERCENT:
            logger.error(f"[{self.cycle_id}] {phase.value}: {message}")
        elif previous is None or previous.phase != phase or message:
            # progress updates within a phase are logged by the reporter at debug level
            logger.info(f"[{self.cycle_id}] {phase.value} ({percent}%) {message}".rstrip())
        return self.reporter.report(phase, percent, message, cycle_id=self.cycle_id)

    def _claim(self) -> None:
        """Enforce a single cycle per live tree, backup root and status file."""
        previous = self.reporter.read()
        if previous is not None and not previous.is_terminal:
            if previous.pid != os.getpid() and is_process_alive(previous.pid):
                raise SyncInProgressError(
                    f"Cycle {previous.cycle_id} is still {previous.phase.value} "
                    f"(pid {previous.pid})"
                )
            if previous.pid != os.getpid():
                logger.warning(
                    f"Ignoring stale status {previous.phase.value} left by dead process {previous.pid}"
                )

        paths = self.claimed_paths
        with _active_lock:
            busy = paths & _active_paths
            if busy:
                raise SyncInProgressError(
                    f"A sync cycle is already using {', '.join(str(p) for p in sorted(busy))}"
                )
            _active_paths.update(paths)

    def _release(self) -> None:
        with _active_lock:
            _active_paths.difference_update(self.claimed_paths)

    def _finish(
        self,
        phase: SyncPhase,
        message: str = "",
        changeset: Optional[Changeset] = None,
        failed_path: Optional[str] = None,
    ) -> SyncOutcome:
        percent = ERROR_PERCENT if phase.is_error else 100
        self._report(phase, percent, message)
        self._outcome = SyncOutcome(
            phase=phase, message=message, changeset=changeset, failed_path=failed_path
        )
        self._discard_candidate()
        self._release()
        return self._outcome

    def _discard_candidate(self) -> None:
        """Remove the candidate tree if this orchestrator fetched it."""
        if self.fetcher is None:
            return
        try:
            remove_tree(self.config.candidate_root)
            logger.debug(f"Discarded candidate tree {self.config.candidate_root}")
        except FileError as e:
            logger.warning(f"Could not discard candidate tree: {e}")

    async def start(self) -> StatusRecord:
        """
        Run the decision phases and hand the apply to a worker thread.

        Returns:
            The status record current when control returns to the caller.
            It is terminal if the cycle ended before the apply started.

        Raises:
            SyncInProgressError: If a cycle is already in flight
        """
        self._claim()
        self.cycle_id = uuid.uuid4().hex[:12]
        self.cancel_token = CancelToken()
        self._worker = None
        self._outcome = None

        try:
            changeset = await self._prepare()
        except Exception as e:
            logger.exception("Unexpected error before apply")
            self._finish(SyncPhase.FAILED, f"{type(e).__name__}: {e}")
            raise
        except BaseException:
            self._release()
            raise

        if changeset is None:
            return self.reporter.current

        record = self._report(SyncPhase.APPLY_STARTED, PHASE_RANGES[SyncPhase.APPLY_STARTED][0])
        # not a daemon: the interpreter waits for the cycle to reach a terminal state
        self._worker = threading.Thread(
            target=self._apply_in_background, args=(changeset,), name=f"treesync-{self.cycle_id}"
        )
        self._worker.start()
        return record

    async def _prepare(self) -> Optional[Changeset]:
        """Fetch, validate and compare. Returns None when the cycle already ended."""
        self._report(SyncPhase.INIT, 0)

        self._report(SyncPhase.FETCHING, PHASE_RANGES[SyncPhase.FETCHING][0])
        try:
            if self.fetcher is not None:
                self.fetcher.fetch(self.config.candidate_root)
            if not self.config.candidate_root.is_dir():
                raise FetchError(f"Candidate tree {self.config.candidate_root} is not available")
        except FetchError as e:
            self._finish(SyncPhase.FAILED, f"fetch failed: {e}")
            return None

        ignore_patterns = load_ignore_patterns(self.config.candidate_root, self.config.ignore_patterns)

        self._report(SyncPhase.VALIDATING, PHASE_RANGES[SyncPhase.VALIDATING][0])
        gate = ValidationGate(self.check, self.config.include_patterns, ignore_patterns)
        result = await gate.validate(self.config.candidate_root)
        try:
            result.raise_for_failure()
        except ValidationFailure as e:
            self._finish(SyncPhase.CANCELLED, f"validation failed: {e}")
            self._outcome.failures = e.failures
            return None

        self._report(SyncPhase.COMPARING, PHASE_RANGES[SyncPhase.COMPARING][0])
        scanner = FileChangeScanner(ignore_patterns)
        try:
            changeset = await scanner.find_changes(self.config.candidate_root, self.config.live_root)
        except FileError as e:
            self._finish(SyncPhase.FAILED, f"compare failed: {e}")
            return None

        if changeset.is_empty:
            self._finish(SyncPhase.NO_CHANGES, "live tree is up to date", changeset)
            return None

        self._report(
            SyncPhase.COMPARING,
            PHASE_RANGES[SyncPhase.COMPARING][1],
            f"{len(changeset.new)} new, {len(changeset.modified)} modified, "
            f"{len(changeset.deleted)} deleted",
        )
        return changeset

    def _apply_in_background(self, changeset: Changeset) -> None:
        """Worker thread body."""
        try:
            asyncio.run(self._run_apply(changeset))
        except Exception as e:
            # _run_apply turns every error into a terminal record; this only
            # fires if recording the terminal state itself failed
            logger.exception("Background apply crashed")
            if self._outcome is None:
                self._finish(SyncPhase.FAILED, f"{type(e).__name__}: {e}", changeset)

    async def _run_apply(self, changeset: Changeset) -> SyncOutcome:
        """Back up, apply, and roll back on failure."""
        executor = ApplyExecutor(
            self.config.candidate_root,
            self.config.live_root,
            self.backup_manager,
            self.cancel_token,
        )

        backup_start, backup_end = PHASE_RANGES[SyncPhase.BACKING_UP]
        self._report(SyncPhase.BACKING_UP, backup_start)
        try:
            await executor.backup(
                changeset,
                lambda done, total: self._report(
                    SyncPhase.BACKING_UP, scale_percent(backup_start, backup_end, done, total)
                ),
            )
        except BackupError as e:
            return self._finish(SyncPhase.FAILED, f"backup failed, live tree untouched: {e}", changeset)
        except Exception as e:
            logger.exception("Unexpected error during backup")
            return self._finish(SyncPhase.FAILED, f"backup failed, live tree untouched: {e}", changeset)

        self._report(SyncPhase.APPLYING, COPY_RANGE[0])
        try:
            await executor.apply(changeset, self._apply_progress)
        except ApplyError as e:
            return await self._roll_back(str(e), changeset, e.path)
        except Exception as e:
            logger.exception("Unexpected error during apply")
            return await self._roll_back(f"{type(e).__name__}: {e}", changeset)

        return self._finish(SyncPhase.COMPLETED, f"applied {changeset.total_changes} changes", changeset)

    def _apply_progress(self, stage: str, done: int, total: int) -> None:
        start, end = COPY_RANGE if stage == "copy" else DELETE_RANGE
        self._report(SyncPhase.APPLYING, scale_percent(start, end, done, total))

    async def _roll_back(
        self, reason: str, changeset: Changeset, failed_path: Optional[str] = None
    ) -> SyncOutcome:
        self._report(SyncPhase.FAILED, ERROR_PERCENT, f"apply failed: {reason}")
        self._report(SyncPhase.ROLLING_BACK, ERROR_PERCENT, "restoring backup")
        try:
            report = await RollbackCoordinator(self.backup_manager).rollback(self.config.live_root)
        except Exception as e:
            logger.exception("Rollback aborted")
            return self._finish(
                SyncPhase.RESTORE_INCOMPLETE,
                f"apply failed ({reason}) and rollback aborted: {e}",
                changeset,
                failed_path,
            )

        if not report.complete:
            return self._finish(
                SyncPhase.RESTORE_INCOMPLETE,
                f"apply failed ({reason}); could not restore {sorted(report.failed)}",
                changeset,
                failed_path,
            )
        return self._finish(
            SyncPhase.RESTORED_AFTER_FAILURE,
            f"apply failed ({reason}); restored {len(report.restored)} files",
            changeset,
            failed_path,
        )

    async def wait(self) -> SyncOutcome:
        """Wait for the background apply, if any, and return the cycle's outcome."""
        if self._worker is not None:
            await asyncio.to_thread(self._worker.join)
        if self._outcome is None:
            raise RuntimeError("No sync cycle has been started")
        return self._outcome

    def cancel(self) -> None:
        """Ask the background apply to stop after the current file and roll back."""
        logger.warning(f"[{self.cycle_id}] Cancellation requested")
        self.cancel_token.cancel()

    async def run(self) -> SyncOutcome:
        """Run a whole cycle and wait for it to reach a terminal state."""
        await self.start()
        return await self.wait()

    async def preview(self) -> Changeset:
        """Compute the changeset without validating or applying anything."""
        ignore_patterns = load_ignore_patterns(self.config.candidate_root, self.config.ignore_patterns)
        scanner = FileChangeScanner(ignore_patterns)
        return await scanner.find_changes(self.config.candidate_root, self.config.live_root)
