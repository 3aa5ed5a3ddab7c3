"""Persisted status of the current sync cycle."""

import os
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from treesync.sync.utils import Changeset
from treesync.utils.file_utils import FileWriteError, ensure_directory, write_file_atomic

ERROR_PERCENT = -1


class SyncPhase(str, Enum):
    INIT = "init"
    FETCHING = "fetching"
    VALIDATING = "validating"
    COMPARING = "comparing"
    NO_CHANGES = "no_changes"
    CANCELLED = "cancelled"
    APPLY_STARTED = "apply_started"
    BACKING_UP = "backing_up"
    APPLYING = "applying"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLING_BACK = "rolling_back"
    RESTORED_AFTER_FAILURE = "restored_after_failure"
    RESTORE_INCOMPLETE = "restore_incomplete"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PHASES

    @property
    def is_error(self) -> bool:
        return self in (
            SyncPhase.FAILED,
            SyncPhase.RESTORED_AFTER_FAILURE,
            SyncPhase.RESTORE_INCOMPLETE,
        )


TERMINAL_PHASES = frozenset(
    {
        SyncPhase.NO_CHANGES,
        SyncPhase.CANCELLED,
        SyncPhase.COMPLETED,
        SyncPhase.FAILED,
        SyncPhase.RESTORED_AFTER_FAILURE,
        SyncPhase.RESTORE_INCOMPLETE,
    }
)

# phase -> (start percent, end percent)
PHASE_RANGES = {
    SyncPhase.INIT: (0, 0),
    SyncPhase.FETCHING: (0, 5),
    SyncPhase.VALIDATING: (5, 10),
    SyncPhase.COMPARING: (10, 20),
    SyncPhase.APPLY_STARTED: (20, 20),
    SyncPhase.BACKING_UP: (20, 30),
    SyncPhase.APPLYING: (30, 100),
}


def scale_percent(start: int, end: int, done: int, total: int) -> int:
    """Map ``done`` out of ``total`` onto the ``start``..``end`` range."""
    if total <= 0:
        return end
    done = min(max(done, 0), total)
    return start + (end - start) * done // total


class StatusRecord(BaseModel):
    phase: SyncPhase
    percent: int = Field(ge=ERROR_PERCENT, le=100)
    timestamp: datetime = Field(default_factory=datetime.now)
    message: str = ""
    cycle_id: Optional[str] = None
    pid: int = Field(default_factory=os.getpid)

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal


@dataclass
class SyncOutcome:
    """Terminal result of a sync cycle."""

    phase: SyncPhase
    message: str = ""
    changeset: Optional[Changeset] = None
    # relative path the apply failed on, if the failure was tied to one
    failed_path: Optional[str] = None
    # (path, reason) for each file that failed validation
    failures: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.phase.is_error


def is_process_alive(pid: int) -> bool:
    """Best-effort check whether a process id is still running."""
    if pid == os.getpid():
        return True
    if os.name == "nt":
        # os.kill would terminate the process on Windows; assume it is alive
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class ProgressReporter:
    """
    Holds the single current StatusRecord and persists it on every change.

    One writer (the orchestrator and its worker thread) updates the record;
    any number of readers may poll ``current`` or the status file.
    """

    def __init__(self, status_path: Optional[Path] = None):
        self.status_path = status_path
        self._lock = threading.Lock()
        self._current: Optional[StatusRecord] = None
        if status_path is not None:
            ensure_directory(status_path.parent)

    @property
    def current(self) -> Optional[StatusRecord]:
        with self._lock:
            return self._current

    def report(
        self,
        phase: SyncPhase,
        percent: int,
        message: str = "",
        cycle_id: Optional[str] = None,
    ) -> StatusRecord:
        """Replace the current record and persist it."""
        if percent != ERROR_PERCENT:
            percent = min(max(percent, 0), 100)
        record = StatusRecord(phase=phase, percent=percent, message=message, cycle_id=cycle_id)
        with self._lock:
            self._current = record
            self.write(record)
        logger.debug(f"Status: {phase.value} {percent}% {message}")
        return record

    def write(self, record: StatusRecord) -> None:
        """Write the record to the status file, if one is configured."""
        if self.status_path is None:
            return
        try:
            write_file_atomic(self.status_path, record.model_dump_json(indent=2))
        except FileWriteError as e:
            # The status file is informational; the cycle itself goes on
            logger.error(f"Could not persist status record: {e}")

    def read(self) -> Optional[StatusRecord]:
        """Load the persisted record, falling back to the in-memory one."""
        if self.status_path is None or not self.status_path.exists():
            return self.current
        return read_status(self.status_path)


def read_status(status_path: Path) -> Optional[StatusRecord]:
    """Read a status file written by ProgressReporter."""
    try:
        return StatusRecord.model_validate_json(status_path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValidationError) as e:
        logger.warning(f"Unreadable status file {status_path}: {e}")
        return None
