"""Errors raised by the sync engine."""

from typing import List, Optional, Tuple


class SyncError(Exception):
    """Base class for sync engine errors."""

    pass


class FetchError(SyncError):
    """Raised when the candidate tree is unavailable or corrupt."""

    pass


class ValidationFailure(SyncError):
    """Raised when the candidate tree does not pass validation."""

    def __init__(self, message: str, failures: Optional[List[Tuple[str, str]]] = None):
        super().__init__(message)
        self.failures = failures or []


class BackupError(SyncError):
    """Raised when a backup snapshot could not be completed."""

    pass


class ApplyError(SyncError):
    """Raised when copying or deleting a file in the live tree fails."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class SyncInProgressError(SyncError):
    """Raised when a cycle is started while another one is still in flight."""

    pass
