from .file_change_scanner import FileChangeScanner
from .sync_service import SyncOrchestrator
from .utils import Changeset

__all__ = ["SyncOrchestrator", "FileChangeScanner", "Changeset"]
