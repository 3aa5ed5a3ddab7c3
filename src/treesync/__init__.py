"""treesync - differential directory synchronization with backup and rollback."""

__version__ = "0.3.0"
