"""CLI commands for treesync."""

from . import status, sync

__all__ = ["status", "sync"]
