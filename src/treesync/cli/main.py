"""Main CLI entry point for treesync."""  # pragma: no cover

from treesync.cli.app import app  # pragma: no cover

# Register commands
from treesync.cli.commands import status, sync  # pragma: no cover

__all__ = ["status", "sync"]  # pragma: no cover


if __name__ == "__main__":  # pragma: no cover
    app()
