"""Types and utilities for file sync."""

from dataclasses import dataclass, field
from typing import List, Set


def _ancestors(path: str) -> Set[str]:
    parts = path.split("/")
    return {"/".join(parts[:i]) for i in range(1, len(parts))}


@dataclass
class Changeset:
    """Changes found between a candidate tree and the live tree.

    Paths are relative, forward-slash separated and appear in at most one set.

    Attributes:
        new: Files that exist in the candidate but not in the live tree
        modified: Files that exist in both but have different checksums
        deleted: Files that exist in the live tree but not in the candidate
    """

    new: Set[str] = field(default_factory=set)
    modified: Set[str] = field(default_factory=set)
    deleted: Set[str] = field(default_factory=set)

    @property
    def total_changes(self) -> int:
        """Total number of files that need attention."""
        return len(self.new) + len(self.modified) + len(self.deleted)

    @property
    def is_empty(self) -> bool:
        return self.total_changes == 0

    @property
    def to_copy(self) -> List[str]:
        """New and modified paths, in the order they are applied."""
        return sorted(self.new) + sorted(self.modified)

    @property
    def to_backup(self) -> List[str]:
        """Paths whose live content must be snapshotted before applying."""
        return sorted(self.modified | self.deleted)

    @property
    def type_changes(self) -> List[str]:
        """Deleted paths that are in the way of an incoming path.

        A live file ``docs`` blocks the candidate's ``docs/x.txt``, and a live
        ``docs/x.txt`` keeps ``docs`` a directory when the candidate has a
        file ``docs``. These deletions must happen before any copy.
        """
        incoming = self.new | self.modified
        incoming_dirs: Set[str] = set()
        for path in incoming:
            incoming_dirs |= _ancestors(path)
        return sorted(
            path for path in self.deleted if path in incoming_dirs or _ancestors(path) & incoming
        )
