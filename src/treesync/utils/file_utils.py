"""Utilities for file operations."""

import hashlib
import os
import shutil
from pathlib import Path
from typing import Iterable

import aiofiles
from loguru import logger

CHUNK_SIZE = 64 * 1024


class FileError(Exception):
    """Base exception for file operations."""

    pass


class FileWriteError(FileError):
    """Raised when file operations fail."""

    pass


class FingerprintError(FileError):
    """Raised when a file cannot be read for fingerprinting."""

    pass


async def compute_checksum(path: Path) -> str:
    """
    Compute SHA-256 checksum of a file's bytes.

    The digest is only used to tell whether two files have the same content.
    Reads go through aiofiles so hashing a large file does not block the
    event loop.

    Args:
        path: File to hash

    Returns:
        SHA-256 hex digest

    Raises:
        FingerprintError: If the file cannot be read
    """
    sha256_hash = hashlib.sha256()
    try:
        async with aiofiles.open(path, "rb") as f:
            # Read file in chunks to handle large files
            while chunk := await f.read(CHUNK_SIZE):
                sha256_hash.update(chunk)
    except OSError as e:
        logger.error(f"Failed to compute checksum for {path}: {e}")
        raise FingerprintError(f"Failed to compute checksum for {path}: {e}") from e
    return sha256_hash.hexdigest()


def ensure_directory(path: Path) -> None:
    """
    Ensure directory exists, creating if necessary.

    Args:
        path: Directory path to ensure

    Raises:
        FileWriteError: If directory creation fails
    """
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Failed to create directory: {path}: {e}")
        raise FileWriteError(f"Failed to create directory {path}: {e}") from e


def write_file_atomic(path: Path, content: str) -> None:
    """
    Write file with atomic operation using temporary file.

    Args:
        path: Target file path
        content: Content to write

    Raises:
        FileWriteError: If write operation fails
    """
    temp_path = path.with_name(f".{path.name}.tmp")
    try:
        temp_path.write_text(content, encoding="utf-8")
        temp_path.replace(path)
    except OSError as e:
        temp_path.unlink(missing_ok=True)
        logger.error(f"Failed to write file: {path}: {e}")
        raise FileWriteError(f"Failed to write file {path}: {e}") from e


def copy_file(source: Path, target: Path) -> None:
    """
    Copy a single file, creating the target's parent directories.

    The copy goes to a temporary sibling first and is moved into place, so
    readers of ``target`` see either the old or the new content.

    Raises:
        FileWriteError: If the copy fails
    """
    temp_path = target.with_name(f".{target.name}.treesync-tmp")
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, temp_path)
        os.replace(temp_path, target)
    except OSError as e:
        temp_path.unlink(missing_ok=True)
        logger.error(f"Failed to copy {source} -> {target}: {e}")
        raise FileWriteError(f"Failed to copy {source} to {target}: {e}") from e


def delete_file(path: Path) -> None:
    """
    Delete file if it exists.

    Raises:
        FileWriteError: If deletion fails
    """
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.error(f"Failed to delete file {path}: {e}")
        raise FileWriteError(f"Failed to delete file {path}: {e}") from e


def prune_empty_directories(root: Path, candidates: Iterable[Path]) -> list[Path]:
    """Remove directories under ``root`` that no longer contain any files.

    Candidates are walked deepest first and each one's parents are considered
    too, stopping at ``root`` itself, which is never removed.

    Returns:
        Directories that were removed
    """
    root = root.resolve()
    pending: set[Path] = set()
    for directory in candidates:
        directory = directory.resolve()
        while directory != root and root in directory.parents:
            pending.add(directory)
            directory = directory.parent

    removed = []
    for directory in sorted(pending, key=lambda p: len(p.parts), reverse=True):
        if not directory.is_dir():
            continue
        if any(directory.iterdir()):
            continue
        try:
            directory.rmdir()
            removed.append(directory)
            logger.debug(f"Pruned empty directory: {directory}")
        except OSError as e:
            logger.warning(f"Could not prune directory {directory}: {e}")
    return removed


def remove_tree(path: Path) -> None:
    """Remove a directory tree if it exists.

    Raises:
        FileWriteError: If removal fails
    """
    if not path.exists():
        return
    try:
        shutil.rmtree(path)
    except OSError as e:
        logger.error(f"Failed to remove directory {path}: {e}")
        raise FileWriteError(f"Failed to remove directory {path}: {e}") from e
