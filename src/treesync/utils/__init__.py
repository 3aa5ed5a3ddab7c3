"""Utility functions for treesync."""

import sys
from pathlib import Path
from typing import Optional, Union

from loguru import logger

LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}"


def setup_logging(
    log_file: Optional[Union[str, Path]] = None,
    level: str = "INFO",
    console: bool = True,
) -> None:
    """
    Configure loguru sinks for treesync.

    The file sink is append-only and timestamped so it can serve as the
    event log of every sync cycle.

    Args:
        log_file: Optional path of the append-only log file
        level: Minimum level for all sinks
        console: Whether to also log to stderr
    """
    logger.remove()

    if console:
        logger.add(sys.stderr, level=level, colorize=True, backtrace=False)

    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(log_path),
            level=level,
            format=LOG_FORMAT,
            rotation="10 MB",
            retention=5,
            enqueue=True,
            backtrace=True,
            diagnose=False,
        )

    logger.debug(f"Logging configured: level={level} file={log_file}")
