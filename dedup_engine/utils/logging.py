"""
Logging setup for the deduplication engine.

Every module logs through loguru's shared `logger`. Importing `dedup_engine`
installs the sinks below from PipelineSettings (LOG_LEVEL, LOG_FILE,
LOG_ROTATION, LOG_RETENTION) unless DISABLE_LOGGING=1; a host application
that wants different sinks calls setup_logging() again at startup.
"""

import os
import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from dedup_engine.config import settings

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {thread.name} | {name}:{function}:{line} - {message}"


def setup_logging(
    level: Optional[str] = None,
    log_file: Optional[Path] = None,
    rotation: Optional[str] = None,
    retention: Optional[str] = None,
) -> None:
    """
    Replace loguru's sinks with the engine's console and file sinks.

    Arguments left out fall back to PipelineSettings. The file sink records
    the thread name, since detection and clustering score in worker threads
    and the notifier delivers from its own.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        log_file: File to log to as well as stderr
        rotation: When to rotate the file (e.g. "10 MB", "1 day")
        retention: How long rotated files are kept (e.g. "1 week", "10 files")
    """
    pipeline = settings.pipeline
    level = (level or pipeline.log_level).upper()
    log_file = log_file or pipeline.log_file

    logger.remove()
    logger.add(sys.stderr, level=level, format=CONSOLE_FORMAT, colorize=True)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            level=level,
            format=FILE_FORMAT,
            rotation=rotation or pipeline.log_rotation,
            retention=retention or pipeline.log_retention,
            compression="gz",
        )

    logger.debug(f"Logging configured: level={level}, file={log_file or 'none'}")


if os.environ.get("DISABLE_LOGGING") != "1":
    setup_logging()
