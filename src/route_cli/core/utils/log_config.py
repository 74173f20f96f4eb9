"""Logging configuration for route-cli.

This module provides centralized logging configuration using Loguru.
Records go to stderr and to a rotating file in the application's
``logs`` directory.
"""

import sys
from pathlib import Path

from loguru import logger

LOG_FILE_NAME = "route-cli.log"


def setup_logging(log_dir: Path, *, debug: bool = False) -> Path:
    """Configure the stderr and file sinks.

    Args:
        log_dir: Directory for the rotating log file
        debug: Log DEBUG records to stderr instead of INFO

    Returns:
        Path: The log file path
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILE_NAME

    logger.remove()  # Remove default handler

    logger.add(
        sys.stderr,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<level>{message}</level>"
        ),
        level="DEBUG" if debug else "INFO",
        backtrace=debug,
        diagnose=debug,
    )

    logger.add(
        log_file,
        rotation="10 MB",
        retention="1 week",
        compression="zip",
        format=(
            "{time:YYYY-MM-DD HH:mm:ss} | "
            "{level: <8} | "
            "{name}:{function}:{line} - "
            "{message}"
        ),
        level="DEBUG",
        backtrace=True,
        diagnose=False,
    )
    return log_file


__all__ = ["logger", "setup_logging"]
