"""
Logging configuration for Topoma.

Console output carries INFO-level messages for the operator; an optional
log file captures DEBUG-level detail (render timings, skipped rows, failed
lookups) for troubleshooting.

Functions:
    setup_logging: Initialize the ``topoma`` logger handlers
    get_logger: Get a logger for a specific module

Example:
    >>> from topoma.logger import setup_logging, get_logger
    >>> setup_logging()
    >>> logger = get_logger(__name__)
    >>> logger.info("Export started")
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

ROOT_LOGGER = "topoma"


def setup_logging(log_dir: Optional[Path] = None) -> Optional[Path]:
    """Setup logging to console and, when ``log_dir`` is given, to a file.

    Args:
        log_dir: Directory for log files. No file handler is installed when
            omitted.

    Returns:
        Path to the created log file, or None.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.INFO)
    console.setFormatter(logging.Formatter('%(message)s'))
    logger.addHandler(console)

    log_file = None
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_file = log_dir / f'topoma_{timestamp}.log'
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        logger.addHandler(file_handler)
        logger.debug(f"Logging initialized: {log_file}")

    return log_file


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the ``topoma`` hierarchy.

    Args:
        name: Module name, usually ``__name__``.
    """
    if name == ROOT_LOGGER or name.startswith(ROOT_LOGGER + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
