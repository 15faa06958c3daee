"""
Logging configuration for the classification service.
Transaction text is only ever logged at DEBUG level.
"""
import logging
import os
import sys
from typing import Optional, Set

LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Names of loggers configured here, so the level can be changed for all of them at once
_configured: Set[str] = set()


def _resolve_level(level: Optional[str]) -> int:
    name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    return getattr(logging, name, logging.INFO)


def setup_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """
    Configure and return a logger instance.

    Args:
        name: Logger name (usually __name__)
        level: Log level (DEBUG, INFO, WARNING, ERROR). Defaults to env LOG_LEVEL or INFO.

    Returns:
        Configured logger instance
    """
    numeric_level = _resolve_level(level)
    logger = logging.getLogger(name)
    logger.setLevel(numeric_level)

    if name not in _configured:
        stream = logging.StreamHandler(sys.stdout)
        stream.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
        logger.addHandler(stream)
        _configured.add(name)

    for handler in logger.handlers:
        handler.setLevel(numeric_level)

    return logger


def set_level(level: str) -> None:
    """Apply a log level to every logger created through setup_logger."""
    numeric_level = _resolve_level(level)
    for name in _configured:
        logger = logging.getLogger(name)
        logger.setLevel(numeric_level)
        for handler in logger.handlers:
            handler.setLevel(numeric_level)
