"""
Logging configuration and utilities.

All loggers live under the ``tensorplan`` namespace so an application can
tune the whole compiler with one ``logging.getLogger("tensorplan")`` call.
"""

from __future__ import annotations

import logging
import os

ROOT_LOGGER = "tensorplan"
LOG_LEVEL_ENV = "TENSORPLAN_LOG_LEVEL"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str | int | None = None, log_file: str | None = None) -> logging.Logger:
    """
    Configure the ``tensorplan`` logger.

    Args:
        level: Logging level name or number; defaults to $TENSORPLAN_LOG_LEVEL
            or WARNING.
        log_file: Optional file path that also receives the records.

    Returns:
        The configured package logger.
    """
    if level is None:
        level = os.environ.get(LOG_LEVEL_ENV, "WARNING")
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.WARNING)

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger under the ``tensorplan`` namespace.

    Args:
        name: Module name (typically ``__name__``).
    """
    if name == ROOT_LOGGER or name.startswith(ROOT_LOGGER + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
