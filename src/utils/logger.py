"""Centralized logging setup for the receipt scanning system."""

import logging
import sys
from typing import TextIO

_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Image decoders log every chunk they read at DEBUG.
_NOISY_LOGGERS = ("PIL", "urllib3")


def setup_logging(level: str = "INFO", stream: TextIO | None = None) -> None:
    """Configure the root logger with a standard format.

    Args:
        level: Logging level string (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        stream: Destination stream. Defaults to stderr so that CLI output
            on stdout stays machine-readable.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()

    if root.handlers:
        return

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    root.addHandler(handler)
    root.setLevel(numeric_level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.INFO))


def get_logger(name: str) -> logging.Logger:
    """Get a named logger instance."""
    return logging.getLogger(name)
