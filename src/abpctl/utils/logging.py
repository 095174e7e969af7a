"""Logging setup for abpctl.

Log output never goes to stdout: in bridge mode stdout carries the
newline-delimited JSON-RPC stream and a stray log line would corrupt it.
"""

from __future__ import annotations

import logging
import sys
from typing import TextIO

from abpctl.config.settings import LoggingConfig

PACKAGE_LOGGER = "abpctl"

# Per-request INFO lines from the HTTP stack; kept unless running at DEBUG
CHATTY_LOGGERS = ("httpx", "httpcore")


def setup_logging(
    config: LoggingConfig | None = None, stream: TextIO | None = None
) -> logging.Logger:
    """Configure the ``abpctl`` logger and return it.

    Safe to call more than once: handlers from an earlier call are
    replaced rather than stacked.

    Args:
        config: Logging configuration. If None, uses defaults
                (INFO level, stderr output).
        stream: Console stream, stderr by default.

    Raises:
        ValueError: If ``stream`` is the process's stdout.
    """
    if config is None:
        config = LoggingConfig()
    if stream is None:
        stream = sys.stderr
    if stream is sys.stdout or stream is sys.__stdout__:
        raise ValueError("stdout is reserved for protocol output; log to stderr")

    level = getattr(logging, config.level.upper(), logging.INFO)
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(level)

    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(config.format)

    console_handler = logging.StreamHandler(stream)
    console_handler.setFormatter(formatter)
    package_logger.addHandler(console_handler)

    if config.file:
        file_handler = logging.FileHandler(config.file)
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

    library_level = logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    for name in CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)

    package_logger.debug("Logging initialized at %s level", config.level)
    return package_logger
