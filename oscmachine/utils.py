"""Shared utility functions."""

import hashlib
import logging
import os
import sys

from rich.console import Console
from rich.logging import RichHandler

logger = logging.getLogger("oscmachine")


class LogStream:
    """File-like stream that routes output through the logger line by line.

    Use as out_stream/err_stream in fabric c.run() calls so remote SSH output
    goes through the logging system instead of directly to the terminal.
    """

    def __init__(self) -> None:
        self._buf = ""

    def write(self, text: str) -> None:
        self._buf += text
        while "\n" in self._buf:
            line, self._buf = self._buf.split("\n", 1)
            if line.strip():
                logger.info(line)

    def flush(self) -> None:
        if self._buf.strip():
            logger.info(self._buf)
            self._buf = ""


def setup_logging(level: int | str = logging.INFO) -> None:
    """Set up logging with Rich handler to stderr."""
    if isinstance(level, str):
        level = getattr(logging, level.upper())
    rich_handler = RichHandler(
        console=Console(stderr=True),
        log_time_format="[%X]",
        show_path=False,
        markup=False,
    )
    rich_handler.setLevel(level)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)
    root_logger.addHandler(rich_handler)

    for name, lvl in [
        ("boto3", logging.INFO),
        ("botocore", logging.WARNING),
        ("urllib3", logging.WARNING),
        ("paramiko", logging.WARNING),
        ("fabric", logging.WARNING),
    ]:
        lg = logging.getLogger(name)
        for h in lg.handlers[:]:
            lg.removeHandler(h)
        lg.setLevel(lvl)
        lg.propagate = True


def log(msg: str) -> None:
    """Log info message."""
    logger.info(msg)


def debug(msg: str) -> None:
    """Log debug message."""
    logger.debug(msg)


def warn(msg: str) -> None:
    """Log warning message."""
    logger.warning(msg)


def error(msg: str) -> None:
    """Log error message and exit.

    Only the command-line layer calls this; library code raises DriverError.
    """
    logger.error(msg)
    sys.exit(1)


def generate_id() -> str:
    """:return: random 32-character hex identifier for a new machine"""
    return hashlib.md5(os.urandom(10)).hexdigest()


def get_version() -> str:
    """:return: installed package version, used to tag managed resources"""
    from importlib.metadata import PackageNotFoundError, version

    try:
        return version("oscmachine")
    except PackageNotFoundError:
        return "0.0.0+local"
