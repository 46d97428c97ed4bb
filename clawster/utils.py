"""Shared utility functions."""

import logging
import re
import sys
import time
from typing import Callable, TypeVar

from rich.console import Console
from rich.logging import RichHandler

from .errors import ConfigurationError, OperationTimeoutError

logger = logging.getLogger("clawster")

T = TypeVar("T")


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
        ("httpx", logging.WARNING),
    ]:
        lg = logging.getLogger(name)
        for h in lg.handlers[:]:
            lg.removeHandler(h)
        lg.setLevel(lvl)
        lg.propagate = True


def log(msg: str) -> None:
    """Log info message."""
    logger.info(msg)


def warn(msg: str) -> None:
    """Log warning message."""
    logger.warning(msg)


def sanitize_name(name: str) -> str:
    """Make a profile name safe for AWS resource names.

    Lowercases, collapses every run of non-alphanumerics into one hyphen and
    trims hyphens from both ends. "My Bot 123!" becomes "my-bot-123".

    :raises ConfigurationError: if nothing usable is left
    """
    sanitized = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    if not sanitized:
        raise ConfigurationError(f"Invalid name '{name}': sanitized result is empty")
    return sanitized


def wait_for(
    check: Callable[[], T | None],
    *,
    timeout: float,
    interval: float,
    description: str = "condition",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Poll check() until it returns a truthy value.

    :param timeout: Seconds before giving up
    :param interval: Seconds between polls
    :return: First truthy value returned by check()
    :raises OperationTimeoutError: if timeout elapses first
    """
    start_time = time.time()
    while True:
        result = check()
        if result:
            return result
        if time.time() - start_time >= timeout:
            raise OperationTimeoutError(f"Timed out after {timeout:.0f}s waiting for {description}")
        sleep(interval)


def error(msg: str) -> None:
    """Log error message and exit."""
    logger.error(msg)
    sys.exit(1)
