"""loguru sink setup shared by the server and the CLI."""

import sys

from loguru import logger

LOG_FORMAT = (
    "{time:HH:mm:ss} [{level}] {name}: {message}"
)


def setup_logging(level: str = "INFO") -> None:
    """Replace loguru's default sink with a single stderr sink at ``level``."""
    logger.remove()
    logger.add(sys.stderr, level=level, format=LOG_FORMAT, backtrace=False)
