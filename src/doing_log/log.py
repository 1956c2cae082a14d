"""Logging configuration using loguru.

The library is silent until setup_logging() is called: ``doing_log`` is
disabled in loguru on import, and the entry point turns it back on.
"""

import sys

from loguru import logger


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    fmt: str = "<level>[{level.name}]</level> {message}",
    rotation: str = "10 MB",
    retention: str = "7 days",
) -> None:
    """Send doing_log messages to stderr (and optionally a rotating file).

    Args:
        level: Minimum log level (DEBUG, INFO, WARNING, ERROR).
        log_file: Path to log file. If None, only logs to stderr.
        fmt: Loguru format string.
        rotation: Log file rotation size.
        retention: How long to keep rotated logs.
    """
    logger.remove()
    logger.add(sys.stderr, level=level, format=fmt)

    if log_file:
        logger.add(
            log_file,
            level=level,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}",
            rotation=rotation,
            retention=retention,
        )

    logger.enable("doing_log")
