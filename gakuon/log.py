"""Loguru sink configuration for CLI and server processes."""

from __future__ import annotations

import sys

from loguru import logger

CONSOLE_FORMAT = "<dim>{time:HH:mm:ss}</dim> | <level>{level: <8}</level> | {message}"


def configure_logging(level: str = "WARNING", log_file: str | None = None, debug: bool = False) -> None:
    """
    Replace the default loguru handler.

    The interactive session prints cards with rich, so stderr stays at
    WARNING unless debug is requested. The file sink, when configured,
    always records DEBUG.
    """
    logger.remove()
    logger.add(
        sys.stderr,
        level="DEBUG" if debug else level,
        format=CONSOLE_FORMAT,
    )
    if log_file:
        logger.add(
            log_file,
            level="DEBUG",
            rotation="5 MB",
            retention=3,
            enqueue=True,
        )
