"""Loguru sink setup.

The JSON-lines bridge owns stdout, so every log line goes to stderr.
"""

from __future__ import annotations

import sys

from loguru import logger


def configure_logging(level: str = "INFO") -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="{time:HH:mm:ss.SSS} | {level: <8} | {name}:{line} - {message}",
        backtrace=False,
        diagnose=False,
    )
