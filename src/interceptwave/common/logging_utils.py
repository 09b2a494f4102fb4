"""
Logging helpers.

All server components log through standard ``logging`` loggers below the
``interceptwave`` namespace. A host application that exposes a line-oriented
output sink (an editor output channel, a UI console) attaches it with
``OutputChannelHandler``.
"""

import logging
import sys
from typing import Callable, Optional

LOGGER_NAME = "interceptwave"

DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class OutputChannelHandler(logging.Handler):
    """Forward formatted log records to an ``append_line(text)`` callable."""

    def __init__(self, append_line: Callable[[str], None], level: int = logging.NOTSET):
        super().__init__(level)
        self.append_line = append_line
        self.setFormatter(logging.Formatter("%(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.append_line(self.format(record))
        except Exception:
            self.handleError(record)


def configure_logging(
    level: str = "info",
    append_line: Optional[Callable[[str], None]] = None
) -> logging.Logger:
    """
    Configure the package logger.

    Args:
        level: Log level name (debug, info, warning, error)
        append_line: Optional output sink; when omitted records go to stdout

    Returns:
        The configured package logger
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    if append_line is not None:
        handler: logging.Handler = OutputChannelHandler(append_line)
    else:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(DEFAULT_FORMAT))

    logger.addHandler(handler)
    logger.propagate = False
    return logger
