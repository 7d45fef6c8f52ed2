"""
Logging setup for Needle.

The dashboard owns the terminal, so loguru writes to a rotating file only.
Standard-library loggers (textual, urllib3) are routed into the same sink.
"""

from __future__ import annotations

import logging
from pathlib import Path

from loguru import logger

from .config import LOG_FILENAME, get_needle_dir


LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"


class InterceptHandler(logging.Handler):
    """Intercept standard logging messages toward Loguru sinks."""
    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(log_file: Path | None = None, verbose: bool = False) -> Path:
    """Send all logs to ~/.needle/needle.log. Returns the log file path."""
    if log_file is None:
        log_file = get_needle_dir() / LOG_FILENAME
    log_file.parent.mkdir(parents=True, exist_ok=True)

    # Remove default loguru handler; stderr belongs to the TUI
    logger.remove()

    logger.add(
        str(log_file),
        level="DEBUG" if verbose else "INFO",
        rotation="10 MB",
        retention="1 week",
        format=LOG_FORMAT,
        enqueue=True,
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    for logger_name in ("textual", "urllib3", "requests"):
        logging_logger = logging.getLogger(logger_name)
        logging_logger.handlers = [InterceptHandler()]
        logging_logger.propagate = False

    return log_file
