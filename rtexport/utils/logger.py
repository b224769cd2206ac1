"""
Loguru configuration for rtexport.

pynetdicom and pydicom log through the standard library. Their records are
forwarded into loguru so association, DIMSE and storage messages share one
console stream (and one file, when enabled) with the export's own messages.
"""

import logging
import sys
from pathlib import Path

from loguru import logger as _logger

from ..settings import Settings, settings

DEFAULT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{thread.name}</cyan> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

# Standard library loggers forwarded to loguru
LIBRARY_LOGGERS = ("pynetdicom", "pydicom")


class InterceptHandler(logging.Handler):
    """Forward standard library log records to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        level: str | int
        try:
            level = _logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Report the original caller, not the logging module
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        _logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def route_library_logs(level: str) -> None:
    """Send pynetdicom and pydicom records to loguru at ``level`` and above."""
    for name in LIBRARY_LOGGERS:
        lib_logger = logging.getLogger(name)
        lib_logger.handlers = [InterceptHandler()]
        lib_logger.propagate = False
        lib_logger.setLevel(level)


def setup_logging(
    level: str = "INFO",
    fmt: str | None = None,
    log_file: str | Path | None = None,
    rotation: str = "20 MB",
    retention: str = "1 week",
) -> None:
    """
    Replace loguru's sinks with a console sink and an optional rotating file.

    Args:
        level: Minimum level for our messages and the forwarded library ones
        fmt: Message format, DEFAULT_FORMAT if None
        log_file: Log file path; no file sink if None
        rotation: When to rotate the log file (size or time)
        retention: How long rotated files are kept
    """
    fmt = fmt or DEFAULT_FORMAT

    _logger.remove()
    _logger.add(sys.stderr, level=level, format=fmt, colorize=True, backtrace=True)

    if log_file is not None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        # Receiver threads write here too; loguru sinks are thread-safe
        _logger.add(
            str(log_path),
            level=level,
            format=fmt,
            rotation=rotation,
            retention=retention,
            compression="zip",
            backtrace=True,
        )

    route_library_logs(level)


def setup_from_settings(config: Settings) -> None:
    """Configure logging from ``log_*`` settings."""
    setup_logging(
        level=config.log_level,
        fmt=config.log_format,
        log_file=config.get_log_dir() / "rtexport.log" if config.log_to_file else None,
        rotation=config.log_rotation,
        retention=config.log_retention,
    )


setup_from_settings(settings)

logger = _logger
