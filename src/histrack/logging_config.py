"""
Logging configuration for histrack.

Interactive commands log to stderr. The shell-hook capture path runs on
every prompt and must never print, so it logs to a rotating file instead.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOGGER_NAME = "histrack"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    return logging.getLevelNamesMapping().get(level.upper(), logging.WARNING)


def configure_logging(level: str | int = "WARNING", verbose: bool = False) -> logging.Logger:
    """
    Send histrack logs to stderr.

    Args:
        level: Level name or number; ignored when verbose is set
        verbose: Shortcut for DEBUG

    Returns:
        The package logger
    """
    histrack_logger = logging.getLogger(LOGGER_NAME)
    histrack_logger.setLevel(logging.DEBUG if verbose else _level(level))

    # Add stderr handler if not already present
    if not any(
        isinstance(h, logging.StreamHandler)
        and not isinstance(h, logging.FileHandler)
        and getattr(h, "stream", None) is sys.stderr
        for h in histrack_logger.handlers
    ):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S"))
        histrack_logger.addHandler(handler)

    return histrack_logger


def configure_capture_log(path: Path | str, level: str | int = "WARNING") -> RotatingFileHandler | None:
    """
    Configure the persistent capture log.

    Writes to path using a rotating file handler (1MB max, 3 backups).
    Returns the handler so callers can remove it, or None if the log file
    cannot be opened (capture must keep working without it).
    """
    log_path = Path(path).expanduser()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            str(log_path),
            maxBytes=1_000_000,
            backupCount=3,
            encoding="utf-8",
        )
    except OSError:
        return None

    handler.setLevel(_level(level))
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(process)d %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    histrack_logger = logging.getLogger(LOGGER_NAME)
    histrack_logger.addHandler(handler)
    if histrack_logger.level == logging.NOTSET or histrack_logger.level > handler.level:
        histrack_logger.setLevel(handler.level)
    return handler
