# utils/logger.py
"""
Console + rotating-file logging for the paper engine.

Timestamps are UTC so log lines line up with the exchange's hourly candle
boundaries and the epoch-ms values the engine logs.  ``LOG_LEVEL``,
``LOG_FILE``, ``LOG_MAX_MB`` and ``LOG_BACKUPS`` are read when a logger is
first configured, after ``config.env`` has been loaded.
"""
import logging
import os
import time
from logging.handlers import RotatingFileHandler
from typing import Optional, Union

_FORMAT = "%(asctime)sZ [%(levelname)s] %(name)s: %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"

_NOISY_LOGGERS = ("aiohttp", "httpx", "httpcore", "telegram", "asyncio")

_FROM_ENV = object()


class UTCFormatter(logging.Formatter):
    converter = time.gmtime


def _coerce_level(level: Union[str, int, None]) -> int:
    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO")
    if isinstance(level, str):
        return getattr(logging, level.strip().upper(), logging.INFO)
    return level


def setup_logger(name: str,
                 level: Union[str, int, None] = None,
                 log_file=_FROM_ENV,
                 to_console: bool = True) -> logging.Logger:
    """
    Create/get a logger with console and rotating-file handlers.

    ``log_file=None`` disables the file handler; leaving it unset uses
    ``LOG_FILE`` (default ``logs/paper.log``).  Re-using a name returns the
    already configured logger without adding handlers.
    """
    logger = logging.getLogger(name)
    if logger.handlers:  # already configured
        return logger

    level = _coerce_level(level)
    logger.setLevel(level)
    formatter = UTCFormatter(fmt=_FORMAT, datefmt=_DATEFMT)

    path: Optional[str] = os.getenv("LOG_FILE", "logs/paper.log") if log_file is _FROM_ENV else log_file
    if path:
        log_dir = os.path.dirname(path)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            path,
            maxBytes=int(os.getenv("LOG_MAX_MB", "5")) * 1024 * 1024,
            backupCount=int(os.getenv("LOG_BACKUPS", "5")),
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        logger.addHandler(file_handler)

    if to_console:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        stream_handler.setLevel(level)
        logger.addHandler(stream_handler)

    # quiet noisy libs
    for noisy in _NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return logger
