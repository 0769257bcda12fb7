"""
Logging setup for the authorization server: console + optional rotating file.

Usage:

    from macro_mcp.logging_util import configure_logging, get_logger

    configure_logging(level="DEBUG", log_file="auth.log")

    logger = get_logger(__name__)
    logger.info(f"Issued code {redact(code)}")

Codes, state tokens and upstream tokens are bearer secrets. Log them only
through `redact`.
"""

import logging
from logging.handlers import RotatingFileHandler
from typing import Optional, Union


_LEVEL_MAP = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}

# Third party loggers that are too chatty at DEBUG
_NOISY_LOGGERS = ("httpx", "httpcore")


def _to_level(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level
    return _LEVEL_MAP.get(level.upper(), logging.INFO)


def configure_logging(
    *,
    level: Union[int, str] = "INFO",
    console_level: Optional[Union[int, str]] = None,
    file_level: Optional[Union[int, str]] = None,
    log_file: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,  # 10 MB
    backup_count: int = 5,
    fmt: str = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt: str = "%Y-%m-%d %H:%M:%S",
    clear_existing: bool = True,
) -> None:
    """
    Configure application-wide logging.

    Parameters
    ----------
    level:
        Root logger level. Can be int or string (e.g. "DEBUG").
    console_level:
        Level for the console handler. Defaults to `level`.
    file_level:
        Level for the file handler. Defaults to `level`.
    log_file:
        If provided, logs also go to a RotatingFileHandler at this path.
    max_bytes, backup_count:
        Rotation settings, only used with `log_file`.
    clear_existing:
        Remove handlers already on the root logger, so calling this twice
        does not duplicate output.
    """
    root = logging.getLogger()
    root.setLevel(_to_level(level))

    if clear_existing:
        for h in list(root.handlers):
            root.removeHandler(h)

    formatter = logging.Formatter(fmt=fmt, datefmt=datefmt)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(_to_level(console_level or level))
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    if log_file:
        file_handler = RotatingFileHandler(
            filename=log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(_to_level(file_level or level))
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(_to_level(level), logging.WARNING))


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name)


def redact(secret: Optional[str], keep: int = 6) -> str:
    """Short, non-reversible prefix of a secret for log lines."""
    if not secret:
        return "<none>"
    return secret[:keep] + "..."
