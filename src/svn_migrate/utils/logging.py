"""Logging utilities for SVN Migration Tool."""

import re
import sys
from pathlib import Path
from typing import Iterable, List, Optional

from loguru import logger

_URL_CREDENTIALS = re.compile(r'(?P<scheme>[a-z][a-z0-9+.-]*://)[^/@\s]+@', re.I)
_SECRET_FLAGS = ('--password', '--password=')


def setup_logging(
    level: str = 'INFO',
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
) -> None:
    """Setup logging configuration using loguru.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional log file path
        log_format: Optional custom log format
    """
    logger.remove()

    if log_format is None:
        log_format = (
            '<green>{time:YYYY-MM-DD HH:mm:ss}</green> | '
            '<level>{level: <8}</level> | '
            '<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | '
            '<level>{message}</level>'
        )

    logger.add(
        sys.stderr,
        format=log_format,
        level=level,
        colorize=True,
        backtrace=True,
        diagnose=False,
    )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_format = (
            '{time:YYYY-MM-DD HH:mm:ss} | '
            '{level: <8} | '
            '{name}:{function}:{line} | '
            '{message}'
        )

        logger.add(
            log_file,
            format=file_format,
            level=level,
            rotation='10 MB',
            retention='30 days',
            compression='gz',
            backtrace=True,
            diagnose=False,
        )

    logger.info(f'Logging initialized with level: {level}')
    if log_file:
        logger.info(f'Log file: {log_file}')


def get_logger(name: str):
    """Get a logger instance with the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    return logger.bind(name=name)


def mask_url(url: str) -> str:
    """Replace the userinfo part of a URL with a placeholder."""
    return _URL_CREDENTIALS.sub(r'\g<scheme>***@', url)


def mask_command(cmd: Iterable[str]) -> List[str]:
    """Return a copy of a command line safe to log.

    Passwords passed as ``--password value`` or ``--password=value`` and
    credentials embedded in URLs are masked.
    """
    masked = []
    hide_next = False
    for arg in cmd:
        if hide_next:
            masked.append('***')
            hide_next = False
        elif arg == _SECRET_FLAGS[0]:
            masked.append(arg)
            hide_next = True
        elif arg.startswith(_SECRET_FLAGS[1]):
            masked.append(_SECRET_FLAGS[1] + '***')
        else:
            masked.append(mask_url(arg))
    return masked
