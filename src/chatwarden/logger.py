"""
Logging setup built on loguru.

Every module grabs its logger with ``get_logger(__name__)``; the server and
the CLI call ``setup_logging`` once at startup.
"""

import sys
from typing import Optional

from loguru import logger as _logger

_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[component]}</cyan> - <level>{message}</level>"
)

_logger.configure(extra={"component": "chatwarden"})


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Replace loguru's default sink with ours, optionally adding a rotating file."""
    level = (level or "INFO").upper()
    _logger.remove()
    _logger.add(sys.stderr, level=level, format=_FORMAT, enqueue=False)
    if log_file:
        _logger.add(
            log_file,
            level=level,
            format=_FORMAT,
            rotation="10 MB",
            retention=2,
            encoding="utf-8",
        )


def get_logger(name: str):
    """Return the shared loguru logger bound to a component name."""
    return _logger.bind(component=name)
