"""
Logging setup built on loguru.

Modules call ``get_logger(__name__)`` at import time; the entry point calls
``configure_logging`` once with the configured LogLevel.
"""

import sys

from loguru import logger as _logger

from ingressd.models.enums import LogLevel

_LEVEL_MAP = {
    LogLevel.FULL: "TRACE",
    LogLevel.DEBUG: "DEBUG",
    LogLevel.INFO: "INFO",
    LogLevel.WARNING: "WARNING",
}

_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[name]}</cyan> | "
    "<level>{message}</level>"
)

_logger.configure(extra={"name": "ingressd"})


def configure_logging(level: LogLevel = LogLevel.INFO) -> None:
    """
    Replace loguru's default sink with a stderr sink at the given level.

    Args:
        level: Verbosity. FULL also enables loguru's variable dumps in tracebacks.
    """
    _logger.remove()
    _logger.add(
        sys.stderr,
        level=_LEVEL_MAP.get(level, "INFO"),
        format=_FORMAT,
        backtrace=level == LogLevel.FULL,
        diagnose=level == LogLevel.FULL,
    )


def get_logger(name: str):
    """Get a loguru logger bound to a module name."""
    return _logger.bind(name=name)
