"""
WatchRun Utilities Package.

Common utilities shared across all modules.
Requires Python 3.11+.
"""

from utils.config import Settings, get_settings
from utils.errors import (
    WatchRunError,
    InvalidTarget,
    WatchError,
    CommandFailure,
    CancelledRun,
)
from utils.logger import configure_logging, get_logger, LoggerMixin

__all__ = [
    "Settings",
    "get_settings",
    "WatchRunError",
    "InvalidTarget",
    "WatchError",
    "CommandFailure",
    "CancelledRun",
    "configure_logging",
    "get_logger",
    "LoggerMixin",
]
