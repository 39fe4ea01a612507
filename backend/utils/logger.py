"""
WatchRun Structured Logging Module.

Provides consistent, structured logging throughout the application.
Diagnostics go to stderr so they never interleave with command stdout.
Requires Python 3.11+.
"""

import logging
import os
import sys
from typing import Any

import structlog
from structlog.types import Processor

from utils.config import LoggingSettings, get_settings


def _add_app_context(
    logger: logging.Logger, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Add application context to all log entries."""
    settings = get_settings()
    event_dict["app"] = settings.app_name
    return event_dict


def use_colors(settings: LoggingSettings) -> bool:
    """
    Decide whether console output should be colored.

    Explicit LOG_COLORS wins, then NO_COLOR / FORCE_COLOR, then
    whether stderr is a terminal.
    """
    if settings.colors is not None:
        return settings.colors
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("FORCE_COLOR"):
        return True
    return sys.stderr.isatty()


def _stderr_logger_factory(*args: Any) -> structlog.PrintLogger:
    """Create a print logger on whatever sys.stderr is right now."""
    return structlog.PrintLogger(file=sys.stderr)


def configure_logging(settings: LoggingSettings | None = None) -> None:
    """
    Configure structured logging for the application.

    Call this once at application startup.

    Args:
        settings: Logging settings, defaults to the cached application settings
    """
    if settings is None:
        settings = get_settings().logging

    level = getattr(logging, settings.level.upper())

    # Common processors for all output formats
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_app_context,
    ]

    if settings.format == "json":
        processors: list[Processor] = [
            *shared_processors,
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(
                colors=use_colors(settings),
                exception_formatter=structlog.dev.plain_traceback,
            ),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=_stderr_logger_factory,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=level,
    )

    # Observer internals are noisy at debug level
    logging.getLogger("watchdog").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (typically __name__ of the calling module)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


class LoggerMixin:
    """
    Mixin class to add logging capability to any class.

    Usage:
        class MyClass(LoggerMixin):
            def my_method(self):
                self.log.info("doing something", key="value")
    """

    @property
    def log(self) -> structlog.stdlib.BoundLogger:
        """Get logger bound to this class name."""
        if not hasattr(self, "_logger"):
            self._logger = get_logger(self.__class__.__name__)
        return self._logger
