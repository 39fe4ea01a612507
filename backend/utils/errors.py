"""
WatchRun Error Types.

Requires Python 3.11+.
"""

from pathlib import Path


class WatchRunError(Exception):
    """Base class for all WatchRun errors."""


class InvalidTarget(WatchRunError):
    """A watch path is missing or is not a directory at startup."""

    def __init__(self, path: Path | str, reason: str) -> None:
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"invalid watch target {self.path}: {reason}")


class WatchError(WatchRunError):
    """The file system watch failed and could not be re-established."""

    def __init__(self, message: str, attempts: int = 0) -> None:
        self.attempts = attempts
        super().__init__(message)


class CommandFailure(WatchRunError):
    """A command in the sequence exited with a non-zero status."""

    def __init__(self, command: str, exit_code: int, run_id: int | None = None) -> None:
        self.command = command
        self.exit_code = exit_code
        self.run_id = run_id
        super().__init__(f"command {command!r} exited with status {exit_code}")


class CancelledRun(WatchRunError):
    """A run instance was cancelled before it finished."""

    def __init__(self, run_id: int, reason: str = "cancelled") -> None:
        self.run_id = run_id
        self.reason = reason
        super().__init__(f"run {run_id} {reason}")
