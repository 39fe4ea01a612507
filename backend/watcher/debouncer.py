"""
WatchRun Debouncer.

Debounces rapid file system events.
Requires Python 3.11+.
"""

import time
from collections.abc import Callable
from pathlib import Path

from utils.logger import LoggerMixin
from watcher.models import ChangeType, PendingChange


class Debouncer(LoggerMixin):
    """
    Debounces rapid file changes.

    Accumulates changes and reports them as due once the delay has
    passed with no new changes. This prevents re-running the command
    sequence several times while an editor performs multiple writes
    for a single save.

    The debouncer owns no timer thread: the control loop asks
    ``time_until_due()`` how long it may block and calls ``drain()``
    once ``is_due()`` is true.
    """

    def __init__(
        self,
        delay_ms: int = 500,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the debouncer.

        Args:
            delay_ms: Quiet period in milliseconds before changes are due
            clock: Monotonic time source, injectable for tests
        """
        self._delay = delay_ms / 1000.0
        self._clock = clock
        self._pending: dict[Path, PendingChange] = {}
        self._last_event: float | None = None

    @property
    def delay(self) -> float:
        """Debounce delay in seconds."""
        return self._delay

    def debounce(self, path: Path, change_type: ChangeType) -> None:
        """
        Add a file change to the pending set.

        Each call restarts the quiet period. A later change to the
        same path replaces the earlier one.

        Args:
            path: Path to the changed file
            change_type: Type of change
        """
        now = self._clock()
        self._pending[path] = PendingChange(
            path=path,
            change_type=change_type,
            timestamp=now,
        )
        self._last_event = now

    def time_until_due(self) -> float | None:
        """
        Seconds until pending changes become due.

        Returns:
            None when nothing is pending, otherwise a non-negative delay
        """
        if self._last_event is None:
            return None
        remaining = self._last_event + self._delay - self._clock()
        return max(0.0, remaining)

    def is_due(self) -> bool:
        """Check whether pending changes have been quiet for the full delay."""
        remaining = self.time_until_due()
        return remaining is not None and remaining <= 0.0

    def drain(self) -> list[tuple[Path, ChangeType]]:
        """
        Take all pending changes, oldest first.

        Returns:
            List of (path, change_type) tuples that were pending
        """
        changes = [
            (change.path, change.change_type)
            for change in sorted(self._pending.values(), key=lambda c: c.timestamp)
        ]
        self._pending.clear()
        self._last_event = None

        if changes:
            self.log.debug("processing_debounced_changes", count=len(changes))
        return changes

    def has_pending(self, *change_types: ChangeType) -> bool:
        """Check whether any pending change is of one of the given types."""
        return any(change.change_type in change_types for change in self._pending.values())

    def clear(self) -> None:
        """Clear all pending changes without processing."""
        self._pending.clear()
        self._last_event = None

    @property
    def pending_count(self) -> int:
        """Get number of pending changes."""
        return len(self._pending)

    @property
    def pending_paths(self) -> list[Path]:
        """Get list of paths with pending changes."""
        return list(self._pending.keys())
