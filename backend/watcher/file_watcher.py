"""
WatchRun File Watcher.

Cross-platform file system monitoring using watchdog.
Requires Python 3.11+.
"""

import os
import queue
from pathlib import Path
from typing import Any

from watchdog.events import (
    DirModifiedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
    FileSystemMovedEvent,
)
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver
from watchdog.observers.polling import PollingObserver

from utils.errors import WatchError
from utils.logger import LoggerMixin
from watcher.models import ChangeType, WatchEvent, WatchTarget


class ChangeHandler(FileSystemEventHandler, LoggerMixin):
    """
    Handles file system events on the observer thread.

    Filters ignored paths and hands everything else to the control
    loop through a queue. No other state is touched here.
    """

    def __init__(self, target: WatchTarget, events: "queue.Queue[WatchEvent]") -> None:
        """
        Initialize the file handler.

        Args:
            target: Watch target providing the ignore patterns
            events: Queue drained by the control loop
        """
        super().__init__()
        self._target = target
        self._events = events

    def _emit(self, raw_path: str | bytes, change_type: ChangeType) -> None:
        path = Path(os.fsdecode(raw_path))
        if self._target.is_ignored(path):
            return
        self.log.debug("file_" + change_type.value, path=str(path))
        self._events.put(WatchEvent(path=path, change_type=change_type))

    def on_created(self, event: FileSystemEvent) -> None:
        """Handle file/directory creation."""
        self._emit(event.src_path, ChangeType.CREATED)

    def on_modified(self, event: FileSystemEvent) -> None:
        """Handle file modification."""
        # A directory mtime changes with every write inside it
        if isinstance(event, DirModifiedEvent):
            return
        self._emit(event.src_path, ChangeType.MODIFIED)

    def on_deleted(self, event: FileSystemEvent) -> None:
        """Handle file/directory deletion."""
        self._emit(event.src_path, ChangeType.DELETED)

    def on_moved(self, event: FileSystemMovedEvent) -> None:
        """Handle file/directory move/rename."""
        # Moving an ignored temp file over a real one is how many editors save
        self._emit(event.src_path, ChangeType.MOVED)
        self._emit(event.dest_path, ChangeType.MOVED)


class FileWatcher(LoggerMixin):
    """
    Watches a target for file changes.

    Uses watchdog for cross-platform file system monitoring. Events
    are queued for the control loop; the watcher itself never decides
    when commands run.
    """

    def __init__(self, target: WatchTarget, use_polling: bool = False) -> None:
        """
        Initialize the file watcher.

        Args:
            target: Resolved watch target
            use_polling: Use stat polling instead of native OS events
        """
        self._target = target
        self._use_polling = use_polling
        self._events: queue.Queue[WatchEvent] = queue.Queue()
        self._handler = ChangeHandler(target, self._events)
        self._observer: BaseObserver | None = None
        self._running = False

    def _new_observer(self) -> BaseObserver:
        if self._use_polling:
            return PollingObserver()
        return Observer()

    def start(self) -> None:
        """
        Start watching for file changes.

        Raises:
            WatchError: If a watched path is gone or cannot be scheduled
        """
        if self._running:
            return

        missing = self._target.missing_paths()
        if missing:
            raise WatchError(f"watch path missing: {missing[0]}")

        observer = self._new_observer()
        try:
            for path in self._target.paths:
                observer.schedule(
                    self._handler,
                    str(path),
                    recursive=self._target.recursive,
                )
            observer.start()
        except OSError as e:
            raise WatchError(f"cannot watch {self._target.paths[0]}: {e}") from e

        self._observer = observer
        self._running = True

        self.log.info(
            "file_watcher_started",
            paths=[str(p) for p in self._target.paths],
            recursive=self._target.recursive,
            polling=self._use_polling,
            ignore_patterns=list(self._target.ignore_patterns),
        )

    def stop(self) -> None:
        """Stop watching for file changes."""
        if not self._running:
            return

        if self._observer is not None:
            self._observer.stop()
            if self._observer.is_alive():
                self._observer.join(timeout=5.0)
            self._observer = None

        self._running = False
        self.log.info("file_watcher_stopped")

    def restart(self) -> None:
        """
        Tear down the observer and schedule the target again.

        Raises:
            WatchError: If the watch cannot be re-established
        """
        self.stop()
        self.start()

    def health_error(self) -> str | None:
        """
        Describe why the watch is broken, if it is.

        Returns:
            None while healthy, otherwise a short reason
        """
        missing = self._target.missing_paths()
        if missing:
            return f"watch path removed: {missing[0]}"
        if self._running and (self._observer is None or not self._observer.is_alive()):
            return "observer stopped unexpectedly"
        return None

    def get_event(self, timeout: float | None) -> WatchEvent | None:
        """
        Wait for the next event.

        Args:
            timeout: Seconds to block, None to block indefinitely, 0 to poll

        Returns:
            The next event or None if none arrived in time
        """
        try:
            if timeout is not None and timeout <= 0:
                return self._events.get_nowait()
            return self._events.get(timeout=timeout)
        except queue.Empty:
            return None

    @property
    def is_running(self) -> bool:
        """Check if the watcher is running."""
        return self._running

    def __enter__(self) -> "FileWatcher":
        """Context manager entry."""
        self.start()
        return self

    def __exit__(self, *args: Any) -> None:
        """Context manager exit."""
        self.stop()
