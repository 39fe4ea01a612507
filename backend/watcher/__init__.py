"""
WatchRun File Watcher Package.

File system monitoring and change debouncing.
Requires Python 3.11+.
"""

from watcher.models import ChangeType, PendingChange, WatchEvent, WatchTarget
from watcher.file_watcher import FileWatcher, ChangeHandler
from watcher.debouncer import Debouncer

__all__ = [
    "ChangeType",
    "PendingChange",
    "WatchEvent",
    "WatchTarget",
    "FileWatcher",
    "ChangeHandler",
    "Debouncer",
]
