"""
WatchRun Watcher Data Models.

Defines the watch target and the change records produced by the
file system observer.
Requires Python 3.11+.
"""

import fnmatch
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePath

from utils.errors import InvalidTarget


class ChangeType(str, Enum):
    """Kinds of file system change."""

    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"
    MOVED = "moved"


@dataclass(slots=True)
class PendingChange:
    """A pending file change waiting to be processed."""

    path: Path
    change_type: ChangeType
    timestamp: float


@dataclass(frozen=True, slots=True)
class WatchEvent:
    """A filtered event handed from the observer thread to the control loop."""

    path: Path
    change_type: ChangeType


@dataclass(frozen=True)
class WatchTarget:
    """
    The file system scope monitored for changes.

    Paths are resolved to absolute directories by ``resolve()``; ignore
    patterns are globs matched against each component of a path relative
    to the watched root, and against the whole relative path.
    """

    paths: tuple[Path, ...]
    ignore_patterns: tuple[str, ...] = field(default_factory=tuple)
    recursive: bool = True

    @classmethod
    def create(
        cls,
        paths: list[Path | str],
        ignore_patterns: list[str] | None = None,
        recursive: bool = True,
    ) -> "WatchTarget":
        """Build a target and validate it in one step."""
        target = cls(
            paths=tuple(Path(p) for p in paths),
            ignore_patterns=tuple(ignore_patterns or ()),
            recursive=recursive,
        )
        return target.resolve()

    def resolve(self) -> "WatchTarget":
        """
        Resolve every path to an existing absolute directory.

        Returns:
            A new WatchTarget with resolved, de-duplicated paths

        Raises:
            InvalidTarget: If no path is given or a path is not a directory
        """
        if not self.paths:
            raise InvalidTarget(".", "no path to watch")

        resolved: list[Path] = []
        for path in self.paths:
            full = path.expanduser().resolve()
            if not full.exists():
                raise InvalidTarget(path, "path does not exist")
            if not full.is_dir():
                raise InvalidTarget(path, "path is not a directory")
            if full not in resolved:
                resolved.append(full)

        return WatchTarget(
            paths=tuple(resolved),
            ignore_patterns=self.ignore_patterns,
            recursive=self.recursive,
        )

    def missing_paths(self) -> list[Path]:
        """Paths that no longer exist as directories."""
        return [p for p in self.paths if not p.is_dir()]

    def relative_to_root(self, path: Path | str) -> PurePath | None:
        """Path relative to the watched root that contains it, if any."""
        candidate = Path(path)
        for root in self.paths:
            if candidate == root or candidate.is_relative_to(root):
                return candidate.relative_to(root)
        return None

    def is_ignored(self, path: Path | str) -> bool:
        """Check if a path matches any ignore pattern."""
        if not self.ignore_patterns:
            return False

        relative = self.relative_to_root(path)
        if relative is None:
            relative = PurePath(path)

        rel_str = relative.as_posix()
        for pattern in self.ignore_patterns:
            if fnmatch.fnmatch(rel_str, pattern):
                return True
            if any(fnmatch.fnmatch(part, pattern) for part in relative.parts):
                return True
        return False
