"""
WatchRun Test Configuration.

Pytest fixtures and configuration.
Requires Python 3.11+.
"""

import queue
import shlex
import sys
from collections.abc import Callable, Generator
from pathlib import Path

import pytest
import structlog

from utils.config import get_settings
from utils.errors import WatchError
from watcher.models import ChangeType, WatchEvent


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StubWatcher:
    """In-memory event source with scriptable health and restart behaviour."""

    def __init__(self) -> None:
        self.events: queue.Queue[WatchEvent] = queue.Queue()
        self.health: str | None = None
        self.restart_results: list[Exception | None] = []
        self.restart_calls = 0
        self.started = False
        self.stopped = False

    def push(self, path: str, change_type: ChangeType = ChangeType.MODIFIED) -> None:
        self.events.put(WatchEvent(path=Path(path), change_type=change_type))

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True

    def restart(self) -> None:
        self.restart_calls += 1
        outcome = self.restart_results.pop(0) if self.restart_results else WatchError("still broken")
        if outcome is not None:
            raise outcome
        self.health = None

    def health_error(self) -> str | None:
        return self.health

    def get_event(self, timeout: float | None) -> WatchEvent | None:
        try:
            if timeout is not None and timeout <= 0:
                return self.events.get_nowait()
            return self.events.get(timeout=timeout)
        except queue.Empty:
            return None


@pytest.fixture(autouse=True)
def fresh_settings() -> Generator[None, None, None]:
    """Drop cached settings so environment changes take effect."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def reset_structlog() -> Generator[None, None, None]:
    """Undo any global structlog configuration a test installed."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def clock() -> FakeClock:
    """A fake monotonic clock."""
    return FakeClock()


@pytest.fixture
def stub_watcher() -> StubWatcher:
    """An in-memory watcher."""
    return StubWatcher()


@pytest.fixture
def py_command() -> Callable[[str], str]:
    """Build a shell command that runs Python code with this interpreter."""

    def make(code: str) -> str:
        return f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}"

    return make


@pytest.fixture
def watch_dir(tmp_path: Path) -> Path:
    """A small project tree to watch."""
    root = tmp_path / "project"
    (root / "src").mkdir(parents=True)
    (root / "src" / "main.rs").write_text("fn main() {}\n")
    (root / ".git").mkdir()
    (root / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
    return root
