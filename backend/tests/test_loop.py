"""
Tests for the Watch-Run Loop.

Requires Python 3.11+.
"""

import shutil
import threading
import time
from pathlib import Path

import pytest

from runner.loop import LoopState, WatchRunLoop
from runner.models import CommandSequence, RunStatus
from utils.errors import WatchError
from watcher.file_watcher import FileWatcher
from watcher.models import ChangeType, WatchTarget

SLEEP_CODE = "import time; time.sleep(30)"


def wait_until_idle(loop: WatchRunLoop, timeout: float = 10.0) -> None:
    """Step the loop until no run is active."""
    deadline = time.monotonic() + timeout
    while loop.current is not None and time.monotonic() < deadline:
        loop.step(timeout=0.02)
    assert loop.current is None


class LoopThread(threading.Thread):
    """Runs a loop in the background and keeps its exception."""

    def __init__(self, loop: WatchRunLoop) -> None:
        super().__init__(daemon=True)
        self.loop = loop
        self.error: BaseException | None = None

    def run(self) -> None:
        try:
            self.loop.run()
        except BaseException as e:
            self.error = e


class TestLoopTriggering:
    """Debounce and trigger behaviour with a fake clock."""

    @pytest.fixture
    def make_loop(self, stub_watcher, clock, py_command):
        """Factory for loops over the stub watcher."""
        loops: list[WatchRunLoop] = []

        def make(*codes: str, **kwargs) -> WatchRunLoop:
            kwargs.setdefault("debounce_ms", 200)
            kwargs.setdefault("initial_run", False)
            loop = WatchRunLoop(
                watcher=stub_watcher,
                commands=CommandSequence.of(*(py_command(code) for code in codes)),
                clock=clock,
                sleep=lambda seconds: None,
                **kwargs,
            )
            loops.append(loop)
            return loop

        yield make
        for loop in loops:
            loop.shutdown()

    def test_burst_triggers_exactly_once(self, make_loop, stub_watcher, clock):
        """Writes 50ms apart inside one window start a single run after the last."""
        loop = make_loop("pass")
        assert loop.state == LoopState.IDLE

        stub_watcher.push("/p/a.rs")
        loop.step(timeout=0)
        assert loop.state == LoopState.DEBOUNCING

        clock.advance(0.05)
        stub_watcher.push("/p/b.rs")
        loop.step(timeout=0)

        clock.advance(0.15)
        loop.step(timeout=0)
        assert loop.run_count == 0

        clock.advance(0.06)
        loop.step(timeout=0)
        assert loop.run_count == 1
        assert loop.current is not None
        assert {p for p, _ in loop.current.changes} == {Path("/p/a.rs"), Path("/p/b.rs")}

        wait_until_idle(loop)
        clock.advance(5)
        loop.step(timeout=0)
        assert loop.run_count == 1
        assert loop.state == LoopState.IDLE

    def test_newer_trigger_supersedes_running(self, make_loop, stub_watcher, clock):
        """The older run is cancelled before the newer one starts."""
        loop = make_loop(SLEEP_CODE, terminate_timeout=5.0)

        stub_watcher.push("/p/a.rs")
        loop.step(timeout=0)
        clock.advance(0.3)
        loop.step(timeout=0)
        first = loop.current
        assert first is not None and first.status == RunStatus.RUNNING
        first_process = first.process

        stub_watcher.push("/p/a.rs")
        loop.step(timeout=0)
        # Still debouncing; the first run keeps going
        assert first.status == RunStatus.RUNNING

        clock.advance(0.3)
        loop.step(timeout=0)
        second = loop.current

        assert loop.run_count == 2
        assert second is not first
        assert first.status == RunStatus.CANCELLED
        assert first_process.returncode is not None
        assert second.status == RunStatus.RUNNING
        assert first.result.finished_at <= second.result.started_at

    def test_failure_aborts_and_loop_continues(self, make_loop, stub_watcher, clock, tmp_path: Path):
        """A failing command skips the rest, then the next change runs again."""
        marker = tmp_path / "second.txt"
        loop = make_loop(
            "import sys; sys.exit(1)",
            f"import pathlib; pathlib.Path({str(marker)!r}).write_text('x')",
        )

        stub_watcher.push("/p/a.rs")
        loop.step(timeout=0)
        clock.advance(0.3)
        loop.step(timeout=0)
        failed = loop.current
        wait_until_idle(loop)

        assert failed.status == RunStatus.FAILED
        assert failed.result.failures[0].exit_code == 1
        assert not marker.exists()
        assert loop.state == LoopState.IDLE

        stub_watcher.push("/p/a.rs")
        loop.step(timeout=0)
        clock.advance(0.3)
        loop.step(timeout=0)
        assert loop.run_count == 2

    def test_clear_screen_before_run(self, make_loop, stub_watcher, clock, capsys):
        """The terminal is cleared when a run starts."""
        loop = make_loop("pass", clear_screen=True)
        stub_watcher.push("/p/a.rs")
        loop.step(timeout=0)
        clock.advance(0.3)
        loop.step(timeout=0)

        assert "\033[2J" in capsys.readouterr().out


class TestWatchRecovery:
    """Re-establishing a broken watch."""

    def make_loop(self, stub_watcher, clock, sleeps: list[float], retries: int = 3) -> WatchRunLoop:
        return WatchRunLoop(
            watcher=stub_watcher,
            commands=CommandSequence.of("true"),
            initial_run=False,
            max_watch_retries=retries,
            watch_retry_delay=0.5,
            clock=clock,
            sleep=sleeps.append,
        )

    def test_gives_up_after_retries(self, stub_watcher, clock):
        """An unrecoverable watch raises WatchError after N attempts."""
        sleeps: list[float] = []
        loop = self.make_loop(stub_watcher, clock, sleeps)
        stub_watcher.health = "watch path removed: /p"

        with pytest.raises(WatchError) as exc_info:
            loop.step(timeout=0)

        assert stub_watcher.restart_calls == 3
        assert exc_info.value.attempts == 3
        assert sleeps == [0.5, 1.0, 2.0]

    def test_recovers_when_restart_succeeds(self, stub_watcher, clock):
        """A later successful attempt keeps the loop running."""
        sleeps: list[float] = []
        loop = self.make_loop(stub_watcher, clock, sleeps)
        stub_watcher.health = "observer stopped unexpectedly"
        stub_watcher.restart_results = [WatchError("busy"), None]

        loop.step(timeout=0)

        assert stub_watcher.restart_calls == 2
        assert stub_watcher.health_error() is None
        assert loop.state == LoopState.IDLE

    def test_run_stops_watcher_on_fatal_error(self, stub_watcher, clock):
        """run() cleans up before propagating WatchError."""
        loop = self.make_loop(stub_watcher, clock, [], retries=1)
        stub_watcher.health = "watch path removed: /p"

        with pytest.raises(WatchError):
            loop.run()

        assert stub_watcher.started
        assert stub_watcher.stopped
        assert loop.state == LoopState.STOPPED

    def test_removed_root_fails_before_triggering(self, stub_watcher, clock):
        """Deletions that fall due re-check the watch before a run starts."""
        loop = WatchRunLoop(
            watcher=stub_watcher,
            commands=CommandSequence.of("true"),
            debounce_ms=100,
            initial_run=False,
            health_check_interval=60.0,
            max_watch_retries=1,
            watch_retry_delay=0.5,
            clock=clock,
            sleep=lambda seconds: None,
        )
        loop.step(timeout=0)

        stub_watcher.push("/p/src/a.rs", ChangeType.DELETED)
        loop.step(timeout=0)
        stub_watcher.health = "watch path removed: /p"
        clock.advance(0.2)

        with pytest.raises(WatchError):
            loop.step(timeout=0)

        assert loop.run_count == 0
        assert loop.current is None


class TestLoopEndToEnd:
    """The loop against the real file system and real time."""

    def test_no_changes_runs_only_initial(self, watch_dir: Path, tmp_path: Path, py_command):
        """Without changes the sequence runs once and never re-triggers."""
        counter = tmp_path / "count.txt"
        code = (
            "import pathlib; "
            f"p = pathlib.Path({str(counter)!r}); "
            "p.write_text(str(int(p.read_text()) + 1) if p.exists() else '1')"
        )
        watcher = FileWatcher(WatchTarget.create([watch_dir]))
        loop = WatchRunLoop(watcher, CommandSequence.of(py_command(code)), debounce_ms=100)

        thread = LoopThread(loop)
        thread.start()
        time.sleep(1.5)
        loop.stop()
        thread.join(timeout=10)

        assert thread.error is None
        assert loop.run_count == 1
        assert counter.read_text() == "1"

    def test_two_quick_writes_trigger_one_run(self, watch_dir: Path, py_command):
        """Writes 50ms apart with a 200ms window start one run."""
        target = WatchTarget.create([watch_dir])
        loop = WatchRunLoop(
            FileWatcher(target),
            CommandSequence.of(py_command("pass")),
            debounce_ms=200,
            initial_run=False,
        )

        thread = LoopThread(loop)
        thread.start()
        time.sleep(0.3)
        (target.paths[0] / "src" / "a.rs").write_text("a")
        time.sleep(0.05)
        (target.paths[0] / "src" / "b.rs").write_text("b")
        time.sleep(1.5)
        loop.stop()
        thread.join(timeout=10)

        assert thread.error is None
        assert loop.run_count == 1

    def test_deleted_root_exits_with_watch_error(self, watch_dir: Path):
        """Removing the watched directory ends the loop after retries."""
        loop = WatchRunLoop(
            FileWatcher(WatchTarget.create([watch_dir]), use_polling=True),
            CommandSequence.of("true"),
            initial_run=False,
            health_check_interval=0.05,
            max_watch_retries=2,
            watch_retry_delay=0.01,
        )

        thread = LoopThread(loop)
        thread.start()
        time.sleep(0.2)
        shutil.rmtree(watch_dir)
        thread.join(timeout=10)

        assert not thread.is_alive()
        assert isinstance(thread.error, WatchError)
        assert thread.error.attempts == 2
