"""
WatchRun Control Loop.

Single-writer loop that debounces file events, triggers runs and
supersedes runs that are still active.
Requires Python 3.11+.
"""

import sys
import threading
import time
from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import Protocol

from runner.models import CommandSequence, RunStatus
from runner.run_instance import RunInstance
from utils.errors import CancelledRun, CommandFailure, WatchError
from utils.logger import LoggerMixin
from watcher.debouncer import Debouncer
from watcher.models import ChangeType, WatchEvent

CLEAR_SCREEN = "\033[2J\033[3J\033[H"


class LoopState(str, Enum):
    """States of the watch-run loop."""

    IDLE = "idle"
    DEBOUNCING = "debouncing"
    RUNNING = "running"
    STOPPED = "stopped"


class EventSource(Protocol):
    """What the loop needs from a file watcher."""

    def start(self) -> None: ...

    def stop(self) -> None: ...

    def restart(self) -> None: ...

    def health_error(self) -> str | None: ...

    def get_event(self, timeout: float | None) -> WatchEvent | None: ...


class WatchRunLoop(LoggerMixin):
    """
    Drives the Idle -> Debouncing -> Running cycle.

    File events arrive on the watcher's queue from the observer thread.
    Everything else happens on the thread that calls ``run()``: the
    debouncer, the health check and the single ``current`` run slot.
    A trigger cancels the current run before the next one starts, so
    two runs never overlap.
    """

    def __init__(
        self,
        watcher: EventSource,
        commands: CommandSequence,
        debounce_ms: int = 500,
        initial_run: bool = True,
        clear_screen: bool = False,
        terminate_timeout: float = 2.0,
        poll_interval: float = 0.05,
        health_check_interval: float = 0.5,
        max_watch_retries: int = 3,
        watch_retry_delay: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Initialize the loop.

        Args:
            watcher: Source of filtered file events
            commands: Immutable sequence run on every trigger
            debounce_ms: Quiet period before a burst of events triggers a run
            initial_run: Run the sequence once at startup
            clear_screen: Clear the terminal before each run
            terminate_timeout: Grace period between SIGTERM and SIGKILL
            poll_interval: How often a running command is checked
            health_check_interval: How often the watch is checked while idle
            max_watch_retries: Attempts to re-establish a broken watch
            watch_retry_delay: Initial backoff between attempts, doubled each time
            clock: Monotonic time source
            sleep: Sleep function used for retry backoff
        """
        self._watcher = watcher
        self._commands = commands
        self._debouncer = Debouncer(delay_ms=debounce_ms, clock=clock)
        self._initial_run = initial_run
        self._clear_screen = clear_screen
        self._terminate_timeout = terminate_timeout
        self._poll_interval = poll_interval
        self._health_check_interval = health_check_interval
        self._max_watch_retries = max_watch_retries
        self._watch_retry_delay = watch_retry_delay
        self._clock = clock
        self._sleep = sleep

        self._current: RunInstance | None = None
        self._run_count = 0
        self._last_health_check = float("-inf")
        self._stop_event = threading.Event()
        self._stopped = False

    @property
    def state(self) -> LoopState:
        """Current state of the loop."""
        if self._stopped:
            return LoopState.STOPPED
        if self._debouncer.pending_count:
            return LoopState.DEBOUNCING
        if self._current is not None:
            return LoopState.RUNNING
        return LoopState.IDLE

    @property
    def current(self) -> RunInstance | None:
        """The active run instance, if any."""
        return self._current

    @property
    def run_count(self) -> int:
        """Number of runs started so far."""
        return self._run_count

    def stop(self) -> None:
        """Ask the loop to exit; safe to call from another thread or a signal handler."""
        self._stop_event.set()

    def run(self) -> None:
        """
        Watch and run until stopped.

        Raises:
            WatchError: If the watch breaks and cannot be re-established
        """
        self._watcher.start()
        self._stopped = False
        self.log.info(
            "watch_run_started",
            commands=[c.text for c in self._commands],
            debounce_ms=round(self._debouncer.delay * 1000),
        )
        try:
            if self._initial_run:
                self._trigger([])
            while not self._stop_event.is_set():
                self.step()
        finally:
            self.shutdown()

    def step(self, timeout: float | None = None) -> None:
        """
        Run one iteration of the loop.

        Waits for file events up to ``timeout`` (or a computed wait),
        checks the watch, fires a due trigger and advances the current run.

        Raises:
            WatchError: If the watch breaks and cannot be re-established
        """
        if timeout is None:
            timeout = self._next_wait()
        self._collect_events(timeout)

        due = self._debouncer.is_due()
        # A removed root must fail the watch before it can trigger a run
        self._check_watch(
            force=due and self._debouncer.has_pending(ChangeType.DELETED, ChangeType.MOVED)
        )

        if due:
            changes = self._debouncer.drain()
            if changes:
                self._trigger(changes)

        self._poll_current()

    def shutdown(self) -> None:
        """Cancel any active run and stop watching."""
        if self._stopped:
            return
        self._cancel_current("shutdown")
        self._debouncer.clear()
        self._watcher.stop()
        self._stopped = True
        self.log.info("watch_run_stopped", runs=self._run_count)

    def _next_wait(self) -> float:
        waits = [self._health_check_interval]
        if self._current is not None:
            waits.append(self._poll_interval)
        due = self._debouncer.time_until_due()
        if due is not None:
            waits.append(due)
        return min(waits)

    def _collect_events(self, timeout: float) -> None:
        event = self._watcher.get_event(timeout)
        while event is not None:
            self._debouncer.debounce(event.path, event.change_type)
            event = self._watcher.get_event(0)

    def _check_watch(self, force: bool = False) -> None:
        now = self._clock()
        if not force and now - self._last_health_check < self._health_check_interval:
            return
        self._last_health_check = now

        error = self._watcher.health_error()
        if error is None:
            return

        self.log.warning("watch_error", error=error)
        self._reestablish_watch(error)

    def _reestablish_watch(self, error: str) -> None:
        delay = self._watch_retry_delay
        for attempt in range(1, self._max_watch_retries + 1):
            self._sleep(delay)
            delay *= 2  # Exponential backoff
            try:
                self._watcher.restart()
            except WatchError as e:
                error = str(e)
                self.log.warning("watch_retry_failed", attempt=attempt, error=error)
                continue

            if self._watcher.health_error() is None:
                self.log.info("watch_reestablished", attempt=attempt)
                return

        self.log.error("watch_lost", attempts=self._max_watch_retries, error=error)
        raise WatchError(error, attempts=self._max_watch_retries)

    def _trigger(self, changes: list[tuple[Path, ChangeType]]) -> None:
        self._cancel_current("superseded")

        self._run_count += 1
        if changes:
            self.log.info(
                "changes_detected",
                count=len(changes),
                paths=[str(path) for path, _ in changes[:5]],
            )
        if self._clear_screen:
            sys.stdout.write(CLEAR_SCREEN)
            sys.stdout.flush()

        instance = RunInstance(
            run_id=self._run_count,
            commands=self._commands,
            changes=changes,
            terminate_timeout=self._terminate_timeout,
            clock=self._clock,
        )
        self._current = instance
        try:
            instance.start()
        except CommandFailure as e:
            self._report_failure(e)

    def _poll_current(self) -> None:
        instance = self._current
        if instance is None:
            return
        try:
            status = instance.poll()
        except CommandFailure as e:
            self._report_failure(e)
            return
        except CancelledRun:
            self._current = None
            return

        if status.is_finished:
            if status == RunStatus.FAILED:
                # Only reached when continuing past failures
                for failure in instance.result.failures:
                    self.log.error(
                        "command_failed",
                        run_id=failure.run_id,
                        command=failure.command,
                        exit_code=failure.exit_code,
                    )
            self._current = None

    def _report_failure(self, failure: CommandFailure) -> None:
        self.log.error(
            "command_failed",
            run_id=failure.run_id,
            command=failure.command,
            exit_code=failure.exit_code,
            remaining_skipped=True,
        )
        self._current = None

    def _cancel_current(self, reason: str) -> None:
        if self._current is None:
            return
        self._current.cancel(reason=reason)
        self._current = None
