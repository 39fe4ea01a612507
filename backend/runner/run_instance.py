"""
WatchRun Run Instance.

One execution of the command sequence, owning at most one live
child process at a time.
Requires Python 3.11+.
"""

import os
import signal
import subprocess
import time
from collections.abc import Callable, Mapping
from pathlib import Path

from runner.models import Command, CommandSequence, RunResult, RunStatus
from utils.errors import CancelledRun, CommandFailure
from utils.logger import LoggerMixin
from watcher.models import ChangeType

# Exit status reported when the shell itself cannot be started
SPAWN_FAILED_EXIT_CODE = 127

# Seconds between checks for survivors in a cancelled process group
GROUP_POLL_INTERVAL = 0.02


class RunInstance(LoggerMixin):
    """
    Executes a command sequence step by step without blocking.

    ``poll()`` advances the sequence when the current command has
    exited, so the control loop can keep reading file events while
    commands run. Each command starts in its own process group and
    inherits the terminal's stdout/stderr, which forwards output live.
    """

    def __init__(
        self,
        run_id: int,
        commands: CommandSequence,
        changes: list[tuple[Path, ChangeType]] | None = None,
        terminate_timeout: float = 2.0,
        env: Mapping[str, str] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the run instance.

        Args:
            run_id: Increasing identifier of this run
            commands: Sequence to execute
            changes: Changes that triggered the run, empty for the initial run
            terminate_timeout: Seconds to wait after SIGTERM before SIGKILL
            env: Base environment for the commands, defaults to os.environ
            clock: Monotonic time source
        """
        self._run_id = run_id
        self._commands = commands
        self._changes = list(changes or [])
        self._terminate_timeout = terminate_timeout
        self._clock = clock
        self._index = -1
        self._process: subprocess.Popen[bytes] | None = None
        self._result = RunResult(run_id=run_id)

        base_env = dict(os.environ if env is None else env)
        base_env["WATCHRUN_RUN_ID"] = str(run_id)
        base_env["WATCHRUN_CHANGED_PATHS"] = os.pathsep.join(
            str(path) for path, _ in self._changes
        )
        self._env = base_env

    @property
    def run_id(self) -> int:
        """Identifier of this run."""
        return self._run_id

    @property
    def status(self) -> RunStatus:
        """Current status."""
        return self._result.status

    @property
    def result(self) -> RunResult:
        """Result record, complete once the run has finished."""
        return self._result

    @property
    def changes(self) -> list[tuple[Path, ChangeType]]:
        """Changes that triggered this run."""
        return list(self._changes)

    @property
    def current_command(self) -> Command | None:
        """The command currently executing, if any."""
        if self._result.status != RunStatus.RUNNING:
            return None
        return self._commands[self._index]

    @property
    def process(self) -> subprocess.Popen[bytes] | None:
        """Handle of the live child process, if any."""
        return self._process

    def start(self) -> None:
        """
        Start the first command.

        Raises:
            CommandFailure: If the first command cannot be spawned and
                the sequence aborts on failure
        """
        if self._result.status != RunStatus.PENDING:
            return

        self._result.status = RunStatus.RUNNING
        self._result.started_at = self._clock()
        self.log.info(
            "run_started",
            run_id=self._run_id,
            commands=len(self._commands),
            changes=len(self._changes),
        )
        self._advance()

    def poll(self) -> RunStatus:
        """
        Check the current command and move on when it has exited.

        Returns:
            Status after this check

        Raises:
            CommandFailure: When a command exits non-zero and the
                sequence aborts on failure
            CancelledRun: When polling a run that was cancelled
        """
        status = self._result.status
        if status == RunStatus.CANCELLED:
            raise CancelledRun(self._run_id)
        if status != RunStatus.RUNNING or self._process is None:
            return status

        exit_code = self._process.poll()
        if exit_code is None:
            return RunStatus.RUNNING

        self._process = None
        self._record_exit(exit_code)
        return self._result.status

    def wait(self, interval: float = 0.05) -> RunResult:
        """
        Block until the run finishes.

        Args:
            interval: Polling interval in seconds

        Returns:
            The final result

        Raises:
            CommandFailure: As for ``poll()``
            CancelledRun: If interrupted, after the process group is terminated
        """
        try:
            self.start()
            while not self.poll().is_finished:
                time.sleep(interval)
        except KeyboardInterrupt:
            self.cancel(reason="interrupted")
            raise CancelledRun(self._run_id, "interrupted") from None
        return self._result

    def cancel(self, reason: str = "superseded") -> None:
        """
        Terminate the running command and stop the sequence.

        Sends SIGTERM to the command's process group, waits up to the
        terminate timeout for every member of the group to exit and then
        sends SIGKILL to the group. Returns only after the shell has
        exited.

        Args:
            reason: Short reason for the log entry
        """
        if self._result.status.is_finished:
            return

        process = self._process
        self._process = None
        if process is not None:
            self._terminate(process)

        self._finish(RunStatus.CANCELLED)
        self.log.info("run_cancelled", run_id=self._run_id, reason=reason)

    def _advance(self) -> None:
        """Spawn the next command or finish the run."""
        while True:
            self._index += 1
            if self._index >= len(self._commands):
                status = RunStatus.FAILED if self._result.failures else RunStatus.SUCCEEDED
                self._finish(status)
                return

            command = self._commands[self._index]
            self.log.debug(
                "command_started",
                run_id=self._run_id,
                index=self._index,
                command=command.text,
            )
            try:
                self._process = self._spawn(command)
                return
            except OSError as e:
                self.log.error("command_spawn_failed", command=command.text, error=str(e))
                # Records the failure; raises under abort policy
                self._record_exit(SPAWN_FAILED_EXIT_CODE, advance=False)

    def _record_exit(self, exit_code: int, advance: bool = True) -> None:
        command = self._commands[self._index]
        self._result.exit_codes.append(exit_code)
        self.log.debug(
            "command_finished",
            run_id=self._run_id,
            command=command.text,
            exit_code=exit_code,
        )

        if exit_code != 0:
            failure = CommandFailure(command.text, exit_code, run_id=self._run_id)
            self._result.failures.append(failure)
            if not self._commands.continue_on_error:
                self._finish(RunStatus.FAILED)
                raise failure
            self.log.warning(
                "command_failed_continuing",
                run_id=self._run_id,
                command=command.text,
                exit_code=exit_code,
            )

        if advance:
            self._advance()

    def _finish(self, status: RunStatus) -> None:
        self._result.status = status
        self._result.finished_at = self._clock()
        if status != RunStatus.CANCELLED:
            self.log.info(
                "run_finished",
                run_id=self._run_id,
                status=status.value,
                duration_seconds=round(self._result.duration or 0.0, 3),
            )

    def _spawn(self, command: Command) -> subprocess.Popen[bytes]:
        if os.name == "nt":
            return subprocess.Popen(
                command.text,
                shell=True,
                env=self._env,
                creationflags=subprocess.CREATE_NEW_PROCESS_GROUP,
            )
        return subprocess.Popen(
            command.text,
            shell=True,
            env=self._env,
            start_new_session=True,
        )

    def _terminate(self, process: subprocess.Popen[bytes]) -> None:
        # The shell may exit on SIGTERM while children that ignore it
        # live on, so the whole group has to be gone before we return.
        self._signal_group(process, force=False)
        deadline = time.monotonic() + self._terminate_timeout
        try:
            process.wait(timeout=self._terminate_timeout)
        except subprocess.TimeoutExpired:
            pass

        while self._group_alive(process) and time.monotonic() < deadline:
            time.sleep(GROUP_POLL_INTERVAL)

        if process.poll() is None or self._group_alive(process):
            self.log.warning(
                "run_kill",
                run_id=self._run_id,
                pid=process.pid,
                timeout=self._terminate_timeout,
            )
            self._signal_group(process, force=True)
            process.wait()

    @staticmethod
    def _group_alive(process: subprocess.Popen[bytes]) -> bool:
        if os.name == "nt":
            return process.poll() is None
        try:
            os.killpg(process.pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Only zombies left in the group on some platforms
            return False
        return True

    @staticmethod
    def _signal_group(process: subprocess.Popen[bytes], force: bool) -> None:
        if os.name == "nt":
            if force:
                process.kill()
            else:
                process.terminate()
            return

        sig = signal.SIGKILL if force else signal.SIGTERM
        try:
            # start_new_session makes the shell its own group leader
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            pass
