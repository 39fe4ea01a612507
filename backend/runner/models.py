"""
WatchRun Runner Data Models.

Commands, command sequences and run results.
Requires Python 3.11+.
"""

import shlex
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum

from utils.errors import CommandFailure


class RunStatus(str, Enum):
    """Lifecycle of a run instance."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_finished(self) -> bool:
        """Whether the run can no longer change state."""
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)


@dataclass(frozen=True, slots=True)
class Command:
    """A single shell-invocable command."""

    text: str

    @classmethod
    def from_argv(cls, argv: list[str]) -> "Command":
        """
        Build a command from a list of tokens.

        A single token is taken as a complete shell command line, so
        ``"cargo check && cargo doc"`` keeps its shell operators. Several
        tokens are quoted back into one line.
        """
        if not argv:
            raise ValueError("empty command")
        if len(argv) == 1:
            return cls(argv[0])
        return cls(shlex.join(argv))

    def __str__(self) -> str:
        return self.text


@dataclass(frozen=True)
class CommandSequence:
    """
    Ordered, immutable list of commands executed top to bottom.

    With ``continue_on_error`` false a failing command aborts the rest
    of the sequence for that run.
    """

    commands: tuple[Command, ...]
    continue_on_error: bool = False

    def __post_init__(self) -> None:
        if not self.commands:
            raise ValueError("command sequence must contain at least one command")
        if any(not c.text.strip() for c in self.commands):
            raise ValueError("command sequence contains an empty command")

    @classmethod
    def of(cls, *commands: str, continue_on_error: bool = False) -> "CommandSequence":
        """Build a sequence from command strings."""
        return cls(
            commands=tuple(Command(c) for c in commands),
            continue_on_error=continue_on_error,
        )

    def __len__(self) -> int:
        return len(self.commands)

    def __iter__(self) -> Iterator[Command]:
        return iter(self.commands)

    def __getitem__(self, index: int) -> Command:
        return self.commands[index]


@dataclass
class RunResult:
    """Outcome of one run instance."""

    run_id: int
    status: RunStatus = RunStatus.PENDING
    exit_codes: list[int] = field(default_factory=list)
    failures: list[CommandFailure] = field(default_factory=list)
    started_at: float | None = None
    finished_at: float | None = None

    @property
    def duration(self) -> float | None:
        """Wall time in seconds, once finished."""
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at
