"""
WatchRun Runner Package.

Command sequences, run instances and the watch-run control loop.
Requires Python 3.11+.
"""

from runner.models import Command, CommandSequence, RunResult, RunStatus
from runner.run_instance import RunInstance
from runner.loop import LoopState, WatchRunLoop

__all__ = [
    # Data classes
    "Command",
    "CommandSequence",
    "RunResult",
    "RunStatus",
    # Execution
    "RunInstance",
    "LoopState",
    "WatchRunLoop",
]
