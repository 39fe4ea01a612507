"""
WatchRun Command Line Interface.

Watches a directory tree and re-runs a sequence of commands on change.
Requires Python 3.11+.

Usage:
    watchrun --path src --debounce 300 -- cargo check -- cargo doc --no-deps
    watchrun -x "cargo check" -x "cargo doc"
"""

import argparse
import signal
import sys
from pathlib import Path

from pydantic import ValidationError

from runner.loop import WatchRunLoop
from runner.models import Command, CommandSequence, RunStatus
from runner.run_instance import RunInstance
from utils.config import LoggingSettings, RunnerSettings, WatcherSettings, get_settings
from utils.errors import CancelledRun, CommandFailure, InvalidTarget, WatchError
from utils.logger import configure_logging, get_logger
from watcher.file_watcher import FileWatcher
from watcher.models import WatchTarget

logger = get_logger("cli")

EXIT_OK = 0
EXIT_FAILURE = 1


def split_command_segments(argv: list[str]) -> tuple[list[str], list[list[str]]]:
    """
    Split the raw arguments at ``--`` separators.

    Everything before the first ``--`` is options; each following
    ``--`` starts a new command.

    Returns:
        Tuple of (option arguments, command token lists)
    """
    if "--" not in argv:
        return list(argv), []

    index = argv.index("--")
    options = argv[:index]
    segments: list[list[str]] = [[]]
    for token in argv[index + 1:]:
        if token == "--":
            segments.append([])
        else:
            segments[-1].append(token)
    return options, [segment for segment in segments if segment]


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="watchrun",
        description="Watch a directory tree and re-run commands when files change",
        usage="%(prog)s [options] [-x CMD]... -- CMD1 [-- CMD2 ...]",
    )
    parser.add_argument(
        "--path",
        dest="paths",
        type=Path,
        action="append",
        default=None,
        help="Directory to watch (repeatable, default: current directory)",
    )
    parser.add_argument(
        "--ignore",
        action="append",
        default=[],
        metavar="GLOB",
        help="Ignore paths matching this glob (repeatable)",
    )
    parser.add_argument(
        "--no-default-ignore",
        action="store_true",
        help="Do not ignore VCS metadata, build output and editor temp files",
    )
    parser.add_argument(
        "--debounce",
        type=int,
        default=None,
        metavar="MS",
        help="Quiet period in milliseconds before re-running (default: 500)",
    )
    parser.add_argument(
        "-x",
        "--exec",
        dest="exec_commands",
        action="append",
        default=[],
        metavar="CMD",
        help="Shell command to run, before any commands given after -- (repeatable)",
    )
    parser.add_argument(
        "--continue-on-error",
        action="store_true",
        default=None,
        help="Keep running later commands after one fails",
    )
    parser.add_argument(
        "--no-initial-run",
        dest="initial_run",
        action="store_false",
        default=None,
        help="Wait for the first change instead of running at startup",
    )
    parser.add_argument(
        "--clear",
        dest="clear_screen",
        action="store_true",
        default=None,
        help="Clear the terminal before each run",
    )
    parser.add_argument(
        "--poll",
        dest="use_polling",
        action="store_true",
        default=None,
        help="Poll file stats instead of using OS notifications",
    )
    parser.add_argument(
        "--no-recursive",
        dest="recursive",
        action="store_false",
        default=None,
        help="Watch only the top level of each path",
    )
    parser.add_argument(
        "--grace",
        dest="terminate_timeout",
        type=float,
        default=None,
        metavar="SECONDS",
        help="Seconds between SIGTERM and SIGKILL when cancelling a run (default: 2)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run the commands once without watching and exit with their status",
    )
    parser.add_argument(
        "--color",
        choices=["auto", "always", "never"],
        default="auto",
        help="Color diagnostic output",
    )
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Only warnings and errors")
    return parser


def _overrides(args: argparse.Namespace, *names: str) -> dict:
    """Collect CLI values that were given explicitly."""
    values = {}
    for name in names:
        value = getattr(args, name)
        if value is not None:
            values[name] = value
    return values


def load_settings(
    parser: argparse.ArgumentParser, args: argparse.Namespace
) -> tuple[WatcherSettings, RunnerSettings, LoggingSettings]:
    """
    Merge command line flags over environment settings.

    Invalid values, whether from flags or the environment, end the
    program through ``parser.error``.
    """
    watcher_values = _overrides(args, "recursive", "use_polling")
    if args.debounce is not None:
        watcher_values["debounce_delay_ms"] = args.debounce

    logging_values: dict = {}
    if args.verbose:
        logging_values["level"] = "DEBUG"
    elif args.quiet:
        logging_values["level"] = "WARNING"
    if args.color != "auto":
        logging_values["colors"] = args.color == "always"

    try:
        settings = get_settings()
        ignore = [] if args.no_default_ignore else list(settings.watcher.ignore_patterns)
        watcher_values["ignore_patterns"] = ignore + list(args.ignore)

        watcher = WatcherSettings(**watcher_values)
        runner = RunnerSettings(
            **_overrides(
                args, "continue_on_error", "initial_run", "clear_screen", "terminate_timeout"
            )
        )
        log_settings = LoggingSettings(**logging_values)
    except ValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        parser.error(f"invalid setting: {errors}")

    return watcher, runner, log_settings


def build_sequence(
    parser: argparse.ArgumentParser,
    args: argparse.Namespace,
    segments: list[list[str]],
    runner: RunnerSettings,
) -> CommandSequence:
    """Collect -x commands and -- segments into one sequence."""
    commands = [Command(text) for text in args.exec_commands]
    commands.extend(Command.from_argv(segment) for segment in segments)
    if not commands:
        parser.error("no command given; pass commands after -- or with -x")
    try:
        return CommandSequence(tuple(commands), continue_on_error=runner.continue_on_error)
    except ValueError as e:
        parser.error(str(e))


def _interrupt(signum, frame) -> None:
    raise KeyboardInterrupt


def run_once(commands: CommandSequence, runner: RunnerSettings) -> int:
    """Execute the sequence a single time."""
    instance = RunInstance(
        run_id=1,
        commands=commands,
        terminate_timeout=runner.terminate_timeout,
    )
    # SIGTERM cancels the run the same way Ctrl+C does
    previous = signal.signal(signal.SIGTERM, _interrupt)
    try:
        result = instance.wait(interval=runner.poll_interval)
    except CommandFailure as e:
        logger.error("command_failed", command=e.command, exit_code=e.exit_code)
        return EXIT_FAILURE
    except CancelledRun as e:
        logger.info("run_cancelled", run_id=e.run_id, reason=e.reason)
        return EXIT_OK
    finally:
        signal.signal(signal.SIGTERM, previous)

    if result.status == RunStatus.FAILED:
        for failure in result.failures:
            logger.error("command_failed", command=failure.command, exit_code=failure.exit_code)
        return EXIT_FAILURE
    return EXIT_OK


def watch(
    commands: CommandSequence,
    paths: list[Path],
    watcher_settings: WatcherSettings,
    runner: RunnerSettings,
) -> int:
    """Watch the paths and run the sequence on every change until interrupted."""
    try:
        target = WatchTarget.create(
            paths,
            ignore_patterns=watcher_settings.ignore_patterns,
            recursive=watcher_settings.recursive,
        )
    except InvalidTarget as e:
        logger.error("invalid_target", path=str(e.path), reason=e.reason)
        return EXIT_FAILURE

    watcher = FileWatcher(target, use_polling=watcher_settings.use_polling)
    loop = WatchRunLoop(
        watcher=watcher,
        commands=commands,
        debounce_ms=watcher_settings.debounce_delay_ms,
        initial_run=runner.initial_run,
        clear_screen=runner.clear_screen,
        terminate_timeout=runner.terminate_timeout,
        poll_interval=runner.poll_interval,
        health_check_interval=watcher_settings.health_check_interval,
        max_watch_retries=watcher_settings.max_watch_retries,
        watch_retry_delay=watcher_settings.watch_retry_delay,
    )

    previous = signal.signal(signal.SIGTERM, lambda signum, frame: loop.stop())
    try:
        loop.run()
    except KeyboardInterrupt:
        logger.info("interrupted")
    except WatchError as e:
        logger.error("watch_failed", error=str(e), attempts=e.attempts)
        return EXIT_FAILURE
    finally:
        signal.signal(signal.SIGTERM, previous)
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    if argv is None:
        argv = sys.argv[1:]

    options, segments = split_command_segments(argv)
    parser = build_parser()
    args = parser.parse_args(options)

    watcher_settings, runner, log_settings = load_settings(parser, args)
    configure_logging(log_settings)
    commands = build_sequence(parser, args, segments, runner)

    if args.once:
        return run_once(commands, runner)
    return watch(commands, args.paths or [Path.cwd()], watcher_settings, runner)


if __name__ == "__main__":
    sys.exit(main())
