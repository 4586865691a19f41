"""RsyncGUI command-line entry point.

Configures logging, loads settings and a job definition, runs the job
through :class:`~rsyncgui.executor.RsyncExecutor` and records the result.

Usage::

    python main.py job.json [--dry-run] [--check] [--config-dir DIR] [--no-history] [-v]
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path

from rsyncgui.access import KeyringAccessProvider
from rsyncgui.config import ConfigManager
from rsyncgui.connection import check_connection
from rsyncgui.delta import generate_delta_report
from rsyncgui.errors import ExecutionFailedError, JobConfigError, RsyncError
from rsyncgui.executor import RsyncExecutor
from rsyncgui.history import HistoryStore
from rsyncgui.models import (
    DestinationKind,
    ExecutionResult,
    ExecutionStatus,
    JobConfig,
    ProgressSnapshot,
)
from rsyncgui.utils.path_helpers import format_duration, human_readable_size

_LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s - %(message)s"
_DATE_FORMAT = "%H:%M:%S"

EXIT_CODES = {
    ExecutionStatus.SUCCESS: 0,
    ExecutionStatus.PARTIAL_SUCCESS: 23,
    ExecutionStatus.FAILED: 1,
    ExecutionStatus.CANCELLED: 130,
}
EXIT_PRECONDITION = 2

log = logging.getLogger("rsyncgui.cli")


def _configure_logging(verbose: bool = False) -> None:
    """Set up root logging to stderr."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=_LOG_FORMAT,
        datefmt=_DATE_FORMAT,
        stream=sys.stderr,
    )
    # Quieten noisy third-party loggers
    logging.getLogger("paramiko").setLevel(logging.WARNING)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run an rsync job definition.")
    parser.add_argument("job", type=Path, help="Path to the job JSON file")
    parser.add_argument("--dry-run", action="store_true", help="Show what would change")
    parser.add_argument("--config-dir", type=Path, default=None, help="Settings directory")
    parser.add_argument("--no-history", action="store_true", help="Do not record the run")
    parser.add_argument(
        "--check",
        action="store_true",
        help="Test the remote destination instead of running the job",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


def load_job(path: Path) -> JobConfig:
    """Read a job definition from *path*.

    Raises:
        JobConfigError: The file is not a valid job definition.
        OSError: The file cannot be read.
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise JobConfigError(f"{path} is not valid JSON: {exc}") from exc
    return JobConfig.from_dict(data)


def _log_progress(snapshot: ProgressSnapshot) -> None:
    if snapshot.files_total:
        log.info(
            "%5.1f%%  %d/%d files  %s  eta %s  %s",
            snapshot.overall_percentage,
            snapshot.files_completed,
            snapshot.files_total,
            snapshot.speed_formatted,
            snapshot.time_remaining_formatted,
            snapshot.current_file,
        )
    elif snapshot.current_file:
        log.debug("Sending %s", snapshot.current_file)


def _run_check(job: JobConfig, timeout: float) -> int:
    """Run the remote pre-flight checks for *job* and print them."""
    if job.destination_kind is not DestinationKind.REMOTE_SSH or job.remote is None:
        log.error("Job %r has no remote destination to check", job.name)
        return EXIT_PRECONDITION
    outcome = check_connection(job.remote, job.destination, timeout=timeout)
    for check in outcome.checks:
        mark = "ok" if check.passed else "FAIL"
        print(f"[{mark:>4}] {check.name}: {check.message}")
    print(outcome.summary)
    return 0 if outcome.overall_success else 1


def _sigint_handler(executor: RsyncExecutor):
    """Return a SIGINT handler that cancels *executor* off the signal frame.

    The handler runs on the main thread, which may be interrupted while it
    holds the executor's lock, so ``cancel()`` goes to a worker thread.
    """

    def handler(signum, frame) -> None:
        threading.Thread(target=executor.cancel, name="sigint-cancel", daemon=True).start()

    return handler


def _print_summary(job: JobConfig, result: ExecutionResult) -> None:
    print(f"Job:      {job.name}")
    print(f"Status:   {result.status.value}")
    print(f"Files:    {result.files_transferred}")
    print(f"Size:     {human_readable_size(result.bytes_transferred)}")
    print(f"Duration: {format_duration(result.duration)}")
    if "-i" in job.options.to_arguments():
        print(f"Changes:  {generate_delta_report(result.output, job.id).summary}")
    for error in result.errors:
        print(f"Error:    {error.strip()}", file=sys.stderr)


def main(argv: list[str] | None = None) -> int:
    """Bootstrap the engine and run one job."""
    args = _parse_args(argv)
    _configure_logging(args.verbose)

    config = ConfigManager(base_dir=args.config_dir)
    try:
        job = load_job(args.job)
    except (RsyncError, OSError) as exc:
        log.error("Could not load job: %s", exc)
        return EXIT_PRECONDITION

    if args.check:
        return _run_check(job, config.get_float("ssh_timeout"))

    executor = RsyncExecutor(
        rsync_path=config.get("rsync_path"),
        access_provider=KeyringAccessProvider(config.get("keyring_service")),
        kill_timeout=config.get_float("kill_timeout"),
        detach_timeout=config.get_float("detach_timeout"),
        hook_timeout=config.get_float("hook_timeout"),
    )
    executor.subscribe(_log_progress)
    signal.signal(signal.SIGINT, _sigint_handler(executor))

    try:
        result = executor.execute(job, dry_run=args.dry_run)
    except ExecutionFailedError as exc:
        log.error("%s", exc)
        if exc.result is None:
            return EXIT_PRECONDITION
        result = exc.result
    except RsyncError as exc:
        log.error("Job %r could not start: %s", job.name, exc)
        return EXIT_PRECONDITION
    finally:
        executor.shutdown()

    if not args.no_history:
        history = HistoryStore(config.base_dir, max_entries=int(config.get("history_limit")))
        history.add(result, job.name)

    _print_summary(job, result)
    return EXIT_CODES[result.status]


if __name__ == "__main__":
    sys.exit(main())
