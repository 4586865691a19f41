"""Translate a :class:`~rsyncgui.models.JobConfig` into an rsync invocation."""

from __future__ import annotations

import logging

from rsyncgui.errors import JobConfigError
from rsyncgui.models import DestinationKind, JobConfig
from rsyncgui.utils.path_helpers import expand_home, has_trailing_separator

logger = logging.getLogger(__name__)

DEFAULT_RSYNC_PATH = "/usr/bin/rsync"


def ssh_command(job: JobConfig) -> str:
    """Return the remote-shell string passed to rsync's ``-e``."""
    parts = ["ssh"]
    if job.remote is not None:
        if job.remote.port:
            parts.append(f"-p {job.remote.port}")
        if job.remote.key_path:
            parts.append(f"-i {expand_home(job.remote.key_path)}")
    return " ".join(parts)


def remote_destination(job: JobConfig) -> str:
    """Return ``user@host:path``, leaving an already-prefixed path alone."""
    if job.remote is None:
        raise JobConfigError(f"Job {job.name!r} has no remote settings")
    prefix = job.remote.prefix
    if job.destination.startswith(prefix):
        return job.destination
    return f"{prefix}{job.destination}"


def local_destination(job: JobConfig, sources: list[str]) -> str:
    """Return the expanded local destination.

    When a source ends with a separator (copy the directory's *contents*),
    the destination gets one too so rsync merges into it rather than creating
    a nested directory.
    """
    destination = expand_home(job.destination)
    if any(has_trailing_separator(s) for s in sources) and not has_trailing_separator(destination):
        destination += "/"
    return destination


def build_command(
    job: JobConfig,
    dry_run: bool = False,
    rsync_path: str = DEFAULT_RSYNC_PATH,
) -> tuple[str, list[str]]:
    """Build the executable path and argument vector for *job*.

    Pure: *job* and its options are not modified.

    Args:
        job: The job to run.
        dry_run: Add ``-n`` on top of the job's own options.
        rsync_path: rsync binary to invoke.

    Returns:
        ``(executable, args)`` where *args* excludes the executable itself.
        Options come first, then the remote shell (remote jobs only), then
        sources and destination.
    """
    options = job.options.with_dry_run() if dry_run else job.options
    args = options.to_arguments()

    sources = [expand_home(s) for s in job.sources]

    if job.destination_kind is DestinationKind.REMOTE_SSH:
        args += ["-e", ssh_command(job)]
        destination = remote_destination(job)
    else:
        destination = local_destination(job, sources)

    args += sources
    args.append(destination)

    logger.debug("Built rsync command: %s %s", rsync_path, " ".join(args))
    return rsync_path, args
