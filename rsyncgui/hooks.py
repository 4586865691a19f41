"""Pre- and post-sync shell hooks attached to a job."""

from __future__ import annotations

import logging
import subprocess

logger = logging.getLogger(__name__)

HOOK_SHELL = "/bin/bash"
HOOK_PATH = "/usr/local/bin:/usr/bin:/bin:/usr/sbin:/sbin"
DEFAULT_HOOK_TIMEOUT = 300.0


def hook_environment(job_name: str, status: str, files_transferred: int) -> dict[str, str]:
    """Return the environment a hook script runs with."""
    return {
        "JOB_NAME": job_name,
        "JOB_STATUS": status,
        "FILES_TRANSFERRED": str(files_transferred),
        "PATH": HOOK_PATH,
    }


def run_hook(
    script: str,
    job_name: str,
    status: str,
    files_transferred: int = 0,
    timeout: float = DEFAULT_HOOK_TIMEOUT,
) -> int:
    """Run *script* through bash and return its exit code.

    A non-zero exit or a timeout is logged, not raised: hooks are advisory.

    Raises:
        OSError: If the shell itself cannot be launched.
    """
    logger.info("Running %s hook for job %r", status, job_name)
    try:
        completed = subprocess.run(
            [HOOK_SHELL, "-c", script],
            env=hook_environment(job_name, status, files_transferred),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired:
        logger.warning("Hook for job %r timed out after %.0fs", job_name, timeout)
        return -1

    if completed.returncode != 0:
        output = completed.stdout.decode("utf-8", errors="replace").strip()
        logger.warning(
            "Hook for job %r failed with exit code %d: %s",
            job_name,
            completed.returncode,
            output,
        )
    return completed.returncode
