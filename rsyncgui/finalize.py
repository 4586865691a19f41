"""Turn a terminated rsync process into a frozen :class:`ExecutionResult`.

Finalization reads the *complete* captured output, never the incremental
chunks the progress parser saw, and is pure: the same buffers and exit
condition always produce the same result.
"""

from __future__ import annotations

import logging
import re
import signal
from dataclasses import dataclass, replace
from datetime import datetime

from rsyncgui.models import ExecutionResult, ExecutionStatus
from rsyncgui.utils.path_helpers import parse_size

logger = logging.getLogger(__name__)

# rsync's own exit codes.
EXIT_SUCCESS = 0
EXIT_PARTIAL_TRANSFER = 23

_FILES_RE = re.compile(r"Number of (?:regular )?files transferred:\s*([0-9][0-9,]*)")
_BYTES_RE = re.compile(r"Total transferred file size:[ \t]*(\S+(?:[ \t]+bytes)?)")


@dataclass(frozen=True)
class ExitCondition:
    """How the process ended.

    Attributes:
        returncode: ``Popen.returncode``; negative when killed by a signal.
        cancelled: True when the executor's own ``cancel()`` ended the run.
    """

    returncode: int
    cancelled: bool = False

    @property
    def signal_number(self) -> int | None:
        return -self.returncode if self.returncode < 0 else None

    @property
    def killed_by_foreign_signal(self) -> bool:
        """True when a signal the executor did not send ended the process."""
        return self.signal_number is not None and not self.cancelled


def parse_final_stats(output: str) -> tuple[int, int]:
    """Return ``(files_transferred, bytes_transferred)`` from the ``--stats`` block.

    Both default to 0 when the summary is missing, which happens on most
    early failures.
    """
    files = 0
    total_bytes = 0

    for match in _FILES_RE.finditer(output):
        files = int(match.group(1).replace(",", ""))

    for match in _BYTES_RE.finditer(output):
        total_bytes = parse_size(match.group(1))

    return files, total_bytes


def classify_status(condition: ExitCondition) -> ExecutionStatus:
    """Map an exit condition onto the four terminal statuses."""
    if condition.cancelled:
        return ExecutionStatus.CANCELLED
    if condition.returncode == EXIT_SUCCESS:
        return ExecutionStatus.SUCCESS
    if condition.returncode == EXIT_PARTIAL_TRANSFER:
        return ExecutionStatus.PARTIAL_SUCCESS
    return ExecutionStatus.FAILED


def _signal_name(number: int) -> str:
    try:
        return signal.Signals(number).name
    except ValueError:
        return f"signal {number}"


def finalize(
    placeholder: ExecutionResult,
    stdout: bytes,
    stderr: bytes,
    condition: ExitCondition,
    end_time: datetime,
) -> ExecutionResult:
    """Complete *placeholder* from the captured streams and exit condition.

    Non-empty stderr is always kept in ``errors``, whatever the status: it is
    the only diagnostic rsync gives for its own failures.
    """
    output = stdout.decode("utf-8", errors="replace")
    error_text = stderr.decode("utf-8", errors="replace")

    files, total_bytes = parse_final_stats(output)
    status = classify_status(condition)

    errors = list(placeholder.errors)
    if error_text.strip():
        errors.append(error_text)
    if condition.killed_by_foreign_signal:
        errors.append(f"rsync terminated by {_signal_name(condition.signal_number)}")

    result = replace(
        placeholder,
        end_time=end_time,
        status=status,
        files_transferred=files,
        bytes_transferred=total_bytes,
        errors=tuple(errors),
        output=output,
    )
    logger.debug(
        "Finalized run %s: status=%s files=%d bytes=%d",
        result.id,
        status.value,
        files,
        total_bytes,
    )
    return result
