"""Exception types raised by the rsync execution engine.

Precondition failures (access, destination, configuration) are raised before
rsync is spawned so callers can tell "could not start" apart from "ran and
failed".  A cancelled run is reported as a status value on the result, not as
an exception.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rsyncgui.models import ExecutionResult


class RsyncError(Exception):
    """Base class for every error raised by the engine."""


class JobConfigError(RsyncError, ValueError):
    """Raised when a job description violates its own invariants."""


class AlreadyRunningError(RsyncError):
    """Raised when ``execute`` is called while another run is in flight."""

    def __init__(self, message: str = "Rsync is already running") -> None:
        super().__init__(message)


class ExecutionFailedError(RsyncError):
    """Raised when rsync could not be spawned or died from a foreign signal.

    Attributes:
        cause: The underlying exception, if any.
        result: The finalized result when the process ran before failing
            (signal death); ``None`` when it never started.
    """

    def __init__(
        self,
        cause: BaseException | str,
        result: ExecutionResult | None = None,
    ) -> None:
        """Initialise with the root *cause* and an optional finalized *result*."""
        self.cause = cause
        self.result = result
        super().__init__(f"Rsync execution failed: {cause}")


class AccessNotGrantedError(RsyncError):
    """Raised when a sandboxed destination has no access token at all."""

    def __init__(
        self,
        message: str = (
            "Permission not granted. Select the destination folder again to "
            "grant access before running this job."
        ),
    ) -> None:
        super().__init__(message)


class DestinationUnavailableError(RsyncError):
    """Raised when a scoped destination cannot be resolved or reached."""
