"""RsyncGUI execution engine: runs sync jobs through rsync and reports progress."""

from __future__ import annotations

from rsyncgui.errors import (
    AccessNotGrantedError,
    AlreadyRunningError,
    DestinationUnavailableError,
    ExecutionFailedError,
    JobConfigError,
    RsyncError,
)
from rsyncgui.executor import ExecutorState, RsyncExecutor
from rsyncgui.models import (
    DestinationKind,
    ExecutionResult,
    ExecutionStatus,
    JobConfig,
    ProgressSnapshot,
    RemoteTarget,
    TransferOptions,
)

__all__ = [
    "AccessNotGrantedError",
    "AlreadyRunningError",
    "DestinationKind",
    "DestinationUnavailableError",
    "ExecutionFailedError",
    "ExecutionResult",
    "ExecutionStatus",
    "ExecutorState",
    "JobConfig",
    "JobConfigError",
    "ProgressSnapshot",
    "RemoteTarget",
    "RsyncError",
    "RsyncExecutor",
    "TransferOptions",
]
