"""Value types shared by every stage of a sync run.

- :class:`JobConfig` is the immutable job snapshot a caller hands in.
- :class:`ProgressSnapshot` is one best-effort reading of live progress.
- :class:`ExecutionResult` is the frozen record a run hands back.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Mapping

from rsyncgui.errors import JobConfigError
from rsyncgui.utils.path_helpers import format_duration, human_readable_size

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class DestinationKind(Enum):
    """Where a job writes to."""

    LOCAL = "local"
    SCOPED_CLOUD_FOLDER = "scopedCloudFolder"
    REMOTE_SSH = "remoteSSH"

    @property
    def requires_scoped_access(self) -> bool:
        """True for destinations that need a sandbox access grant."""
        return self is DestinationKind.SCOPED_CLOUD_FOLDER


class ExecutionStatus(Enum):
    """Terminal status of a run; the one enumeration every consumer uses."""

    SUCCESS = "success"
    PARTIAL_SUCCESS = "partialSuccess"
    FAILED = "failed"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Transfer options
# ---------------------------------------------------------------------------

# rsync options that have a single-letter form.
SHORT_FLAGS: dict[str, str] = {
    "archive": "-a",
    "verbose": "-v",
    "compress": "-z",
    "dry-run": "-n",
    "recursive": "-r",
    "update": "-u",
    "perms": "-p",
    "owner": "-o",
    "group": "-g",
    "times": "-t",
    "devices": "-D",
    "links": "-l",
    "copy-links": "-L",
    "hard-links": "-H",
    "acls": "-A",
    "xattrs": "-X",
    "executability": "-E",
    "cvs-exclude": "-C",
    "ignore-times": "-I",
    "checksum": "-c",
    "fuzzy": "-y",
    "whole-file": "-W",
    "quiet": "-q",
    "itemize-changes": "-i",
    "human-readable": "-h",
    "backup": "-b",
    "prune-empty-dirs": "-m",
    "copy-dirlinks": "-k",
    "keep-dirlinks": "-K",
    "omit-dir-times": "-O",
    "omit-link-times": "-J",
    "one-file-system": "-x",
    "sparse": "-S",
    "ipv4": "-4",
    "ipv6": "-6",
}

# Options whose values are user-supplied patterns.
FILTER_OPTIONS = frozenset({"exclude", "include", "filter"})


def default_flags() -> dict[str, Any]:
    """Return the option set a new job starts with."""
    return {
        "archive": True,
        "verbose": True,
        "compress": True,
        "stats": True,
        "human-readable": True,
        "progress": True,
    }


def _option_name(key: str) -> str:
    """Normalise ``human_readable`` / ``--human-readable`` to ``human-readable``."""
    return key.strip().lstrip("-").replace("_", "-")


def sanitize_pattern(pattern: str) -> str | None:
    """Return *pattern* unchanged, or None if it contains control characters.

    Tabs are allowed; NUL, other C0 characters and DEL are not.
    """
    for char in pattern:
        code = ord(char)
        if (code < 0x20 and char != "\t") or code == 0x7F:
            logger.warning(
                "Rejected filter pattern containing control character "
                "(U+%04X): %r",
                code,
                pattern[:100],
            )
            return None
    return pattern


@dataclass(frozen=True)
class TransferOptions:
    """rsync options for a job.

    ``flags`` maps long option names to values and keeps insertion order,
    which is the order the arguments are emitted in.
    """

    flags: Mapping[str, Any] = field(default_factory=default_flags)
    dry_run: bool = False

    def with_dry_run(self) -> TransferOptions:
        """Return a copy with ``dry_run`` set; *self* is left untouched."""
        return replace(self, dry_run=True)

    def with_flag(self, name: str, value: Any) -> TransferOptions:
        """Return a copy with flag *name* set to *value*."""
        return replace(self, flags={**self.flags, name: value})

    def to_arguments(self) -> list[str]:
        """Flatten the option set into rsync command-line arguments."""
        args: list[str] = []
        for key, value in self.flags.items():
            name = _option_name(key)
            if value is None or value is False:
                continue
            if value is True:
                args.append(SHORT_FLAGS.get(name, f"--{name}"))
            elif isinstance(value, (list, tuple)):
                for item in value:
                    text = str(item)
                    if name in FILTER_OPTIONS and sanitize_pattern(text) is None:
                        continue
                    args.append(f"--{name}={text}")
            else:
                text = str(value)
                if name in FILTER_OPTIONS and sanitize_pattern(text) is None:
                    continue
                args.append(f"--{name}={text}")

        if self.dry_run and "-n" not in args:
            args.append("-n")
        return args

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> TransferOptions:
        """Build options from their JSON form; missing keys use the defaults."""
        if not data:
            return cls()
        flags = data.get("flags")
        return cls(
            flags=dict(flags) if flags is not None else default_flags(),
            dry_run=bool(data.get("dry_run", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form of these options."""
        return {"flags": dict(self.flags), "dry_run": self.dry_run}


# ---------------------------------------------------------------------------
# Job configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RemoteTarget:
    """SSH connection details for a ``remoteSSH`` destination."""

    host: str
    user: str
    key_path: str | None = None
    port: int | None = None

    @property
    def prefix(self) -> str:
        """``user@host:`` prefix rsync expects on a remote path."""
        return f"{self.user}@{self.host}:"


@dataclass(frozen=True)
class JobConfig:
    """Immutable snapshot of one sync job, borrowed for the length of a run.

    Empty source or destination paths are rejected by the job editor before a
    job ever reaches the engine; they are not checked here.
    """

    name: str
    sources: tuple[str, ...]
    destination: str
    destination_kind: DestinationKind = DestinationKind.LOCAL
    remote: RemoteTarget | None = None
    access_token: str | None = None
    options: TransferOptions = field(default_factory=TransferOptions)
    pre_script: str | None = None
    post_script: str | None = None
    verify_after_sync: bool = False
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self) -> None:
        """Check the destination invariants."""
        if isinstance(self.sources, str):
            object.__setattr__(self, "sources", (self.sources,))
        elif not isinstance(self.sources, tuple):
            object.__setattr__(self, "sources", tuple(self.sources))

        is_remote = self.destination_kind is DestinationKind.REMOTE_SSH
        if is_remote and self.remote is None:
            raise JobConfigError(
                f"Job {self.name!r}: remoteSSH destination needs host and user"
            )
        if not is_remote and self.remote is not None:
            raise JobConfigError(
                f"Job {self.name!r}: remote settings are only valid for remoteSSH"
            )
        if self.access_token and not self.destination_kind.requires_scoped_access:
            raise JobConfigError(
                f"Job {self.name!r}: access token given for a "
                f"{self.destination_kind.value} destination"
            )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> JobConfig:
        """Build a job from its JSON form.

        Raises:
            JobConfigError: If a field is missing or has the wrong shape.
        """
        try:
            sources = data.get("sources")
            if sources is None:
                sources = [data["source"]]
            kind = DestinationKind(data.get("destination_kind", "local"))
            remote_data = data.get("remote")
            remote = None
            if remote_data:
                remote = RemoteTarget(
                    host=remote_data["host"],
                    user=remote_data["user"],
                    key_path=remote_data.get("key_path"),
                    port=remote_data.get("port"),
                )
            kwargs: dict[str, Any] = {
                "name": data.get("name", ""),
                "sources": tuple(sources),
                "destination": data["destination"],
                "destination_kind": kind,
                "remote": remote,
                "access_token": data.get("access_token"),
                "options": TransferOptions.from_dict(data.get("options")),
                "pre_script": data.get("pre_script"),
                "post_script": data.get("post_script"),
                "verify_after_sync": bool(data.get("verify_after_sync", False)),
            }
            if data.get("id"):
                kwargs["id"] = str(data["id"])
        except (KeyError, TypeError, ValueError) as exc:
            raise JobConfigError(f"Invalid job definition: {exc}") from exc
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form of this job."""
        remote = None
        if self.remote is not None:
            remote = {
                "host": self.remote.host,
                "user": self.remote.user,
                "key_path": self.remote.key_path,
                "port": self.remote.port,
            }
        return {
            "id": self.id,
            "name": self.name,
            "sources": list(self.sources),
            "destination": self.destination,
            "destination_kind": self.destination_kind.value,
            "remote": remote,
            "access_token": self.access_token,
            "options": self.options.to_dict(),
            "pre_script": self.pre_script,
            "post_script": self.post_script,
            "verify_after_sync": self.verify_after_sync,
        }


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProgressSnapshot:
    """One reconstruction of transfer progress from rsync's output."""

    current_file: str = ""
    files_completed: int = 0
    files_total: int = 0
    bytes_transferred: int = 0
    bytes_total: int = 0
    percentage: float = 0.0
    overall_percentage: float = 0.0
    speed: float = 0.0
    time_remaining: float = 0.0

    @property
    def speed_formatted(self) -> str:
        return human_readable_size(self.speed) + "/s"

    @property
    def time_remaining_formatted(self) -> str:
        return format_duration(self.time_remaining)


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExecutionResult:
    """Terminal record of one run.

    Created as a placeholder by :meth:`started` when the run begins and
    completed exactly once by :func:`rsyncgui.finalize.finalize`.
    """

    job_id: str
    start_time: datetime
    status: ExecutionStatus
    end_time: datetime | None = None
    files_transferred: int = 0
    bytes_transferred: int = 0
    errors: tuple[str, ...] = ()
    output: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def started(cls, job_id: str, start_time: datetime | None = None) -> ExecutionResult:
        """Return the placeholder for a run that is just starting."""
        return cls(
            job_id=job_id,
            start_time=start_time or datetime.now(),
            status=ExecutionStatus.FAILED,
        )

    @property
    def duration(self) -> float:
        """Run time in seconds, or 0 while the run has no end time."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def transfer_speed(self) -> float:
        """Average bytes per second over the whole run."""
        if self.duration <= 0:
            return 0.0
        return self.bytes_transferred / self.duration

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form of this result."""
        return {
            "id": self.id,
            "job_id": self.job_id,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "status": self.status.value,
            "files_transferred": self.files_transferred,
            "bytes_transferred": self.bytes_transferred,
            "errors": list(self.errors),
            "output": self.output,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ExecutionResult:
        """Rebuild a result from :meth:`to_dict` output."""
        end_time = data.get("end_time")
        return cls(
            id=data["id"],
            job_id=data["job_id"],
            start_time=datetime.fromisoformat(data["start_time"]),
            end_time=datetime.fromisoformat(end_time) if end_time else None,
            status=ExecutionStatus(data["status"]),
            files_transferred=int(data.get("files_transferred", 0)),
            bytes_transferred=int(data.get("bytes_transferred", 0)),
            errors=tuple(data.get("errors", ())),
            output=data.get("output", ""),
        )
