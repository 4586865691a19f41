"""Change report built from rsync's itemized (``-i``) output."""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime

logger = logging.getLogger(__name__)

# Itemize codes are 11 characters wide, followed by a space and the path.
_ITEMIZE_WIDTH = 11
_SENT_RE = re.compile(r"^sent ([0-9][0-9,]*) bytes")


@dataclass
class DeltaReport:
    """What a run added, modified and deleted."""

    job_id: str
    files_added: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    files_deleted: list[str] = field(default_factory=list)
    files_skipped: int = 0
    bytes_added: int = 0
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def total_changes(self) -> int:
        return len(self.files_added) + len(self.files_modified) + len(self.files_deleted)

    @property
    def has_changes(self) -> bool:
        return self.total_changes > 0

    @property
    def summary(self) -> str:
        """Human-readable one-liner, e.g. ``"2 added, 1 deleted"``."""
        parts: list[str] = []
        if self.files_added:
            parts.append(f"{len(self.files_added)} added")
        if self.files_modified:
            parts.append(f"{len(self.files_modified)} modified")
        if self.files_deleted:
            parts.append(f"{len(self.files_deleted)} deleted")
        if self.files_skipped:
            parts.append(f"{self.files_skipped} skipped")
        return ", ".join(parts) if parts else "No changes"


def generate_delta_report(output: str, job_id: str) -> DeltaReport:
    """Classify every itemized line of *output*.

    ``>f+++++++++`` is a new file, ``>f.st......`` / ``>f..t......`` a
    modified one and ``*deleting`` a removal.
    """
    report = DeltaReport(job_id=job_id)

    for line in output.splitlines():
        if line.startswith(">f+++"):
            report.files_added.append(line[_ITEMIZE_WIDTH:].strip())
        elif line.startswith(">f.st") or line.startswith(">f..t"):
            report.files_modified.append(line[_ITEMIZE_WIDTH:].strip())
        elif line.startswith("*deleting"):
            report.files_deleted.append(line[len("*deleting"):].strip())
        else:
            match = _SENT_RE.match(line)
            if match:
                report.bytes_added += int(match.group(1).replace(",", ""))

    logger.debug("Delta report for job %s: %s", job_id, report.summary)
    return report
