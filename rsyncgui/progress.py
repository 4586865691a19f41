"""Live progress reconstruction from rsync's ``--progress`` output.

rsync writes two kinds of interesting lines while it runs::

    photos/2024/IMG_0001.jpg
          648 100%    2.55MB/s    0:00:00 (xfer#323, to-check=6988/42255)

The first names the file being sent; the second (redrawn with carriage
returns while the file is in flight) carries per-file percentage, speed,
time remaining and the file-list counters.  Parsing is best-effort: a token
that is missing or malformed leaves the matching field unchanged.
"""

from __future__ import annotations

import codecs
import logging
import re
from dataclasses import replace
from typing import Callable

from rsyncgui.models import ProgressSnapshot
from rsyncgui.utils.path_helpers import BINARY_UNITS

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[ProgressSnapshot], None]

MAX_LINE_LENGTH = 10_000
MAX_FILENAME_LENGTH = 5_000

_SPEED_RE = re.compile(r"^([0-9][0-9,]*(?:\.[0-9]+)?)([KMGT]?B)/s$", re.IGNORECASE)
_TIME_RE = re.compile(r"^(\d+):(\d{2})(?::(\d{2}))?$")
_TO_CHECK_RE = re.compile(r"to-(?:check|chk)=(\d+)/(\d+)")

# Lines rsync prints that are never file names.
STATUS_PREFIXES: tuple[str, ...] = (
    "sending incremental file list",
    "receiving incremental file list",
    "building file list",
    "receiving file list",
    "created directory",
    "delta-transmission",
    "deleting ",
    "*deleting",
    "skipping ",
    "done",
    "sent ",
    "total size is",
    "total:",
    "Number of ",
    "Total ",
    "Literal data:",
    "Matched data:",
    "File list ",
    "rsync:",
    "rsync error:",
    "rsync warning:",
    "cannot delete",
    "IO error",
    "(DRY RUN)",
)


# ---------------------------------------------------------------------------
# Token helpers
# ---------------------------------------------------------------------------


def parse_speed(token: str) -> float | None:
    """Convert ``"2.55MB/s"`` to bytes per second (1024-based), or None."""
    match = _SPEED_RE.match(token)
    if not match:
        return None
    value, unit = match.groups()
    try:
        return float(value.replace(",", "")) * BINARY_UNITS[unit.upper()]
    except (KeyError, ValueError):
        return None


def parse_time(token: str) -> float | None:
    """Convert ``H:MM:SS`` or ``M:SS`` to seconds, or None."""
    match = _TIME_RE.match(token)
    if not match:
        return None
    first, second, third = match.groups()
    if third is None:
        return int(first) * 60 + int(second)
    return int(first) * 3600 + int(second) * 60 + int(third)


def parse_percentage(token: str) -> float | None:
    """Convert ``"56%"`` to ``56.0``, or None."""
    try:
        value = float(token[:-1])
    except ValueError:
        return None
    if not 0.0 <= value <= 100.0:
        return None
    return value


def is_status_line(text: str) -> bool:
    """Return True if *text* is a known rsync status or summary line."""
    return text.startswith(STATUS_PREFIXES)


# ---------------------------------------------------------------------------
# Line assembly
# ---------------------------------------------------------------------------


class LineAssembler:
    """Turns arbitrarily sized text chunks into complete lines.

    Both ``\\n`` and ``\\r`` end a line, since rsync redraws its progress
    line in place with carriage returns.
    """

    def __init__(self) -> None:
        self._pending = ""

    def feed(self, text: str) -> list[str]:
        """Add *text* and return every line it completed."""
        data = self._pending + text
        parts = re.split(r"\r\n|\r|\n", data)
        self._pending = parts.pop()
        return parts

    def flush(self) -> list[str]:
        """Return the trailing partial line, if any."""
        rest, self._pending = self._pending, ""
        return [rest] if rest else []


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class ProgressParser:
    """Incrementally derives :class:`ProgressSnapshot` values from stdout.

    Feed raw stdout chunks with :meth:`feed`; each line that yields
    information produces a new snapshot, built from the previous one, which is
    handed to *on_snapshot*.  The callback must not block; the executor passes
    one that only enqueues.
    """

    def __init__(self, on_snapshot: SnapshotCallback | None = None) -> None:
        self.on_snapshot = on_snapshot
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._lines = LineAssembler()
        self._latest = ProgressSnapshot()

    @property
    def latest(self) -> ProgressSnapshot:
        """Most recent snapshot (all zeros before the first one)."""
        return self._latest

    def feed(self, chunk: bytes) -> None:
        """Decode *chunk* and parse every line it completes."""
        text = self._decoder.decode(chunk)
        for line in self._lines.feed(text):
            self.parse_line(line)

    def flush(self) -> None:
        """Parse whatever is left once the stream has ended."""
        text = self._decoder.decode(b"", final=True)
        for line in self._lines.feed(text) + self._lines.flush():
            self.parse_line(line)

    def parse_line(self, line: str) -> ProgressSnapshot | None:
        """Parse one line; return the new snapshot, or None if nothing changed."""
        if not line or len(line) >= MAX_LINE_LENGTH:
            return None

        tokens = line.split()
        if any(t.endswith("%") for t in tokens):
            snapshot = self._parse_progress_line(line, tokens)
        else:
            snapshot = self._parse_file_line(line)

        if snapshot is not None:
            self._emit(snapshot)
        return snapshot

    # ------------------------------------------------------------------
    # Line kinds
    # ------------------------------------------------------------------

    def _parse_progress_line(self, line: str, tokens: list[str]) -> ProgressSnapshot | None:
        """Extract percentage, speed, time remaining and file counters."""
        changes: dict[str, float | int] = {}

        for token in tokens:
            if token.endswith("%") and "percentage" not in changes:
                value = parse_percentage(token)
                if value is not None:
                    changes["percentage"] = value
            elif token.lower().endswith("b/s") and "speed" not in changes:
                speed = parse_speed(token)
                if speed is not None:
                    changes["speed"] = speed
            elif ":" in token and "time_remaining" not in changes:
                seconds = parse_time(token)
                if seconds is not None:
                    changes["time_remaining"] = seconds

        match = _TO_CHECK_RE.search(line)
        if match:
            remaining, total = int(match.group(1)), int(match.group(2))
            completed = max(0, total - remaining)
            changes["files_completed"] = completed
            changes["files_total"] = total
            if total > 0:
                changes["overall_percentage"] = min(100.0, completed / total * 100.0)

        if not changes:
            return None
        return replace(self._latest, **changes)

    def _parse_file_line(self, line: str) -> ProgressSnapshot | None:
        """Record the file rsync has just started sending."""
        name = line.strip()
        if not name or len(name) >= MAX_FILENAME_LENGTH or is_status_line(name):
            return None
        if name == self._latest.current_file:
            return None
        return replace(self._latest, current_file=name)

    def _emit(self, snapshot: ProgressSnapshot) -> None:
        self._latest = snapshot
        if self.on_snapshot:
            try:
                self.on_snapshot(snapshot)
            except Exception:
                logger.exception("Exception in on_snapshot callback")
