"""Execution history: a bounded JSON log of finished runs."""

from __future__ import annotations

import csv
import io
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from rsyncgui.config import atomic_write_json, default_base_dir
from rsyncgui.models import ExecutionResult

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 1000

CSV_HEADER = ["Timestamp", "Job Name", "Status", "Files", "Bytes", "Duration", "Errors"]


@dataclass
class HistoryEntry:
    """One finished run plus the job name it ran under."""

    result: ExecutionResult
    job_name: str
    timestamp: datetime | None = None

    def __post_init__(self) -> None:
        if self.timestamp is None:
            self.timestamp = self.result.end_time or self.result.start_time

    @property
    def job_id(self) -> str:
        return self.result.job_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_name": self.job_name,
            "timestamp": self.timestamp.isoformat(),
            "result": self.result.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HistoryEntry:
        return cls(
            result=ExecutionResult.from_dict(data["result"]),
            job_name=data.get("job_name", ""),
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


class HistoryStore:
    """Stores the last *max_entries* results in ``history.json``.

    Uses the same atomic-write and reset-on-corruption rules as
    :class:`~rsyncgui.config.ConfigManager`.
    """

    def __init__(self, base_dir: Path | None = None, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        self._base = base_dir or default_base_dir()
        self._path = self._base / "history.json"
        self._max_entries = max_entries
        self._base.mkdir(parents=True, exist_ok=True)

    def _load(self) -> list[HistoryEntry]:
        """Load all entries, oldest first; corrupt files reset to empty."""
        if not self._path.exists():
            return []
        try:
            loaded = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(loaded, list):
                raise ValueError("History root must be a JSON array")
            return [HistoryEntry.from_dict(item) for item in loaded]
        except (json.JSONDecodeError, ValueError, KeyError, TypeError, OSError) as exc:
            logger.warning("Corrupt history.json (%s), resetting to empty list", exc)
            self._save([])
            return []

    def _save(self, entries: list[HistoryEntry]) -> None:
        atomic_write_json(self._path, [e.to_dict() for e in entries])

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def add(self, result: ExecutionResult, job_name: str) -> HistoryEntry:
        """Append *result*, dropping the oldest entries beyond the limit."""
        entry = HistoryEntry(result, job_name)
        entries = self._load()
        entries.append(entry)
        if len(entries) > self._max_entries:
            entries = entries[-self._max_entries:]
        self._save(entries)
        logger.debug("Recorded %s run of %r", result.status.value, job_name)
        return entry

    # ------------------------------------------------------------------
    # Queries (newest first)
    # ------------------------------------------------------------------

    def get_history(self, job_id: str, limit: int = 50) -> list[HistoryEntry]:
        """Return up to *limit* entries for *job_id*."""
        matching = [e for e in self._load() if e.job_id == job_id]
        return list(reversed(matching[-limit:]))

    def get_all(self, limit: int = 100) -> list[HistoryEntry]:
        """Return up to *limit* entries across all jobs."""
        return list(reversed(self._load()[-limit:]))

    def get_recent(self, days: int = 7, now: datetime | None = None) -> list[HistoryEntry]:
        """Return every entry from the last *days* days."""
        cutoff = (now or datetime.now()) - timedelta(days=days)
        return [e for e in reversed(self._load()) if e.timestamp >= cutoff]

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def clear(self, job_id: str | None = None) -> None:
        """Remove all entries, or only those of *job_id*."""
        if job_id is None:
            self._save([])
            logger.info("Execution history cleared")
            return
        self._save([e for e in self._load() if e.job_id != job_id])
        logger.info("Execution history cleared for job %s", job_id)

    def export_csv(self) -> str:
        """Return the whole history as CSV text, oldest first."""
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_HEADER)
        for entry in self._load():
            result = entry.result
            writer.writerow([
                entry.timestamp.isoformat(timespec="seconds"),
                entry.job_name,
                result.status.value,
                result.files_transferred,
                result.bytes_transferred,
                f"{result.duration:.1f}",
                len(result.errors),
            ])
        return buffer.getvalue()
