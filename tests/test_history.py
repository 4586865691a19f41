"""Tests for rsyncgui/history.py: HistoryStore."""

from __future__ import annotations

import json
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from rsyncgui.history import CSV_HEADER, HistoryStore
from rsyncgui.models import ExecutionResult, ExecutionStatus

NOW = datetime(2024, 6, 1, 9, 0, 0)


def _result(job_id: str = "job-a", days_ago: int = 0, **kwargs) -> ExecutionResult:
    start = NOW - timedelta(days=days_ago)
    defaults = {
        "status": ExecutionStatus.SUCCESS,
        "end_time": start + timedelta(seconds=30),
        "files_transferred": 3,
        "bytes_transferred": 4096,
    }
    defaults.update(kwargs)
    return replace(ExecutionResult.started(job_id, start_time=start), **defaults)


@pytest.fixture()
def store(tmp_path: Path) -> HistoryStore:
    return HistoryStore(base_dir=tmp_path)


class TestRecording:
    def test_add_persists(self, store: HistoryStore, tmp_path: Path) -> None:
        result = _result()
        store.add(result, "Photos")
        reloaded = HistoryStore(base_dir=tmp_path).get_all()
        assert len(reloaded) == 1
        assert reloaded[0].job_name == "Photos"
        assert reloaded[0].result == result

    def test_timestamp_is_end_time(self, store: HistoryStore) -> None:
        result = _result()
        entry = store.add(result, "Photos")
        assert entry.timestamp == result.end_time

    def test_oldest_dropped_beyond_limit(self, tmp_path: Path) -> None:
        store = HistoryStore(base_dir=tmp_path, max_entries=3)
        for i in range(5):
            store.add(_result(files_transferred=i), "Photos")
        kept = [e.result.files_transferred for e in store.get_all()]
        assert kept == [4, 3, 2]


class TestQueries:
    def test_get_history_filters_by_job_newest_first(self, store: HistoryStore) -> None:
        store.add(_result("job-a", days_ago=2), "A")
        store.add(_result("job-b", days_ago=1), "B")
        store.add(_result("job-a", days_ago=0), "A")
        entries = store.get_history("job-a")
        assert [e.job_id for e in entries] == ["job-a", "job-a"]
        assert entries[0].timestamp > entries[1].timestamp

    def test_get_history_limit(self, store: HistoryStore) -> None:
        for _ in range(5):
            store.add(_result(), "A")
        assert len(store.get_history("job-a", limit=2)) == 2

    def test_get_recent(self, store: HistoryStore) -> None:
        store.add(_result(days_ago=10), "A")
        store.add(_result(days_ago=3), "A")
        recent = store.get_recent(days=7, now=NOW)
        assert len(recent) == 1


class TestMaintenance:
    def test_clear_all(self, store: HistoryStore) -> None:
        store.add(_result(), "A")
        store.clear()
        assert store.get_all() == []

    def test_clear_one_job(self, store: HistoryStore) -> None:
        store.add(_result("job-a"), "A")
        store.add(_result("job-b"), "B")
        store.clear("job-a")
        assert [e.job_id for e in store.get_all()] == ["job-b"]

    def test_corrupt_file_resets(self, tmp_path: Path) -> None:
        (tmp_path / "history.json").write_text("{not json", encoding="utf-8")
        store = HistoryStore(base_dir=tmp_path)
        assert store.get_all() == []
        assert json.loads((tmp_path / "history.json").read_text(encoding="utf-8")) == []


class TestExportCsv:
    def test_header_and_rows(self, store: HistoryStore) -> None:
        store.add(_result(errors=("boom",), status=ExecutionStatus.FAILED), "Photos, RAW")
        lines = store.export_csv().splitlines()
        assert lines[0] == ",".join(CSV_HEADER)
        assert lines[1] == '2024-06-01T09:00:30,"Photos, RAW",failed,3,4096,30.0,1'
