"""Tests for rsyncgui/models.py and rsyncgui/utils/path_helpers.py."""

from __future__ import annotations

from dataclasses import FrozenInstanceError
from datetime import datetime, timedelta

import pytest

from rsyncgui.errors import JobConfigError
from rsyncgui.models import (
    DestinationKind,
    ExecutionResult,
    ExecutionStatus,
    JobConfig,
    ProgressSnapshot,
    RemoteTarget,
    TransferOptions,
)
from rsyncgui.utils.path_helpers import (
    expand_home,
    format_duration,
    human_readable_size,
    is_within,
    parse_size,
    strip_trailing_separator,
)


# ---------------------------------------------------------------------------
# JobConfig
# ---------------------------------------------------------------------------


class TestJobConfig:
    def test_remote_requires_target(self) -> None:
        with pytest.raises(JobConfigError):
            JobConfig(
                name="j",
                sources=("/a",),
                destination="/b",
                destination_kind=DestinationKind.REMOTE_SSH,
            )

    def test_remote_target_only_for_remote(self) -> None:
        with pytest.raises(JobConfigError):
            JobConfig(
                name="j",
                sources=("/a",),
                destination="/b",
                remote=RemoteTarget(host="h", user="u"),
            )

    def test_token_only_for_scoped(self) -> None:
        with pytest.raises(JobConfigError):
            JobConfig(name="j", sources=("/a",), destination="/b", access_token="tok")

    def test_job_config_error_is_value_error(self) -> None:
        assert issubclass(JobConfigError, ValueError)

    def test_sources_coerced_to_tuple(self) -> None:
        assert JobConfig(name="j", sources="/a", destination="/b").sources == ("/a",)
        assert JobConfig(name="j", sources=["/a", "/b"], destination="/c").sources == ("/a", "/b")

    def test_frozen(self) -> None:
        job = JobConfig(name="j", sources=("/a",), destination="/b")
        with pytest.raises(FrozenInstanceError):
            job.destination = "/elsewhere"  # type: ignore[misc]

    def test_dict_round_trip(self) -> None:
        job = JobConfig(
            name="remote",
            sources=("/a/", "/b"),
            destination="/srv",
            destination_kind=DestinationKind.REMOTE_SSH,
            remote=RemoteTarget(host="nas", user="deck", key_path="~/.ssh/id", port=2200),
            options=TransferOptions(flags={"archive": True, "exclude": ["*.tmp"]}),
            post_script="echo done",
            verify_after_sync=True,
        )
        assert JobConfig.from_dict(job.to_dict()) == job

    def test_from_dict_single_source_and_defaults(self) -> None:
        job = JobConfig.from_dict({"name": "j", "source": "/a", "destination": "/b"})
        assert job.sources == ("/a",)
        assert job.destination_kind is DestinationKind.LOCAL
        assert job.options == TransferOptions()
        assert job.verify_after_sync is False

    def test_from_dict_bad_kind(self) -> None:
        with pytest.raises(JobConfigError):
            JobConfig.from_dict({"sources": ["/a"], "destination": "/b", "destination_kind": "ftp"})

    def test_from_dict_missing_destination(self) -> None:
        with pytest.raises(JobConfigError):
            JobConfig.from_dict({"sources": ["/a"]})

    def test_scoped_access_flag(self) -> None:
        assert DestinationKind.SCOPED_CLOUD_FOLDER.requires_scoped_access
        assert not DestinationKind.LOCAL.requires_scoped_access
        assert not DestinationKind.REMOTE_SSH.requires_scoped_access


# ---------------------------------------------------------------------------
# Results and snapshots
# ---------------------------------------------------------------------------


class TestExecutionResult:
    def test_placeholder(self) -> None:
        result = ExecutionResult.started("job-1")
        assert result.end_time is None
        assert result.duration == 0.0
        assert result.transfer_speed == 0.0

    def test_speed(self) -> None:
        start = datetime(2024, 1, 1)
        result = ExecutionResult(
            job_id="job-1",
            start_time=start,
            end_time=start + timedelta(seconds=4),
            status=ExecutionStatus.SUCCESS,
            bytes_transferred=4096,
        )
        assert result.duration == 4.0
        assert result.transfer_speed == 1024.0

    def test_status_values(self) -> None:
        assert {s.value for s in ExecutionStatus} == {
            "success",
            "partialSuccess",
            "failed",
            "cancelled",
        }


class TestProgressSnapshot:
    def test_formatting(self) -> None:
        snapshot = ProgressSnapshot(speed=2.5 * 1024 ** 2, time_remaining=3723)
        assert snapshot.speed_formatted == "2.5 MB/s"
        assert snapshot.time_remaining_formatted == "1:02:03"


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------


class TestPathHelpers:
    def test_expand_home(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HOME", "/home/deck")
        assert expand_home("~") == "/home/deck"
        assert expand_home("~/Music/") == "/home/deck/Music/"
        assert expand_home("/data/~tmp") == "/data/~tmp"
        assert expand_home("~other/x") == "~other/x"

    def test_strip_trailing_separator(self) -> None:
        assert strip_trailing_separator("/a/b//") == "/a/b"
        assert strip_trailing_separator("/") == "/"

    def test_is_within(self, tmp_path) -> None:
        assert is_within(tmp_path / "a" / "b", tmp_path)
        assert is_within(tmp_path, tmp_path)
        assert not is_within(tmp_path / ".." / "elsewhere", tmp_path)

    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("1,234,567", 1234567),
            ("1,234,567 bytes", 1234567),
            ("1.23M", int(1.23 * 1024 ** 2)),
            ("4.5GB", int(4.5 * 1024 ** 3)),
            ("12K", 12 * 1024),
            ("lots", 0),
        ],
    )
    def test_parse_size(self, text: str, expected: int) -> None:
        assert parse_size(text) == expected

    def test_human_readable_size(self) -> None:
        assert human_readable_size(512) == "512 B"
        assert human_readable_size(1536) == "1.5 KB"

    def test_format_duration(self) -> None:
        assert format_duration(65) == "1:05"
        assert format_duration(3600) == "1:00:00"
        assert format_duration(-5) == "0:00"
