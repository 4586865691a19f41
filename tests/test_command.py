"""Tests for rsyncgui/command.py and the option flattening in rsyncgui/models.py."""

from __future__ import annotations

from pathlib import Path

import pytest

from rsyncgui.command import build_command, remote_destination, ssh_command
from rsyncgui.models import (
    DestinationKind,
    JobConfig,
    RemoteTarget,
    TransferOptions,
)


@pytest.fixture()
def home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    """Point ``~`` at a temporary directory."""
    monkeypatch.setenv("HOME", str(tmp_path))
    return str(tmp_path)


def _job(**kwargs) -> JobConfig:
    defaults = {
        "name": "nightly",
        "sources": ("/data/photos/",),
        "destination": "/backup/photos",
        "options": TransferOptions(flags={"archive": True, "verbose": True}),
    }
    defaults.update(kwargs)
    return JobConfig(**defaults)


# ---------------------------------------------------------------------------
# Local destinations
# ---------------------------------------------------------------------------


class TestLocalCommand:
    def test_argument_order(self) -> None:
        executable, args = build_command(_job(), rsync_path="/opt/rsync")
        assert executable == "/opt/rsync"
        assert args == ["-a", "-v", "/data/photos/", "/backup/photos/"]

    def test_trailing_separator_copied_to_destination(self) -> None:
        """A source ending in / means 'contents of', so the destination gets one too."""
        _, args = build_command(_job(sources=("/data/photos/",)))
        assert args[-1].endswith("/")

    def test_no_trailing_separator_added_without_one_on_source(self) -> None:
        _, args = build_command(_job(sources=("/data/photos",)))
        assert args[-1] == "/backup/photos"

    def test_existing_trailing_separator_not_doubled(self) -> None:
        _, args = build_command(_job(destination="/backup/photos/"))
        assert args[-1] == "/backup/photos/"

    def test_home_shorthand_expanded(self, home: str) -> None:
        _, args = build_command(_job(sources=("~/Documents/",), destination="~/Backup"))
        assert args[-2] == f"{home}/Documents/"
        assert args[-1] == f"{home}/Backup/"

    def test_tilde_inside_path_left_alone(self) -> None:
        _, args = build_command(_job(sources=("/data/a~b",), destination="/backup/x~"))
        assert args[-2:] == ["/data/a~b", "/backup/x~"]

    def test_multiple_sources_in_order(self) -> None:
        _, args = build_command(_job(sources=("/a", "/b", "/c")))
        assert args[-4:] == ["/a", "/b", "/c", "/backup/photos"]

    def test_deterministic(self) -> None:
        job = _job()
        assert build_command(job) == build_command(job)


class TestDryRun:
    def test_dry_run_adds_flag(self) -> None:
        _, args = build_command(_job(), dry_run=True)
        assert "-n" in args
        assert args.index("-n") < args.index("/data/photos/")

    def test_dry_run_does_not_modify_job_options(self) -> None:
        job = _job()
        build_command(job, dry_run=True)
        assert job.options.dry_run is False
        _, args = build_command(job)
        assert "-n" not in args

    def test_dry_run_flag_not_duplicated(self) -> None:
        job = _job(options=TransferOptions(flags={"archive": True, "dry-run": True}))
        _, args = build_command(job, dry_run=True)
        assert args.count("-n") == 1


# ---------------------------------------------------------------------------
# Remote destinations
# ---------------------------------------------------------------------------


class TestRemoteCommand:
    def _remote_job(self, **remote_kwargs) -> JobConfig:
        return _job(
            destination="/srv/backup",
            destination_kind=DestinationKind.REMOTE_SSH,
            remote=RemoteTarget(host="nas.local", user="deck", **remote_kwargs),
        )

    def test_remote_shell_after_options_before_paths(self) -> None:
        _, args = build_command(self._remote_job())
        assert args == [
            "-a",
            "-v",
            "-e",
            "ssh",
            "/data/photos/",
            "deck@nas.local:/srv/backup",
        ]

    def test_port_and_key(self, home: str) -> None:
        job = self._remote_job(port=2222, key_path="~/.ssh/id_ed25519")
        assert ssh_command(job) == f"ssh -p 2222 -i {home}/.ssh/id_ed25519"

    def test_prefixed_destination_left_alone(self) -> None:
        job = _job(
            destination="deck@nas.local:/srv/backup",
            destination_kind=DestinationKind.REMOTE_SSH,
            remote=RemoteTarget(host="nas.local", user="deck"),
        )
        assert remote_destination(job) == "deck@nas.local:/srv/backup"

    def test_local_job_has_no_remote_shell(self) -> None:
        _, args = build_command(_job())
        assert "-e" not in args


# ---------------------------------------------------------------------------
# Option flattening
# ---------------------------------------------------------------------------


class TestTransferOptions:
    def test_short_and_long_flags(self) -> None:
        options = TransferOptions(
            flags={"archive": True, "delete": True, "human_readable": True, "stats": True}
        )
        assert options.to_arguments() == ["-a", "--delete", "-h", "--stats"]

    def test_disabled_flags_skipped(self) -> None:
        options = TransferOptions(flags={"archive": True, "compress": False, "bwlimit": None})
        assert options.to_arguments() == ["-a"]

    def test_valued_options(self) -> None:
        options = TransferOptions(flags={"bwlimit": 1000, "max-size": "10M"})
        assert options.to_arguments() == ["--bwlimit=1000", "--max-size=10M"]

    def test_repeated_patterns(self) -> None:
        options = TransferOptions(flags={"exclude": ["*.tmp", ".DS_Store"]})
        assert options.to_arguments() == ["--exclude=*.tmp", "--exclude=.DS_Store"]

    def test_control_characters_rejected_in_patterns(self) -> None:
        options = TransferOptions(flags={"exclude": ["*.tmp", "bad\x00name", "x\x7f"]})
        assert options.to_arguments() == ["--exclude=*.tmp"]

    def test_tab_allowed_in_patterns(self) -> None:
        options = TransferOptions(flags={"include": "a\tb"})
        assert options.to_arguments() == ["--include=a\tb"]

    def test_default_flags(self) -> None:
        args = TransferOptions().to_arguments()
        assert args == ["-a", "-v", "-z", "--stats", "-h", "--progress"]

    def test_with_flag_returns_copy(self) -> None:
        options = TransferOptions(flags={"archive": True})
        checked = options.with_flag("checksum", True)
        assert checked.to_arguments() == ["-a", "-c"]
        assert options.to_arguments() == ["-a"]
