"""Tests for main.py: the command-line entry point."""

from __future__ import annotations

import json
import signal
import sys
import threading
from pathlib import Path

import pytest

import main
from rsyncgui.config import ConfigManager
from rsyncgui.connection import ConnectionTestResult
from rsyncgui.executor import RsyncExecutor
from rsyncgui.history import HistoryStore


@pytest.fixture(autouse=True)
def no_signal_handlers(monkeypatch: pytest.MonkeyPatch) -> None:
    """Leave the test runner's SIGINT handler alone."""
    monkeypatch.setattr(main.signal, "signal", lambda *args: None)


@pytest.fixture()
def config_dir(tmp_path: Path) -> Path:
    path = tmp_path / "settings"
    path.mkdir()
    return path


def _fake_rsync(tmp_path: Path, exit_code: int) -> str:
    script = tmp_path / "rsync"
    script.write_text(
        f"#!{sys.executable}\n"
        "import sys\n"
        "sys.stdout.write('Number of regular files transferred: 1\\n')\n"
        f"sys.exit({exit_code})\n",
        encoding="utf-8",
    )
    script.chmod(0o755)
    return str(script)


def _job_file(tmp_path: Path) -> Path:
    job = tmp_path / "job.json"
    job.write_text(
        json.dumps({
            "name": "cli",
            "sources": [str(tmp_path) + "/"],
            "destination": str(tmp_path / "out"),
        }),
        encoding="utf-8",
    )
    return job


class TestMain:
    @pytest.mark.parametrize(("rsync_exit", "cli_exit"), [(0, 0), (23, 23), (11, 1)])
    def test_exit_code_follows_status(
        self, tmp_path: Path, config_dir: Path, rsync_exit: int, cli_exit: int
    ) -> None:
        ConfigManager(config_dir).set("rsync_path", _fake_rsync(tmp_path, rsync_exit))
        code = main.main([str(_job_file(tmp_path)), "--config-dir", str(config_dir)])
        assert code == cli_exit

    def test_history_recorded(self, tmp_path: Path, config_dir: Path) -> None:
        ConfigManager(config_dir).set("rsync_path", _fake_rsync(tmp_path, 0))
        main.main([str(_job_file(tmp_path)), "--config-dir", str(config_dir)])
        entries = HistoryStore(config_dir).get_all()
        assert len(entries) == 1
        assert entries[0].job_name == "cli"
        assert entries[0].result.files_transferred == 1

    def test_no_history(self, tmp_path: Path, config_dir: Path) -> None:
        ConfigManager(config_dir).set("rsync_path", _fake_rsync(tmp_path, 0))
        main.main([str(_job_file(tmp_path)), "--config-dir", str(config_dir), "--no-history"])
        assert HistoryStore(config_dir).get_all() == []

    def test_invalid_job_file(self, tmp_path: Path, config_dir: Path) -> None:
        bad = tmp_path / "bad.json"
        bad.write_text("{not json", encoding="utf-8")
        assert main.main([str(bad), "--config-dir", str(config_dir)]) == main.EXIT_PRECONDITION

    def test_missing_rsync(self, tmp_path: Path, config_dir: Path) -> None:
        ConfigManager(config_dir).set("rsync_path", str(tmp_path / "missing"))
        code = main.main([str(_job_file(tmp_path)), "--config-dir", str(config_dir)])
        assert code == main.EXIT_PRECONDITION

    def test_check_requires_remote_job(self, tmp_path: Path, config_dir: Path) -> None:
        code = main.main([str(_job_file(tmp_path)), "--config-dir", str(config_dir), "--check"])
        assert code == main.EXIT_PRECONDITION

    def test_check_runs_connection_test(
        self, tmp_path: Path, config_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        job = tmp_path / "remote.json"
        job.write_text(
            json.dumps({
                "name": "remote",
                "sources": ["/data/"],
                "destination": "/srv/backup",
                "destination_kind": "remoteSSH",
                "remote": {"host": "nas.local", "user": "deck"},
            }),
            encoding="utf-8",
        )
        outcome = ConnectionTestResult()
        outcome.add("SSH connection", True, "Reached nas.local")
        calls = []

        def fake_check(remote, destination, timeout):
            calls.append((remote.host, destination, timeout))
            return outcome

        monkeypatch.setattr(main, "check_connection", fake_check)
        code = main.main([str(job), "--config-dir", str(config_dir), "--check"])
        assert code == 0
        assert calls == [("nas.local", "/srv/backup", 15.0)]

    def test_sigint_handler_does_not_block_on_executor_lock(self) -> None:
        executor = RsyncExecutor()
        handler = main._sigint_handler(executor)
        try:
            with executor._lock:
                caller = threading.Thread(target=handler, args=(signal.SIGINT, None))
                caller.start()
                caller.join(timeout=2)
                assert not caller.is_alive()
        finally:
            executor.shutdown()
