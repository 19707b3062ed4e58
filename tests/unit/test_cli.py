"""Unit tests for the roster-watch CLI (database swapped for MemoryStore)."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest
from click.testing import CliRunner

from roster_watch import cli
from roster_watch.config import Settings
from roster_watch.models import FETCH_FAILED, FailureRecord, Target

T0 = datetime(2024, 5, 1, tzinfo=timezone.utc)
URL = "https://athletics.example.edu/staff"


class FakeConn:
    def __init__(self):
        self.statements = []
        self.rolled_back = 0
        self.closed = False

    def execute(self, sql, params=None):
        self.statements.append(sql)
        return self

    def rollback(self):
        self.rolled_back += 1

    def close(self):
        self.closed = True


@pytest.fixture
def wired(monkeypatch, tmp_path, store):
    """Point the CLI at MemoryStore and run it inside tmp_path."""
    conn = FakeConn()
    connects = []

    def _connect(dsn, autocommit=True):
        connects.append((dsn, autocommit))
        return conn

    monkeypatch.setattr(cli.psycopg, "connect", _connect)
    monkeypatch.setattr(cli, "PostgresStore", lambda c: store)
    monkeypatch.chdir(tmp_path)
    return conn, connects


def _invoke(*args):
    return CliRunner().invoke(cli.main, ["--db-dsn", "postgresql://test", "--run-id", "r1", *args])


def _report(tmp_path: Path) -> dict:
    return json.loads((tmp_path / "artifacts" / "reports" / "r1.json").read_text())


class TestArgumentChecks:
    def test_retry_one_requires_target_url(self, wired):
        _, connects = wired
        result = _invoke("--mode", "retry_one")
        assert result.exit_code == 1
        assert "requires --target-url" in result.output
        assert connects == []

    def test_import_requires_path(self, wired):
        result = _invoke("--mode", "import_targets")
        assert result.exit_code == 1
        assert "--targets-path" in result.output

    def test_missing_config_is_fatal(self, wired, tmp_path):
        result = _invoke("--config", str(tmp_path / "missing.yml"))
        assert result.exit_code == 1
        assert "FATAL" in result.output

    def test_unknown_mode_rejected_by_click(self, wired):
        assert _invoke("--mode", "nightly").exit_code == 2


class TestModes:
    def test_import_targets_writes_report(self, wired, store, tmp_path):
        path = tmp_path / "targets.csv"
        path.write_text(f"directory_url\n{URL}\nnot-a-url\n", encoding="utf-8")
        result = _invoke("--mode", "import_targets", "--targets-path", str(path))
        assert result.exit_code == 0, result.output
        assert store.get_target(URL) is not None
        report = _report(tmp_path)
        assert report["mode"] == "import_targets"
        assert report["counters"]["imported"] == 1
        assert report["counters"]["rejected"] == 1
        assert report["dry_run"] is False

    def test_list_and_clear_failures(self, wired, store, tmp_path):
        store.upsert_failure(FailureRecord(
            target_url=URL, base_url="https://athletics.example.edu", kind=FETCH_FAILED,
            message="HTTP 500", html_snippet=None, first_failed_at=T0, last_attempt_at=T0,
        ))
        listed = _invoke("--mode", "list_failures")
        assert listed.exit_code == 0
        assert URL in listed.output
        assert "1 failure record(s)" in listed.output

        cleared = _invoke("--mode", "clear_failures")
        assert cleared.exit_code == 0
        assert "Cleared 1 failure record(s)" in cleared.output
        assert store.list_failures() == []

    def test_reset_extractor(self, wired, store):
        store.add_target(Target(
            base_url="https://athletics.example.edu", directory_url=URL,
            successful_extractor="person_card", extractor_failed_last_time=True,
        ))
        result = _invoke("--mode", "reset_extractor", "--target-url", URL)
        assert result.exit_code == 0
        target = store.get_target(URL)
        assert target.successful_extractor is None
        assert target.extractor_failed_last_time is False

    def test_reset_extractor_unknown_target(self, wired):
        result = _invoke("--mode", "reset_extractor", "--target-url", URL)
        assert result.exit_code == 1
        assert "unknown target" in result.output

    def test_dry_run_full_run_rolls_back(self, wired, tmp_path):
        conn, connects = wired
        result = _invoke("--mode", "full_run", "--no-render", "--dry-run")
        assert result.exit_code == 0, result.output
        assert connects == [("postgresql://test", False)]
        assert conn.statements == ["SELECT 1"]
        assert conn.rolled_back == 1
        assert conn.closed
        assert "DRY RUN" in result.output
        report = _report(tmp_path)
        assert report["run"]["outcome"] == "completed"
        assert report["run"]["total"] == 0

    def test_run_rejected_while_lock_held_exits_nonzero(self, wired, store):
        store.run_locked = True
        result = _invoke("--mode", "full_run", "--no-render")
        assert result.exit_code == 1
        assert "already running" in result.output
        assert store.run_locked is True

    def test_export_mode(self, wired, tmp_path):
        result = _invoke("--mode", "export", "--export-dir", str(tmp_path / "exports"))
        assert result.exit_code == 0
        assert _report(tmp_path)["export"]["row_count"] == 0
        assert list((tmp_path / "exports").glob("r1_*.csv"))


def test_write_run_report(tmp_path):
    settings = Settings(yaml_hash="abc", source_path="config/roster_watch.yml")
    path = cli.write_run_report(
        "run-9", "2024-05-01T00:00:00+00:00", "export", True, settings,
        {"export": {"row_count": 4}}, reports_dir=tmp_path,
    )
    assert path == tmp_path / "run-9.json"
    data = json.loads(path.read_text())
    assert data["settings_hash"] == "abc"
    assert data["dry_run"] is True
    assert data["export"] == {"row_count": 4}
