"""Unit tests for roster_watch.export."""

from __future__ import annotations

import csv
from datetime import datetime, timezone
from pathlib import Path

import pytest

from roster_watch.export import EXPORT_COLUMNS, ExportGuard, ExportResult, RosterExporter
from roster_watch.models import StaffRecord
from roster_watch.snapshots import build_snapshot

T0 = datetime(2024, 5, 1, tzinfo=timezone.utc)


def _seed(store, url, records):
    store.import_target("https://athletics.example.edu", url)
    snap = build_snapshot(url, records, "<html/>", "primary", "heading_table", T0)
    store.insert_snapshot(snap)
    store.set_latest_snapshot(url, snap.id, T0)
    return snap


def _read(path: Path) -> list[dict]:
    with open(path, newline="", encoding="utf-8") as fh:
        return list(csv.DictReader(fh))


class TestRosterExporter:
    def test_rows_from_latest_snapshots(self, store, tmp_path):
        snap = _seed(store, "https://athletics.example.edu/staff", [
            StaffRecord(name="Smith, Jane", title="Head Coach", email="JSmith@Example.edu",
                        category="Football"),
            StaffRecord(name="Tom Allen Jones", phone="555-222-3333", category="Football"),
        ])
        store.import_target("https://athletics.example.edu", "https://athletics.example.edu/empty")

        result = RosterExporter(store, tmp_path).export("Run 7")

        assert (result.row_count, result.target_count) == (2, 1)
        assert result.path.parent == tmp_path
        assert result.path.name.startswith("run-7_")
        rows = _read(result.path)
        assert list(rows[0]) == EXPORT_COLUMNS
        jane, tom = rows
        assert (jane["first_name"], jane["last_name"]) == ("Jane", "Smith")
        assert jane["email"] == "jsmith@example.edu"
        assert jane["category"] == "Football"
        assert jane["snapshot_id"] == snap.id
        assert (tom["first_name"], tom["last_name"]) == ("Tom Allen", "Jones")
        assert tom["phone"] == "+15552223333"

    def test_no_snapshots_writes_header_only(self, store, tmp_path):
        result = RosterExporter(store, tmp_path / "out").export()
        assert result.row_count == 0
        assert result.path.name.startswith("roster_")
        assert _read(result.path) == []


class TestExportGuard:
    def test_overlapping_request_is_skipped(self):
        class Reentrant:
            def __init__(self):
                self.inner = "unset"

            def export(self, label=None):
                self.inner = guard.run("inner")
                return ExportResult(path=Path("x.csv"), row_count=0, target_count=0)

        exporter = Reentrant()
        guard = ExportGuard(exporter)
        assert guard.run("outer") is not None
        assert exporter.inner is None
        assert not guard.running

    def test_lock_released_after_error(self):
        class Broken:
            def export(self, label=None):
                raise OSError("disk full")

        guard = ExportGuard(Broken())
        with pytest.raises(OSError):
            guard.run()
        assert not guard.running
