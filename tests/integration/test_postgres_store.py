"""Integration tests for PostgresStore and the pipeline against a real schema."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

import psycopg
import pytest

from roster_watch.config import SchedulerSettings, Settings
from roster_watch.extractors import default_registry
from roster_watch.fetch import FetchedDocument, FetchError
from roster_watch.ledger import FailureLedger
from roster_watch.models import FETCH_FAILED, NO_DATA, FailureRecord, Profile, StaffRecord, Target
from roster_watch.orchestrator import OUTCOME_REJECTED, Orchestrator
from roster_watch.pipeline import ExtractionPipeline
from roster_watch.snapshots import build_snapshot
from roster_watch.store import PostgresStore

BASE = "https://athletics.example.edu"
URL = f"{BASE}/staff-directory"
MIGRATIONS_DIR = Path(__file__).resolve().parents[2] / "migrations"
T0 = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class Clock:
    def __init__(self, start=T0):
        self.now = start

    def __call__(self):
        self.now += timedelta(seconds=1)
        return self.now


class PageFetcher:
    def __init__(self):
        self.pages = {}

    def fetch(self, url):
        if url not in self.pages:
            raise FetchError(url, "HTTP 404", 404)
        return FetchedDocument(url, url, 200, self.pages[url])


def _roster(*people):
    rows = "".join(
        f"<tr><td>{name}</td><td>{title}</td>"
        f"<td><a href=\"mailto:{email}\">{email}</a></td></tr>"
        for name, title, email in people
    )
    return (
        "<html><body><h2>Coaches</h2><table>"
        "<tr><th>Name</th><th>Title</th><th>Email</th></tr>"
        f"{rows}</table></body></html>"
    )


JANE = ("Jane Smith", "Head Coach", "jsmith@example.edu")
TOM = ("Tom Jones", "Assistant Coach", "tjones@example.edu")
PAT = ("Pat Lee", "Director", "plee@example.edu")


def _pipeline(store, fetcher, clock=None):
    return ExtractionPipeline(store, fetcher, default_registry(), clock=clock or Clock())


# ---------------------------------------------------------------------------
# Targets
# ---------------------------------------------------------------------------

class TestTargets:
    def test_import_is_insert_if_absent(self, pg_store):
        assert pg_store.import_target(BASE, URL) is True
        assert pg_store.import_target("https://other.example", URL) is False
        assert pg_store.get_target(URL).base_url == BASE

    def test_due_targets_oldest_first(self, pg_store):
        for name in ("a", "b", "c"):
            pg_store.import_target(BASE, f"{BASE}/{name}")
        pg_store.update_target_schedule(
            f"{BASE}/a", last_processed_at=T0 - timedelta(days=40), process_count=1,
            last_record_count=3, successful_extractor="heading_table",
            extractor_failed_last_time=False,
        )
        pg_store.update_target_schedule(
            f"{BASE}/c", last_processed_at=T0, process_count=1,
            last_record_count=3, successful_extractor=None,
            extractor_failed_last_time=False,
        )
        due = pg_store.list_due_targets(datetime(2024, 5, 1, tzinfo=timezone.utc))
        assert [t.directory_url for t in due] == [f"{BASE}/b", f"{BASE}/a"]

    def test_reset_extractor(self, pg_store):
        pg_store.import_target(BASE, URL)
        pg_store.update_target_schedule(
            URL, last_processed_at=T0, process_count=2, last_record_count=5,
            successful_extractor="person_card", extractor_failed_last_time=True,
        )
        assert pg_store.reset_extractor(URL) is True
        target = pg_store.get_target(URL)
        assert target.successful_extractor is None
        assert target.extractor_failed_last_time is False
        assert target.process_count == 2
        assert pg_store.reset_extractor(f"{BASE}/nope") is False


# ---------------------------------------------------------------------------
# Snapshots and schema constraints
# ---------------------------------------------------------------------------

class TestSnapshots:
    def test_round_trip_and_latest_pointer_cleared_on_delete(self, pg_store):
        pg_store.import_target(BASE, URL)
        snap = build_snapshot(
            URL, [StaffRecord(name="Jane Smith", email="jsmith@example.edu", category="Coaches")],
            "<html/>", "primary", "heading_table", T0, run_id="r1",
        )
        pg_store.insert_snapshot(snap)
        pg_store.set_latest_snapshot(URL, snap.id, T0)

        loaded = pg_store.get_snapshot(snap.id)
        assert loaded.categories[0].members[0].emails == ["jsmith@example.edu"]
        assert loaded.total_count == 1
        assert pg_store.get_target(URL).latest_snapshot_id == snap.id

        pg_store.delete_snapshot(snap.id)
        assert pg_store.get_target(URL).latest_snapshot_id is None

    def test_empty_snapshot_rejected_by_schema(self, db_conn, pg_store):
        conn, _ = db_conn
        pg_store.import_target(BASE, URL)
        with pytest.raises(psycopg.errors.CheckViolation):
            conn.execute(
                """
                INSERT INTO snapshot (id, target_url, captured_at, content_hash,
                                      fetch_path, categories, total_count)
                VALUES (%s, %s, now(), 'x', 'primary', '[]'::jsonb, 0)
                """,
                (str(uuid.uuid4()), URL),
            )

    def test_transaction_rolls_back(self, pg_store):
        pg_store.import_target(BASE, URL)
        with pytest.raises(RuntimeError):
            with pg_store.transaction():
                pg_store.import_target(BASE, f"{BASE}/rolled-back")
                raise RuntimeError("boom")
        assert pg_store.get_target(f"{BASE}/rolled-back") is None


class TestProfiles:
    def test_upsert_merges_categories(self, pg_store):
        pg_store.import_target(BASE, URL)

        def profile(categories, title):
            return Profile(
                fingerprint="fp-1", canonical_name="Jane Smith", title=title,
                emails=["jsmith@example.edu"], phones=[], profile_url=None,
                categories=categories, first_seen_at=T0, last_seen_at=T0,
                last_target_url=URL, last_snapshot_id=None,
            )

        assert pg_store.upsert_profile(profile(["Football"], "Coach")) is True
        assert pg_store.upsert_profile(profile(["Admin"], "Director")) is False
        stored = pg_store.get_profile("fp-1")
        assert stored.categories == ["Admin", "Football"]
        assert stored.title == "Director"


class TestFailureLedger:
    def test_upsert_increments_and_keeps_first_failure(self, pg_store):
        ledger = FailureLedger(pg_store, snippet_chars=5)
        target = Target(base_url=BASE, directory_url=URL)
        ledger.record(target, FETCH_FAILED, "HTTP 500", at=T0)
        rec = ledger.record(target, NO_DATA, "empty", "<html>long</html>", at=T0 + timedelta(days=1))
        assert rec.attempt_count == 2
        assert rec.kind == NO_DATA
        assert rec.html_snippet == "<html"
        assert rec.first_failed_at == T0
        assert ledger.clear_all() == 1

    def test_restore_keeps_attempts_and_never_overwrites(self, pg_store):
        record = FailureRecord(
            target_url=URL, base_url=BASE, kind=FETCH_FAILED, message="HTTP 500",
            html_snippet=None, first_failed_at=T0, last_attempt_at=T0 + timedelta(days=3),
            attempt_count=4,
        )
        ledger = FailureLedger(pg_store)
        assert ledger.restore(record) is True
        stored = pg_store.get_failure(URL)
        assert stored.attempt_count == 4
        assert stored.first_failed_at == T0
        assert ledger.restore(record) is False


# ---------------------------------------------------------------------------
# End-to-end
# ---------------------------------------------------------------------------

class TestPipelineOnPostgres:
    def test_history_retention_and_change_records(self, pg_store):
        pg_store.import_target(BASE, URL)
        fetcher = PageFetcher()
        pipeline = _pipeline(pg_store, fetcher)

        ids = []
        for people in ([JANE], [JANE, TOM], [JANE, TOM, PAT]):
            fetcher.pages[URL] = _roster(*people)
            result = pipeline.process(pg_store.get_target(URL))
            assert result.succeeded, result.message
            ids.append(result.snapshot_id)

        assert [s.id for s in pg_store.list_snapshots(URL)] == [ids[2], ids[1]]
        (record,) = pg_store.list_change_records(URL)
        assert (record.from_snapshot_id, record.to_snapshot_id) == (ids[1], ids[2])
        assert [p.name for p in record.changes.added] == ["Pat Lee"]
        assert len(pg_store.list_profiles(URL)) == 3

    def test_orchestrated_full_run(self, pg_store):
        pg_store.import_target(BASE, URL)
        pg_store.import_target(BASE, f"{BASE}/missing")
        fetcher = PageFetcher()
        fetcher.pages[URL] = _roster(JANE, TOM)
        clock = Clock()
        orch = Orchestrator(
            pg_store,
            _pipeline(pg_store, fetcher, clock),
            settings=Settings(scheduler=SchedulerSettings(0, 0)),
            clock=clock,
        )

        report = orch.run_full()

        assert (report.successes, report.failures) == (1, 1)
        assert pg_store.get_failure(f"{BASE}/missing").kind == FETCH_FAILED
        target = pg_store.get_target(URL)
        assert target.successful_extractor == "heading_table"
        assert target.last_record_count == 2


# ---------------------------------------------------------------------------
# Schema and run lock
# ---------------------------------------------------------------------------

class TestMigration:
    def test_migrations_can_be_reapplied(self, db_conn):
        conn, _ = db_conn
        for migration in sorted(MIGRATIONS_DIR.glob("*.sql")):
            conn.execute(migration.read_text(encoding="utf-8"))
        row = conn.execute(
            "SELECT count(*) FROM pg_constraint WHERE conname = 'fk_target_latest_snapshot'"
        ).fetchone()
        assert row[0] == 1


class TestRunLock:
    def test_lock_is_exclusive_across_connections(self, db_conn, pg_store):
        _, dsn = db_conn
        with psycopg.connect(dsn, autocommit=True) as other_conn:
            other = PostgresStore(other_conn)
            assert pg_store.try_acquire_run_lock() is True
            assert other.try_acquire_run_lock() is False
            pg_store.release_run_lock()
            assert other.try_acquire_run_lock() is True
            other.release_run_lock()

    def test_orchestrator_rejects_run_while_other_process_holds_lock(self, db_conn, pg_store):
        _, dsn = db_conn
        pg_store.import_target(BASE, URL)
        fetcher = PageFetcher()
        fetcher.pages[URL] = _roster(JANE)
        orch = Orchestrator(
            pg_store, _pipeline(pg_store, fetcher),
            settings=Settings(scheduler=SchedulerSettings(0, 0)), clock=Clock(),
        )
        with psycopg.connect(dsn, autocommit=True) as other_conn:
            other = PostgresStore(other_conn)
            assert other.try_acquire_run_lock() is True

            report = orch.run_full()
            assert report.outcome == OUTCOME_REJECTED
            assert "another process" in report.message
            assert pg_store.get_target(URL).last_processed_at is None

            other.release_run_lock()

        assert orch.run_full().successes == 1
