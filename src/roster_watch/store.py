"""roster_watch.store

Persistence for targets, snapshots, profiles, change records and failure
records.

Two implementations share one interface:
  - PostgresStore: psycopg 3 against the schema in migrations/*.sql.
    Nested documents (categories, change lists) are JSONB columns.
  - MemoryStore: dict-backed, same semantics, used by unit tests.
    transaction() snapshots the state and restores it on exception so
    rollback behaviour matches the database.

Caller manages transactions: the pipeline wraps each target's persistence in
one ``store.transaction()`` block.

The run lock is outside transactions: PostgresStore holds a session-level
advisory lock, so a crashed process frees it when its connection drops.
"""

from __future__ import annotations

import copy
import itertools
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Any, Iterator, Protocol

import psycopg
from psycopg.types.json import Jsonb

from roster_watch.models import (
    Category,
    ChangeRecord,
    ChangeSet,
    FailureRecord,
    MemberUpdate,
    PersonView,
    Profile,
    Snapshot,
    Target,
    utcnow,
)


# Advisory lock key shared by every process that runs against one database.
RUN_LOCK_NAME = "roster_watch:run"


class Store(Protocol):
    def transaction(self): ...

    # targets
    def import_target(self, base_url: str, directory_url: str) -> bool: ...
    def get_target(self, directory_url: str) -> Target | None: ...
    def list_targets(self, active_only: bool = False) -> list[Target]: ...
    def list_due_targets(self, before: datetime) -> list[Target]: ...
    def update_target_schedule(
        self,
        directory_url: str,
        *,
        last_processed_at: datetime,
        process_count: int,
        last_record_count: int,
        successful_extractor: str | None,
        extractor_failed_last_time: bool,
    ) -> None: ...
    def set_latest_snapshot(
        self, directory_url: str, snapshot_id: str, scraped_at: datetime
    ) -> None: ...
    def reset_extractor(self, directory_url: str) -> bool: ...

    # snapshots
    def insert_snapshot(self, snapshot: Snapshot) -> None: ...
    def get_snapshot(self, snapshot_id: str) -> Snapshot | None: ...
    def list_snapshots(self, directory_url: str) -> list[Snapshot]: ...
    def delete_snapshot(self, snapshot_id: str) -> None: ...

    # profiles
    def upsert_profile(self, profile: Profile) -> bool: ...
    def get_profile(self, fingerprint: str) -> Profile | None: ...
    def list_profiles(self, directory_url: str | None = None) -> list[Profile]: ...

    # change records
    def insert_change_record(self, record: ChangeRecord) -> None: ...
    def list_change_records(
        self, directory_url: str | None = None, limit: int | None = None
    ) -> list[ChangeRecord]: ...
    def delete_change_records_for_snapshot(self, snapshot_id: str) -> int: ...

    # failure ledger
    def upsert_failure(self, failure: FailureRecord) -> FailureRecord: ...
    def insert_failure(self, failure: FailureRecord) -> bool: ...
    def get_failure(self, directory_url: str) -> FailureRecord | None: ...
    def list_failures(self) -> list[FailureRecord]: ...
    def delete_failure(self, directory_url: str) -> bool: ...
    def delete_all_failures(self) -> int: ...

    # run lock (one active run across processes)
    def try_acquire_run_lock(self) -> bool: ...
    def release_run_lock(self) -> None: ...


def _merge_categories(existing: list[str], new: list[str]) -> list[str]:
    return sorted(set(existing) | set(new))


def _id(value: Any) -> str | None:
    return str(value) if value is not None else None


# ---------------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------------

_TARGET_COLUMNS = """
    base_url, directory_url, successful_extractor, extractor_failed_last_time,
    last_processed_at, last_scraped_at, process_count, last_record_count,
    is_active, latest_snapshot_id, created_at
"""

_SNAPSHOT_COLUMNS = """
    id, target_url, captured_at, run_id, content_hash, fetch_path,
    extractor, categories
"""

_PROFILE_COLUMNS = """
    fingerprint, canonical_name, title, emails, phones, profile_url,
    categories, first_seen_at, last_seen_at, last_target_url, last_snapshot_id
"""

_CHANGE_COLUMNS = """
    id, target_url, from_snapshot_id, to_snapshot_id, added, removed,
    updated, created_at
"""

_FAILURE_COLUMNS = """
    target_url, base_url, kind, message, html_snippet, first_failed_at,
    last_attempt_at, attempt_count
"""


def _target_from_row(row: tuple) -> Target:
    return Target(
        base_url=row[0],
        directory_url=row[1],
        successful_extractor=row[2],
        extractor_failed_last_time=row[3],
        last_processed_at=row[4],
        last_scraped_at=row[5],
        process_count=row[6],
        last_record_count=row[7],
        is_active=row[8],
        latest_snapshot_id=_id(row[9]),
        created_at=row[10],
    )


def _snapshot_from_row(row: tuple) -> Snapshot:
    return Snapshot(
        id=str(row[0]),
        target_url=row[1],
        captured_at=row[2],
        run_id=row[3],
        content_hash=row[4],
        fetch_path=row[5],
        extractor=row[6],
        categories=[Category.from_dict(c) for c in row[7] or []],
    )


def _profile_from_row(row: tuple) -> Profile:
    return Profile(
        fingerprint=row[0],
        canonical_name=row[1],
        title=row[2],
        emails=list(row[3] or []),
        phones=list(row[4] or []),
        profile_url=row[5],
        categories=list(row[6] or []),
        first_seen_at=row[7],
        last_seen_at=row[8],
        last_target_url=row[9],
        last_snapshot_id=_id(row[10]),
    )


def _change_from_row(row: tuple) -> ChangeRecord:
    return ChangeRecord(
        id=str(row[0]),
        target_url=row[1],
        from_snapshot_id=str(row[2]),
        to_snapshot_id=str(row[3]),
        changes=ChangeSet(
            added=[PersonView.from_dict(p) for p in row[4] or []],
            removed=[PersonView.from_dict(p) for p in row[5] or []],
            updated=[MemberUpdate.from_dict(u) for u in row[6] or []],
        ),
        created_at=row[7],
    )


def _failure_from_row(row: tuple) -> FailureRecord:
    return FailureRecord(
        target_url=row[0],
        base_url=row[1],
        kind=row[2],
        message=row[3],
        html_snippet=row[4],
        first_failed_at=row[5],
        last_attempt_at=row[6],
        attempt_count=row[7],
    )


class PostgresStore:
    """Store backed by a psycopg 3 connection."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self.conn = conn

    def transaction(self):
        return self.conn.transaction()

    # -- targets ------------------------------------------------------------

    def import_target(self, base_url: str, directory_url: str) -> bool:
        row = self.conn.execute(
            """
            INSERT INTO target (base_url, directory_url)
            VALUES (%s, %s)
            ON CONFLICT (directory_url) DO NOTHING
            RETURNING directory_url
            """,
            (base_url, directory_url),
        ).fetchone()
        return row is not None

    def get_target(self, directory_url: str) -> Target | None:
        row = self.conn.execute(
            f"SELECT {_TARGET_COLUMNS} FROM target WHERE directory_url = %s",
            (directory_url,),
        ).fetchone()
        return _target_from_row(row) if row else None

    def list_targets(self, active_only: bool = False) -> list[Target]:
        sql = f"SELECT {_TARGET_COLUMNS} FROM target"
        if active_only:
            sql += " WHERE is_active"
        sql += " ORDER BY created_at ASC, directory_url ASC"
        return [_target_from_row(r) for r in self.conn.execute(sql).fetchall()]

    def list_due_targets(self, before: datetime) -> list[Target]:
        rows = self.conn.execute(
            f"""
            SELECT {_TARGET_COLUMNS} FROM target
            WHERE is_active
              AND (last_processed_at IS NULL OR last_processed_at < %s)
            ORDER BY last_processed_at ASC NULLS FIRST,
                     created_at ASC, directory_url ASC
            """,
            (before,),
        ).fetchall()
        return [_target_from_row(r) for r in rows]

    def update_target_schedule(
        self,
        directory_url: str,
        *,
        last_processed_at: datetime,
        process_count: int,
        last_record_count: int,
        successful_extractor: str | None,
        extractor_failed_last_time: bool,
    ) -> None:
        self.conn.execute(
            """
            UPDATE target SET
              last_processed_at = %s,
              process_count = %s,
              last_record_count = %s,
              successful_extractor = %s,
              extractor_failed_last_time = %s
            WHERE directory_url = %s
            """,
            (last_processed_at, process_count, last_record_count,
             successful_extractor, extractor_failed_last_time, directory_url),
        )

    def set_latest_snapshot(
        self, directory_url: str, snapshot_id: str, scraped_at: datetime
    ) -> None:
        self.conn.execute(
            """
            UPDATE target SET latest_snapshot_id = %s, last_scraped_at = %s
            WHERE directory_url = %s
            """,
            (snapshot_id, scraped_at, directory_url),
        )

    def reset_extractor(self, directory_url: str) -> bool:
        cur = self.conn.execute(
            """
            UPDATE target SET
              successful_extractor = NULL,
              extractor_failed_last_time = false
            WHERE directory_url = %s
            """,
            (directory_url,),
        )
        return cur.rowcount > 0

    # -- snapshots ----------------------------------------------------------

    def insert_snapshot(self, snapshot: Snapshot) -> None:
        self.conn.execute(
            """
            INSERT INTO snapshot
              (id, target_url, captured_at, run_id, content_hash,
               fetch_path, extractor, categories, total_count)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (snapshot.id, snapshot.target_url, snapshot.captured_at,
             snapshot.run_id, snapshot.content_hash, snapshot.fetch_path,
             snapshot.extractor, Jsonb(snapshot.categories_to_json()),
             snapshot.total_count),
        )

    def get_snapshot(self, snapshot_id: str) -> Snapshot | None:
        row = self.conn.execute(
            f"SELECT {_SNAPSHOT_COLUMNS} FROM snapshot WHERE id = %s",
            (snapshot_id,),
        ).fetchone()
        return _snapshot_from_row(row) if row else None

    def list_snapshots(self, directory_url: str) -> list[Snapshot]:
        """Newest first; insertion order breaks captured_at ties."""
        rows = self.conn.execute(
            f"""
            SELECT {_SNAPSHOT_COLUMNS} FROM snapshot
            WHERE target_url = %s
            ORDER BY captured_at DESC, seq DESC
            """,
            (directory_url,),
        ).fetchall()
        return [_snapshot_from_row(r) for r in rows]

    def delete_snapshot(self, snapshot_id: str) -> None:
        self.conn.execute("DELETE FROM snapshot WHERE id = %s", (snapshot_id,))

    # -- profiles -----------------------------------------------------------

    def upsert_profile(self, profile: Profile) -> bool:
        """Insert or merge a profile. Returns True when newly created."""
        row = self.conn.execute(
            """
            INSERT INTO profile
              (fingerprint, canonical_name, title, emails, phones, profile_url,
               categories, first_seen_at, last_seen_at, last_target_url,
               last_snapshot_id)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (fingerprint) DO UPDATE SET
              canonical_name = COALESCE(EXCLUDED.canonical_name, profile.canonical_name),
              title = EXCLUDED.title,
              emails = EXCLUDED.emails,
              phones = EXCLUDED.phones,
              profile_url = EXCLUDED.profile_url,
              categories = ARRAY(
                SELECT DISTINCT c
                FROM unnest(profile.categories || EXCLUDED.categories) AS c
                ORDER BY c
              ),
              last_seen_at = EXCLUDED.last_seen_at,
              last_target_url = EXCLUDED.last_target_url,
              last_snapshot_id = EXCLUDED.last_snapshot_id
            RETURNING (xmax = 0) AS inserted
            """,
            (profile.fingerprint, profile.canonical_name, profile.title,
             list(profile.emails), list(profile.phones), profile.profile_url,
             sorted(set(profile.categories)), profile.first_seen_at,
             profile.last_seen_at, profile.last_target_url,
             profile.last_snapshot_id),
        ).fetchone()
        return bool(row[0])

    def get_profile(self, fingerprint: str) -> Profile | None:
        row = self.conn.execute(
            f"SELECT {_PROFILE_COLUMNS} FROM profile WHERE fingerprint = %s",
            (fingerprint,),
        ).fetchone()
        return _profile_from_row(row) if row else None

    def list_profiles(self, directory_url: str | None = None) -> list[Profile]:
        if directory_url is None:
            rows = self.conn.execute(
                f"SELECT {_PROFILE_COLUMNS} FROM profile ORDER BY canonical_name, fingerprint"
            ).fetchall()
        else:
            rows = self.conn.execute(
                f"""
                SELECT {_PROFILE_COLUMNS} FROM profile
                WHERE last_target_url = %s
                ORDER BY canonical_name, fingerprint
                """,
                (directory_url,),
            ).fetchall()
        return [_profile_from_row(r) for r in rows]

    # -- change records -----------------------------------------------------

    def insert_change_record(self, record: ChangeRecord) -> None:
        changes = record.changes
        self.conn.execute(
            """
            INSERT INTO change_record
              (id, target_url, from_snapshot_id, to_snapshot_id,
               added, removed, updated, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (record.id, record.target_url, record.from_snapshot_id,
             record.to_snapshot_id,
             Jsonb([p.to_dict() for p in changes.added]),
             Jsonb([p.to_dict() for p in changes.removed]),
             Jsonb([u.to_dict() for u in changes.updated]),
             record.created_at),
        )

    def list_change_records(
        self, directory_url: str | None = None, limit: int | None = None
    ) -> list[ChangeRecord]:
        sql = f"SELECT {_CHANGE_COLUMNS} FROM change_record"
        params: list[Any] = []
        if directory_url is not None:
            sql += " WHERE target_url = %s"
            params.append(directory_url)
        sql += " ORDER BY created_at DESC, id"
        if limit is not None:
            sql += " LIMIT %s"
            params.append(limit)
        return [_change_from_row(r) for r in self.conn.execute(sql, params).fetchall()]

    def delete_change_records_for_snapshot(self, snapshot_id: str) -> int:
        cur = self.conn.execute(
            """
            DELETE FROM change_record
            WHERE from_snapshot_id = %s OR to_snapshot_id = %s
            """,
            (snapshot_id, snapshot_id),
        )
        return cur.rowcount

    # -- failure ledger -----------------------------------------------------

    def upsert_failure(self, failure: FailureRecord) -> FailureRecord:
        row = self.conn.execute(
            f"""
            INSERT INTO failure_record
              (target_url, base_url, kind, message, html_snippet,
               first_failed_at, last_attempt_at, attempt_count)
            VALUES (%s, %s, %s, %s, %s, %s, %s, 1)
            ON CONFLICT (target_url) DO UPDATE SET
              base_url = EXCLUDED.base_url,
              kind = EXCLUDED.kind,
              message = EXCLUDED.message,
              html_snippet = EXCLUDED.html_snippet,
              last_attempt_at = EXCLUDED.last_attempt_at,
              attempt_count = failure_record.attempt_count + 1
            RETURNING {_FAILURE_COLUMNS}
            """,
            (failure.target_url, failure.base_url, failure.kind,
             failure.message, failure.html_snippet, failure.first_failed_at,
             failure.last_attempt_at),
        ).fetchone()
        return _failure_from_row(row)

    def insert_failure(self, failure: FailureRecord) -> bool:
        cur = self.conn.execute(
            """
            INSERT INTO failure_record
              (target_url, base_url, kind, message, html_snippet,
               first_failed_at, last_attempt_at, attempt_count)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (target_url) DO NOTHING
            """,
            (failure.target_url, failure.base_url, failure.kind,
             failure.message, failure.html_snippet, failure.first_failed_at,
             failure.last_attempt_at, failure.attempt_count),
        )
        return cur.rowcount > 0

    def get_failure(self, directory_url: str) -> FailureRecord | None:
        row = self.conn.execute(
            f"SELECT {_FAILURE_COLUMNS} FROM failure_record WHERE target_url = %s",
            (directory_url,),
        ).fetchone()
        return _failure_from_row(row) if row else None

    def list_failures(self) -> list[FailureRecord]:
        rows = self.conn.execute(
            f"""
            SELECT {_FAILURE_COLUMNS} FROM failure_record
            ORDER BY last_attempt_at DESC, target_url
            """
        ).fetchall()
        return [_failure_from_row(r) for r in rows]

    def delete_failure(self, directory_url: str) -> bool:
        cur = self.conn.execute(
            "DELETE FROM failure_record WHERE target_url = %s", (directory_url,)
        )
        return cur.rowcount > 0

    def delete_all_failures(self) -> int:
        return self.conn.execute("DELETE FROM failure_record").rowcount

    # -- run lock -----------------------------------------------------------

    def try_acquire_run_lock(self) -> bool:
        """Session-level advisory lock; released by release_run_lock or on disconnect."""
        row = self.conn.execute(
            "SELECT pg_try_advisory_lock(hashtext(%s))", (RUN_LOCK_NAME,)
        ).fetchone()
        return bool(row[0])

    def release_run_lock(self) -> None:
        self.conn.execute("SELECT pg_advisory_unlock(hashtext(%s))", (RUN_LOCK_NAME,))


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------

class MemoryStore:
    """Dict-backed store for unit tests. Not thread-safe."""

    def __init__(self) -> None:
        self.targets: dict[str, Target] = {}
        self.snapshots: dict[str, Snapshot] = {}
        self.profiles: dict[str, Profile] = {}
        self.change_records: dict[str, ChangeRecord] = {}
        self.failures: dict[str, FailureRecord] = {}
        self._snapshot_seq: dict[str, int] = {}
        self._seq = itertools.count(1)
        self.run_locked = False

    _STATE = ("targets", "snapshots", "profiles", "change_records", "failures", "_snapshot_seq")

    @contextmanager
    def transaction(self) -> Iterator[None]:
        saved = {name: copy.deepcopy(getattr(self, name)) for name in self._STATE}
        try:
            yield
        except BaseException:
            for name, value in saved.items():
                setattr(self, name, value)
            raise

    # -- targets ------------------------------------------------------------

    def import_target(self, base_url: str, directory_url: str) -> bool:
        if directory_url in self.targets:
            return False
        self.targets[directory_url] = Target(
            base_url=base_url,
            directory_url=directory_url,
            created_at=utcnow(),
        )
        return True

    def add_target(self, target: Target) -> None:
        """Test helper: register a fully populated target."""
        self.targets[target.directory_url] = replace(target)

    def get_target(self, directory_url: str) -> Target | None:
        t = self.targets.get(directory_url)
        return replace(t) if t else None

    def list_targets(self, active_only: bool = False) -> list[Target]:
        return [replace(t) for t in self.targets.values() if t.is_active or not active_only]

    def list_due_targets(self, before: datetime) -> list[Target]:
        due = [
            t for t in self.targets.values()
            if t.is_active and (t.last_processed_at is None or t.last_processed_at < before)
        ]
        # Stable sort keeps registration order among equal keys.
        due.sort(key=lambda t: (t.last_processed_at is not None, t.last_processed_at or before))
        return [replace(t) for t in due]

    def update_target_schedule(
        self,
        directory_url: str,
        *,
        last_processed_at: datetime,
        process_count: int,
        last_record_count: int,
        successful_extractor: str | None,
        extractor_failed_last_time: bool,
    ) -> None:
        t = self.targets.get(directory_url)
        if t is None:
            return
        t.last_processed_at = last_processed_at
        t.process_count = process_count
        t.last_record_count = last_record_count
        t.successful_extractor = successful_extractor
        t.extractor_failed_last_time = extractor_failed_last_time

    def set_latest_snapshot(
        self, directory_url: str, snapshot_id: str, scraped_at: datetime
    ) -> None:
        t = self.targets.get(directory_url)
        if t is None:
            return
        t.latest_snapshot_id = snapshot_id
        t.last_scraped_at = scraped_at

    def reset_extractor(self, directory_url: str) -> bool:
        t = self.targets.get(directory_url)
        if t is None:
            return False
        t.successful_extractor = None
        t.extractor_failed_last_time = False
        return True

    # -- snapshots ----------------------------------------------------------

    def insert_snapshot(self, snapshot: Snapshot) -> None:
        if snapshot.target_url not in self.targets:
            raise KeyError(f"unknown target {snapshot.target_url!r}")
        if snapshot.id in self.snapshots:
            raise KeyError(f"duplicate snapshot id {snapshot.id!r}")
        self.snapshots[snapshot.id] = snapshot
        self._snapshot_seq[snapshot.id] = next(self._seq)

    def get_snapshot(self, snapshot_id: str) -> Snapshot | None:
        return self.snapshots.get(snapshot_id)

    def list_snapshots(self, directory_url: str) -> list[Snapshot]:
        rows = [s for s in self.snapshots.values() if s.target_url == directory_url]
        rows.sort(key=lambda s: (s.captured_at, self._snapshot_seq[s.id]), reverse=True)
        return rows

    def delete_snapshot(self, snapshot_id: str) -> None:
        if self.snapshots.pop(snapshot_id, None) is None:
            return
        self._snapshot_seq.pop(snapshot_id, None)
        # Mirror the foreign keys: cascade change records, null the pointers.
        self.delete_change_records_for_snapshot(snapshot_id)
        for t in self.targets.values():
            if t.latest_snapshot_id == snapshot_id:
                t.latest_snapshot_id = None
        for p in self.profiles.values():
            if p.last_snapshot_id == snapshot_id:
                p.last_snapshot_id = None

    # -- profiles -----------------------------------------------------------

    def upsert_profile(self, profile: Profile) -> bool:
        existing = self.profiles.get(profile.fingerprint)
        if existing is None:
            self.profiles[profile.fingerprint] = replace(
                profile,
                emails=list(profile.emails),
                phones=list(profile.phones),
                categories=sorted(set(profile.categories)),
            )
            return True
        existing.canonical_name = profile.canonical_name or existing.canonical_name
        existing.title = profile.title
        existing.emails = list(profile.emails)
        existing.phones = list(profile.phones)
        existing.profile_url = profile.profile_url
        existing.categories = _merge_categories(existing.categories, profile.categories)
        existing.last_seen_at = profile.last_seen_at
        existing.last_target_url = profile.last_target_url
        existing.last_snapshot_id = profile.last_snapshot_id
        return False

    def get_profile(self, fingerprint: str) -> Profile | None:
        p = self.profiles.get(fingerprint)
        return replace(p) if p else None

    def list_profiles(self, directory_url: str | None = None) -> list[Profile]:
        rows = [
            replace(p) for p in self.profiles.values()
            if directory_url is None or p.last_target_url == directory_url
        ]
        rows.sort(key=lambda p: (p.canonical_name or "", p.fingerprint))
        return rows

    # -- change records -----------------------------------------------------

    def insert_change_record(self, record: ChangeRecord) -> None:
        for sid in (record.from_snapshot_id, record.to_snapshot_id):
            if sid not in self.snapshots:
                raise KeyError(f"change record references unknown snapshot {sid!r}")
        self.change_records[record.id] = record

    def list_change_records(
        self, directory_url: str | None = None, limit: int | None = None
    ) -> list[ChangeRecord]:
        rows = [
            r for r in self.change_records.values()
            if directory_url is None or r.target_url == directory_url
        ]
        rows.reverse()
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return rows[:limit] if limit is not None else rows

    def delete_change_records_for_snapshot(self, snapshot_id: str) -> int:
        doomed = [
            rid for rid, r in self.change_records.items()
            if snapshot_id in (r.from_snapshot_id, r.to_snapshot_id)
        ]
        for rid in doomed:
            del self.change_records[rid]
        return len(doomed)

    # -- failure ledger -----------------------------------------------------

    def upsert_failure(self, failure: FailureRecord) -> FailureRecord:
        existing = self.failures.get(failure.target_url)
        if existing is None:
            stored = replace(failure, attempt_count=1)
        else:
            stored = replace(
                failure,
                first_failed_at=existing.first_failed_at,
                attempt_count=existing.attempt_count + 1,
            )
        self.failures[failure.target_url] = stored
        return replace(stored)

    def insert_failure(self, failure: FailureRecord) -> bool:
        if failure.target_url in self.failures:
            return False
        self.failures[failure.target_url] = replace(failure)
        return True

    def get_failure(self, directory_url: str) -> FailureRecord | None:
        f = self.failures.get(directory_url)
        return replace(f) if f else None

    def list_failures(self) -> list[FailureRecord]:
        rows = sorted(self.failures.values(), key=lambda f: f.target_url)
        rows.sort(key=lambda f: f.last_attempt_at, reverse=True)
        return [replace(f) for f in rows]

    def delete_failure(self, directory_url: str) -> bool:
        return self.failures.pop(directory_url, None) is not None

    def delete_all_failures(self) -> int:
        count = len(self.failures)
        self.failures.clear()
        return count

    # -- run lock -----------------------------------------------------------

    def try_acquire_run_lock(self) -> bool:
        if self.run_locked:
            return False
        self.run_locked = True
        return True

    def release_run_lock(self) -> None:
        self.run_locked = False
