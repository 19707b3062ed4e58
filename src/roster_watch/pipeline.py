"""roster_watch.pipeline

Per-target extraction pipeline.

Processing order per target:
  1.  Primary fetch (plain HTTP)            → FetchError falls through to 3
  2.  Extract primary document              → records: go to 5
  3.  Fallback fetch (rendered HTML)        → RenderError: fetch_failed
  4.  Extract rendered document             → empty: no_data / fetch_failed
  5.  Persist, one store transaction:
      a.  Insert Snapshot
      b.  Upsert one Profile per fingerprint
      c.  Diff against the previous latest Snapshot → ChangeRecord if non-empty
      d.  Move the target's latest pointer
      e.  Retention (keep newest N, cascade change records)
      f.  Delete the target's FailureRecord

Nothing is written before step 5 except the FailureRecord of a failed target.
An unexpected exception in step 5 rolls the transaction back and is recorded
as critical_error. The stop callback is consulted before steps 1 and 3;
RunCancelled leaves the store and ledger untouched.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from roster_watch.changes import build_person_map, diff_snapshots
from roster_watch.extractors import ExtractionResult, ExtractorRegistry
from roster_watch.fetch import FetchError
from roster_watch.ledger import DEFAULT_SNIPPET_CHARS, FailureLedger
from roster_watch.models import (
    CRITICAL_ERROR,
    FETCH_FAILED,
    FETCH_PATH_FALLBACK,
    FETCH_PATH_PRIMARY,
    NO_DATA,
    ChangeRecord,
    Profile,
    Snapshot,
    Target,
    utcnow,
)
from roster_watch.render import RenderError
from roster_watch.snapshots import DEFAULT_KEEP, apply_retention, build_snapshot

log = logging.getLogger(__name__)

NO_RECORDS_MESSAGE = "no records in fetched document"


class RunCancelled(Exception):
    """Stop was requested while a target was in progress."""

    def __init__(self, target_url: str, stage: str) -> None:
        super().__init__(f"stop requested before {stage} of {target_url}")
        self.target_url = target_url
        self.stage = stage


@dataclass
class PipelineResult:
    target_url: str
    succeeded: bool
    member_count: int = 0
    fetch_path: str | None = None
    extractor: str | None = None
    snapshot_id: str | None = None
    change_record_id: str | None = None
    changes: dict[str, int] | None = None
    profiles_created: int = 0
    profiles_updated: int = 0
    snapshots_pruned: int = 0
    failure_kind: str | None = None
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


def _never_stop() -> bool:
    return False


class ExtractionPipeline:
    def __init__(
        self,
        store,
        fetcher,
        registry: ExtractorRegistry,
        renderer=None,
        keep_snapshots: int = DEFAULT_KEEP,
        snippet_chars: int = DEFAULT_SNIPPET_CHARS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.registry = registry
        self.renderer = renderer
        self.keep_snapshots = keep_snapshots
        self.ledger = FailureLedger(store, snippet_chars=snippet_chars)
        self.clock = clock

    def process(
        self,
        target: Target,
        stop_requested: Callable[[], bool] = _never_stop,
        run_id: str | None = None,
    ) -> PipelineResult:
        url = target.directory_url
        preferred = target.preferred_extractor

        # ------ Primary fetch + extract ------ #
        self._check_stop(stop_requested, url, "primary fetch")
        primary_doc: str | None = None
        try:
            primary_doc = self.fetcher.fetch(url).text
        except FetchError as exc:
            primary_error = str(exc)
            log.info("Primary fetch failed for %s: %s", url, exc)
        else:
            found = self.registry.extract(primary_doc, url, preferred=preferred)
            if found.found:
                return self._persist_or_record(
                    target, found, primary_doc, FETCH_PATH_PRIMARY, run_id
                )
            primary_error = NO_RECORDS_MESSAGE
            log.info("No records on primary document for %s", url)

        # ------ Fallback: rendered document ------ #
        if self.renderer is None:
            if primary_doc is None:
                return self._fail(target, FETCH_FAILED, f"primary: {primary_error}; fallback: disabled")
            return self._fail(
                target, NO_DATA, f"primary: {primary_error}; fallback: disabled",
                html_snippet=primary_doc,
            )

        self._check_stop(stop_requested, url, "fallback render")
        try:
            rendered = self.renderer.render(url)
        except RenderError as exc:
            log.info("Render failed for %s: %s", url, exc)
            return self._fail(
                target, FETCH_FAILED, f"primary: {primary_error}; fallback: {exc}",
                html_snippet=primary_doc,
            )

        found = self.registry.extract(rendered, url, preferred=preferred)
        if found.found:
            return self._persist_or_record(target, found, rendered, FETCH_PATH_FALLBACK, run_id)

        kind = FETCH_FAILED if primary_doc is None else NO_DATA
        return self._fail(
            target, kind, f"primary: {primary_error}; fallback: {NO_RECORDS_MESSAGE}",
            html_snippet=rendered,
        )

    # ------------------------------------------------------------------ #

    @staticmethod
    def _check_stop(stop_requested: Callable[[], bool], url: str, stage: str) -> None:
        if stop_requested():
            raise RunCancelled(url, stage)

    def _fail(
        self,
        target: Target,
        kind: str,
        message: str,
        html_snippet: str | None = None,
    ) -> PipelineResult:
        with self.store.transaction():
            self.ledger.record(target, kind, message, html_snippet, at=self.clock())
        return PipelineResult(
            target_url=target.directory_url,
            succeeded=False,
            failure_kind=kind,
            message=message,
        )

    def _persist_or_record(
        self,
        target: Target,
        found: ExtractionResult,
        document: str,
        fetch_path: str,
        run_id: str | None,
    ) -> PipelineResult:
        try:
            return self._persist(target, found, document, fetch_path, run_id)
        except Exception as exc:
            log.exception("Persisting %s failed; transaction rolled back", target.directory_url)
            return self._fail(target, CRITICAL_ERROR, f"{exc.__class__.__name__}: {exc}")

    def _persist(
        self,
        target: Target,
        found: ExtractionResult,
        document: str,
        fetch_path: str,
        run_id: str | None,
    ) -> PipelineResult:
        url = target.directory_url
        now = self.clock()
        snapshot = build_snapshot(
            url, found.records, document, fetch_path, found.extractor, now, run_id=run_id
        )
        result = PipelineResult(
            target_url=url,
            succeeded=True,
            member_count=snapshot.total_count,
            fetch_path=fetch_path,
            extractor=found.extractor,
            snapshot_id=snapshot.id,
        )

        with self.store.transaction():
            previous = self._previous_latest(url)
            self.store.insert_snapshot(snapshot)

            for person in build_person_map(snapshot).values():
                created = self.store.upsert_profile(
                    Profile(
                        fingerprint=person.fingerprint,
                        canonical_name=person.name,
                        title=person.data.title,
                        emails=list(person.data.emails),
                        phones=list(person.data.phones),
                        profile_url=person.data.profile_url,
                        categories=list(person.categories),
                        first_seen_at=now,
                        last_seen_at=now,
                        last_target_url=url,
                        last_snapshot_id=snapshot.id,
                    )
                )
                if created:
                    result.profiles_created += 1
                else:
                    result.profiles_updated += 1

            if previous is not None:
                changes = diff_snapshots(previous, snapshot)
                result.changes = changes.summary()
                if not changes.is_empty:
                    record = ChangeRecord(
                        id=str(uuid.uuid4()),
                        target_url=url,
                        from_snapshot_id=previous.id,
                        to_snapshot_id=snapshot.id,
                        changes=changes,
                        created_at=now,
                    )
                    self.store.insert_change_record(record)
                    result.change_record_id = record.id

            self.store.set_latest_snapshot(url, snapshot.id, now)
            result.snapshots_pruned = apply_retention(self.store, url, self.keep_snapshots)
            self.ledger.resolve(url)

        log.info(
            "Stored snapshot %s for %s: %d members via %s/%s, changes=%s",
            snapshot.id, url, result.member_count, fetch_path, found.extractor,
            result.changes,
        )
        return result

    def _previous_latest(self, url: str) -> Snapshot | None:
        target = self.store.get_target(url)
        if target is not None and target.latest_snapshot_id:
            snap = self.store.get_snapshot(target.latest_snapshot_id)
            if snap is not None:
                return snap
        history = self.store.list_snapshots(url)
        return history[0] if history else None
