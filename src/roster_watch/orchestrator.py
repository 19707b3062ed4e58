"""roster_watch.orchestrator

Drives runs across many targets, one target at a time.

Run modes:
  full_run        active targets not processed since the start of the current
                  UTC month, oldest first (never-processed first)
  retry_failures  every current FailureRecord (or a given list); each record
                  is cleared immediately before its target is re-attempted
  retry_one       one target, record cleared first

A retry attempt that is cancelled before it finishes puts the cleared record
back unchanged.

Run state machine (guarded by one lock):

    idle ──begin──▶ running ──request_stop──▶ stopping
      ▲                │                         │
      └──────end───────┴───────────end───────────┘

A run requested while the state is not idle, or while another process holds
the store's run lock, is rejected; it is never queued and it does not touch
the active run's counters. Stop is cooperative: the
loop checks it between targets, during the inter-target delay, and the
pipeline checks it before each fetch.
"""

from __future__ import annotations

import enum
import logging
import threading
import uuid
from contextlib import nullcontext
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable

from roster_watch.config import Settings
from roster_watch.models import CRITICAL_ERROR, FailureRecord, Target, utcnow
from roster_watch.pipeline import ExtractionPipeline, PipelineResult, RunCancelled

log = logging.getLogger(__name__)

MODE_FULL = "full_run"
MODE_RETRY = "retry_failures"
MODE_RETRY_ONE = "retry_one"

OUTCOME_COMPLETED = "completed"
OUTCOME_STOPPED = "stopped"
OUTCOME_REJECTED = "rejected"
OUTCOME_FAILED = "failed"


class RunState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"


def new_run_id() -> str:
    return str(uuid.uuid4())


def month_start(now: datetime) -> datetime:
    """First instant of ``now``'s calendar month, in UTC."""
    return now.astimezone(timezone.utc).replace(
        day=1, hour=0, minute=0, second=0, microsecond=0
    )


# ---------------------------------------------------------------------------
# Status + report
# ---------------------------------------------------------------------------

@dataclass
class RunStatus:
    state: RunState = RunState.IDLE
    mode: str | None = None
    run_id: str | None = None
    processed: int = 0
    total: int = 0
    successes: int = 0
    failures: int = 0
    current_target: str | None = None
    started_at: datetime | None = None

    @property
    def percentage(self) -> float:
        if not self.total:
            return 0.0
        return round(100.0 * self.processed / self.total, 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "mode": self.mode,
            "run_id": self.run_id,
            "processed": self.processed,
            "total": self.total,
            "successes": self.successes,
            "failures": self.failures,
            "current_target": self.current_target,
            "percentage": self.percentage,
            "started_at": self.started_at.isoformat() if self.started_at else None,
        }


@dataclass
class RunReport:
    run_id: str
    mode: str
    outcome: str
    started_at: datetime
    finished_at: datetime | None = None
    total: int = 0
    processed: int = 0
    successes: int = 0
    failures: int = 0
    failures_by_kind: dict[str, int] = field(default_factory=dict)
    snapshots_created: int = 0
    change_records_created: int = 0
    results: list[PipelineResult] = field(default_factory=list)
    export: dict[str, Any] | None = None
    message: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "mode": self.mode,
            "outcome": self.outcome,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "total": self.total,
            "processed": self.processed,
            "successes": self.successes,
            "failures": self.failures,
            "failures_by_kind": dict(self.failures_by_kind),
            "snapshots_created": self.snapshots_created,
            "change_records_created": self.change_records_created,
            "export": self.export,
            "message": self.message,
            "warnings": self.warnings[:50],
            "results": [r.to_dict() for r in self.results],
        }


def build_run_summary(report: RunReport) -> str:
    lines = [
        f"=== {report.mode} run {report.run_id} ===",
        f"outcome          : {report.outcome}",
        f"processed/total  : {report.processed}/{report.total}",
        f"successes        : {report.successes}",
        f"failures         : {report.failures}",
        f"snapshots        : {report.snapshots_created}",
        f"change_records   : {report.change_records_created}",
    ]
    for kind, count in sorted(report.failures_by_kind.items()):
        lines.append(f"  {kind:<15}: {count}")
    if report.export:
        lines.append(f"export           : {report.export.get('path')} ({report.export.get('row_count')} rows)")
    if report.message:
        lines.append(f"message          : {report.message}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class Orchestrator:
    def __init__(
        self,
        store,
        pipeline: ExtractionPipeline,
        settings: Settings | None = None,
        export_guard=None,
        browser_pool=None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.pipeline = pipeline
        self.settings = settings or Settings()
        self.export_guard = export_guard
        self.browser_pool = browser_pool
        self.clock = clock
        self.last_report: RunReport | None = None
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._status = RunStatus()
        self._thread: threading.Thread | None = None

    # ------------------------------------------------------------------ #
    # State machine                                                        #
    # ------------------------------------------------------------------ #

    @property
    def state(self) -> RunState:
        with self._lock:
            return self._status.state

    def _begin(self, mode: str, run_id: str) -> str | None:
        """Move idle -> running. Returns the refusal message when not allowed."""
        with self._lock:
            if self._status.state is not RunState.IDLE:
                active = self._status
                return f"already running ({active.mode} {active.run_id})"
            if not self.store.try_acquire_run_lock():
                return "already running (run lock held by another process)"
            self._stop.clear()
            self._status = RunStatus(
                state=RunState.RUNNING,
                mode=mode,
                run_id=run_id,
                started_at=self.clock(),
            )
            return None

    def _end(self) -> None:
        with self._lock:
            try:
                self.store.release_run_lock()
            except Exception:
                log.exception("Could not release run lock for run %s", self._status.run_id)
            if self._status.state in (RunState.RUNNING, RunState.STOPPING):
                self._status.state = RunState.IDLE
            self._status.current_target = None

    def request_stop(self) -> bool:
        """Ask the active run to stop. False when nothing is running."""
        with self._lock:
            if self._status.state is not RunState.RUNNING:
                return False
            self._status.state = RunState.STOPPING
            self._stop.set()
            run_id = self._status.run_id
        log.info("Stop requested for run %s", run_id)
        return True

    def status(self) -> RunStatus:
        with self._lock:
            return replace(self._status)

    def _rejected(self, mode: str, run_id: str, reason: str) -> RunReport:
        log.warning("Rejected %s run %s: %s", mode, run_id, reason)
        now = self.clock()
        return RunReport(
            run_id=run_id,
            mode=mode,
            outcome=OUTCOME_REJECTED,
            started_at=now,
            finished_at=now,
            message=reason,
        )

    # ------------------------------------------------------------------ #
    # Public entry points                                                  #
    # ------------------------------------------------------------------ #

    def run_full(self, run_id: str | None = None) -> RunReport:
        run_id = run_id or new_run_id()
        refusal = self._begin(MODE_FULL, run_id)
        if refusal:
            return self._rejected(MODE_FULL, run_id, refusal)
        return self._execute(self._full_body, run_id)

    def run_retry(self, failures=None, run_id: str | None = None) -> RunReport:
        """Re-attempt failed targets (default: every current FailureRecord)."""
        run_id = run_id or new_run_id()
        refusal = self._begin(MODE_RETRY, run_id)
        if refusal:
            return self._rejected(MODE_RETRY, run_id, refusal)
        return self._execute(lambda rid: self._retry_body(rid, MODE_RETRY, failures), run_id)

    def retry_one(self, directory_url: str, run_id: str | None = None) -> RunReport:
        run_id = run_id or new_run_id()
        refusal = self._begin(MODE_RETRY_ONE, run_id)
        if refusal:
            return self._rejected(MODE_RETRY_ONE, run_id, refusal)
        return self._execute(lambda rid: self._retry_one_body(rid, directory_url), run_id)

    def start_full(self, run_id: str | None = None) -> threading.Thread | None:
        """Run a full run on a background thread. None when rejected."""
        run_id = run_id or new_run_id()
        refusal = self._begin(MODE_FULL, run_id)
        if refusal:
            self.last_report = self._rejected(MODE_FULL, run_id, refusal)
            return None
        return self._spawn(self._full_body, run_id)

    def start_retry(self, failures=None, run_id: str | None = None) -> threading.Thread | None:
        run_id = run_id or new_run_id()
        refusal = self._begin(MODE_RETRY, run_id)
        if refusal:
            self.last_report = self._rejected(MODE_RETRY, run_id, refusal)
            return None
        return self._spawn(lambda rid: self._retry_body(rid, MODE_RETRY, failures), run_id)

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _spawn(self, body: Callable[[str], RunReport], run_id: str) -> threading.Thread:
        thread = threading.Thread(
            target=self._execute, args=(body, run_id), name=f"run-{run_id}", daemon=True
        )
        self._thread = thread
        thread.start()
        return thread

    def _execute(self, body: Callable[[str], RunReport], run_id: str) -> RunReport:
        try:
            report = body(run_id)
            self.last_report = report
            return report
        finally:
            self._end()

    # ------------------------------------------------------------------ #
    # Run bodies                                                           #
    # ------------------------------------------------------------------ #

    def _full_body(self, run_id: str) -> RunReport:
        started = self.clock()
        try:
            targets = self.store.list_due_targets(month_start(started))
        except Exception as exc:
            log.exception("Could not enumerate due targets for run %s", run_id)
            return self._failed(run_id, MODE_FULL, started, f"target enumeration failed: {exc}")
        log.info("Run %s: %d targets due", run_id, len(targets))
        return self._run_loop(
            run_id, MODE_FULL, started, targets,
            delay=self.settings.scheduler.full_run_delay_seconds,
        )

    def _retry_body(self, run_id: str, mode: str, failures) -> RunReport:
        started = self.clock()
        try:
            records = list(failures) if failures is not None else self.store.list_failures()
        except Exception as exc:
            log.exception("Could not enumerate failure records for run %s", run_id)
            return self._failed(run_id, mode, started, f"failure enumeration failed: {exc}")
        targets = [
            Target(base_url=rec.base_url, directory_url=rec.target_url) for rec in records
        ]
        return self._run_loop(
            run_id, mode, started, targets,
            delay=self.settings.scheduler.retry_delay_seconds,
            prepare=self._prepare_retry,
        )

    def _retry_one_body(self, run_id: str, directory_url: str) -> RunReport:
        started = self.clock()
        failure = self.store.get_failure(directory_url)
        if failure is not None:
            base_url = failure.base_url
        else:
            target = self.store.get_target(directory_url)
            if target is None:
                return self._failed(
                    run_id, MODE_RETRY_ONE, started, f"unknown target {directory_url}"
                )
            base_url = target.base_url
        return self._run_loop(
            run_id, MODE_RETRY_ONE, started,
            [Target(base_url=base_url, directory_url=directory_url)],
            delay=0.0,
            prepare=self._prepare_retry,
        )

    def _prepare_retry(self, target: Target) -> tuple[Target, FailureRecord | None]:
        """Clear the ledger record and make sure the target is registered.

        Returns the registered target and the record that was cleared, so a
        cancelled attempt can put it back.
        """
        url = target.directory_url
        with self.store.transaction():
            cleared = self.pipeline.ledger.get(url)
            self.pipeline.ledger.clear(url)
            if self.store.get_target(url) is None:
                self.store.import_target(target.base_url, url)
                log.info("Imported unknown target %s from failure record", url)
        return self.store.get_target(url) or target, cleared

    def _restore_failure(self, record: FailureRecord, report: RunReport) -> None:
        try:
            with self.store.transaction():
                self.pipeline.ledger.restore(record)
        except Exception as exc:
            log.exception("Could not restore failure record for %s", record.target_url)
            report.warnings.append(f"failure record lost for {record.target_url}: {exc}")

    def _failed(self, run_id: str, mode: str, started: datetime, message: str) -> RunReport:
        return RunReport(
            run_id=run_id,
            mode=mode,
            outcome=OUTCOME_FAILED,
            started_at=started,
            finished_at=self.clock(),
            message=message,
        )

    # ------------------------------------------------------------------ #
    # Loop                                                                 #
    # ------------------------------------------------------------------ #

    def _run_loop(
        self,
        run_id: str,
        mode: str,
        started: datetime,
        targets: list[Target],
        delay: float,
        prepare: Callable[[Target], tuple[Target, FailureRecord | None]] | None = None,
    ) -> RunReport:
        report = RunReport(
            run_id=run_id, mode=mode, outcome=OUTCOME_COMPLETED,
            started_at=started, total=len(targets),
        )
        with self._lock:
            self._status.total = len(targets)

        lease = self.browser_pool.lease() if self.browser_pool is not None else nullcontext()
        with lease:
            for idx, target in enumerate(targets):
                if self._stop.is_set():
                    report.outcome = OUTCOME_STOPPED
                    break
                with self._lock:
                    self._status.current_target = target.directory_url

                cleared = None
                try:
                    if prepare is not None:
                        target, cleared = prepare(target)
                    result = self.pipeline.process(
                        target, stop_requested=self._stop.is_set, run_id=run_id
                    )
                except RunCancelled as exc:
                    log.info("Run %s cancelled: %s", run_id, exc)
                    if cleared is not None:
                        self._restore_failure(cleared, report)
                    report.outcome = OUTCOME_STOPPED
                    break
                except Exception as exc:
                    log.exception("Unexpected error processing %s", target.directory_url)
                    result = self._record_unexpected(target, exc)

                self._update_schedule(target, result, report)
                self._tally(report, result)

                if idx < len(targets) - 1 and delay > 0 and self._stop.wait(delay):
                    report.outcome = OUTCOME_STOPPED
                    break

        report.finished_at = self.clock()
        if report.outcome == OUTCOME_STOPPED:
            report.message = (
                f"stopped after {report.processed} of {report.total} targets"
            )
            log.info("Run %s %s", run_id, report.message)
        elif report.successes > 0:
            self._trigger_export(report)
        return report

    def _record_unexpected(self, target: Target, exc: Exception) -> PipelineResult:
        message = f"{exc.__class__.__name__}: {exc}"
        try:
            with self.store.transaction():
                self.pipeline.ledger.record(target, CRITICAL_ERROR, message)
        except Exception:
            log.exception("Could not record failure for %s", target.directory_url)
        return PipelineResult(
            target_url=target.directory_url,
            succeeded=False,
            failure_kind=CRITICAL_ERROR,
            message=message,
        )

    def _update_schedule(self, target: Target, result: PipelineResult, report: RunReport) -> None:
        if result.succeeded:
            extractor = result.extractor
            failed_last_time = False
        else:
            extractor = target.successful_extractor
            failed_last_time = extractor is not None
        try:
            with self.store.transaction():
                self.store.update_target_schedule(
                    target.directory_url,
                    last_processed_at=self.clock(),
                    process_count=target.process_count + 1,
                    last_record_count=result.member_count,
                    successful_extractor=extractor,
                    extractor_failed_last_time=failed_last_time,
                )
        except Exception as exc:
            log.exception("Could not update schedule for %s", target.directory_url)
            report.warnings.append(f"schedule update failed for {target.directory_url}: {exc}")

    def _tally(self, report: RunReport, result: PipelineResult) -> None:
        report.results.append(result)
        report.processed += 1
        if result.succeeded:
            report.successes += 1
            if result.snapshot_id:
                report.snapshots_created += 1
            if result.change_record_id:
                report.change_records_created += 1
        else:
            report.failures += 1
            kind = result.failure_kind or CRITICAL_ERROR
            report.failures_by_kind[kind] = report.failures_by_kind.get(kind, 0) + 1
        with self._lock:
            self._status.processed = report.processed
            self._status.successes = report.successes
            self._status.failures = report.failures

    def _trigger_export(self, report: RunReport) -> None:
        if self.export_guard is None or not self.settings.export.enabled:
            return
        try:
            result = self.export_guard.run(report.run_id)
        except Exception as exc:
            log.exception("Export after run %s failed", report.run_id)
            report.warnings.append(f"export failed: {exc}")
            return
        if result is not None:
            report.export = result.to_dict()
