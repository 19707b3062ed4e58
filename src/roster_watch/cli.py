"""roster_watch.cli

Command-line entry point (``roster-watch``).

One command, dispatched on ``--mode``:
  full_run         harvest every target due this month
  retry_failures   re-attempt every target in the failure ledger
  retry_one        clear one failure record (--target-url) and re-attempt it
  list_failures    print the failure ledger
  clear_failures   delete one record (--target-url) or all of them
  import_targets   register targets from a CSV/JSON file (--targets-path)
  reset_extractor  forget a target's remembered extractor (--target-url)
  export           write the CSV roster of every target's latest snapshot

Every mode writes a JSON report to ./artifacts/reports/<run_id>.json.

The monthly harvest is an external scheduler (cron, a Kubernetes CronJob)
calling ``--mode full_run``. Runs from any number of processes are serialized
by a PostgreSQL advisory lock; a run started while another holds it exits 1
with outcome ``rejected``.
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from pathlib import Path
from typing import Any

import click
import psycopg

from roster_watch.config import Settings, SettingsValidationError, load_settings
from roster_watch.export import ExportGuard, RosterExporter
from roster_watch.extractors import default_registry
from roster_watch.fetch import HttpFetcher
from roster_watch.ledger import FailureLedger
from roster_watch.models import utcnow
from roster_watch.orchestrator import (
    MODE_FULL,
    MODE_RETRY,
    MODE_RETRY_ONE,
    OUTCOME_FAILED,
    OUTCOME_REJECTED,
    Orchestrator,
    build_run_summary,
)
from roster_watch.pipeline import ExtractionPipeline
from roster_watch.render import BrowserPool, SeleniumRenderer, chrome_driver_factory
from roster_watch.store import PostgresStore
from roster_watch.targets import TargetFileError, import_targets

MODES = [
    MODE_FULL,
    MODE_RETRY,
    MODE_RETRY_ONE,
    "list_failures",
    "clear_failures",
    "import_targets",
    "reset_extractor",
    "export",
]


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    settings: Settings,
    payload: dict[str, Any],
    reports_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": utcnow().isoformat(),
        "dry_run": dry_run,
        "settings_path": settings.source_path,
        "settings_hash": settings.yaml_hash,
        **payload,
    }
    report_path = reports_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

def build_orchestrator(
    store: PostgresStore,
    settings: Settings,
    export_dir: Path | None,
    use_renderer: bool,
    with_export: bool,
) -> tuple[Orchestrator, HttpFetcher, BrowserPool | None]:
    fetcher = HttpFetcher(
        user_agent=settings.http.user_agent,
        timeout=settings.http.timeout_seconds,
        max_attempts=settings.http.max_attempts,
        backoff_seconds=settings.http.backoff_seconds,
    )
    pool = None
    renderer = None
    if use_renderer:
        pool = BrowserPool(
            chrome_driver_factory(
                user_agent=settings.http.user_agent,
                page_load_timeout=settings.render.page_load_timeout_seconds,
                window_size=settings.render.window_size,
            ),
            size=settings.render.pool_size,
            idle_teardown_seconds=settings.render.idle_teardown_seconds,
        )
        renderer = SeleniumRenderer(pool, settle_seconds=settings.render.settle_seconds)
    pipeline = ExtractionPipeline(
        store,
        fetcher,
        default_registry(),
        renderer=renderer,
        keep_snapshots=settings.retention.keep_snapshots,
        snippet_chars=settings.ledger.snippet_chars,
    )
    guard = None
    if with_export:
        guard = ExportGuard(
            RosterExporter(store, export_dir or Path(settings.export.output_dir))
        )
    orchestrator = Orchestrator(
        store, pipeline, settings=settings, export_guard=guard, browser_pool=pool
    )
    return orchestrator, fetcher, pool


def _run_in_background(orchestrator: Orchestrator, mode: str, run_id: str, target_url: str | None):
    """Run on a worker thread so Ctrl-C becomes a cooperative stop."""
    if mode == MODE_FULL:
        thread = orchestrator.start_full(run_id=run_id)
    elif mode == MODE_RETRY:
        thread = orchestrator.start_retry(run_id=run_id)
    else:
        return orchestrator.retry_one(target_url, run_id=run_id)  # type: ignore[arg-type]
    if thread is None:
        return orchestrator.last_report
    try:
        while thread.is_alive():
            thread.join(0.5)
    except KeyboardInterrupt:
        click.echo(f"[{run_id}] Stop requested; finishing current target...", err=True)
        orchestrator.request_stop()
        thread.join()
    return orchestrator.last_report


def _require(value: str | None, flag: str, mode: str, run_id: str) -> str:
    if not value:
        click.echo(f"[{run_id}] FATAL: --mode {mode} requires {flag}", err=True)
        sys.exit(1)
    return value


# ---------------------------------------------------------------------------
# Command
# ---------------------------------------------------------------------------

@click.command()
@click.option("--mode", default=MODE_FULL, show_default=True, type=click.Choice(MODES))
@click.option("--db-dsn", required=True, help="PostgreSQL DSN")
@click.option("--config", "config_path", default=None, type=click.Path(), help="Settings YAML (defaults apply when omitted)")
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--target-url", default=None, help="[retry_one|clear_failures|reset_extractor] Directory URL")
@click.option("--targets-path", default=None, type=click.Path(), help="[import_targets] CSV or JSON file")
@click.option("--export-dir", default=None, type=click.Path(), help="Override export.output_dir")
@click.option("--no-render", is_flag=True, default=False, help="Disable the headless-browser fallback")
@click.option("--dry-run", is_flag=True, default=False, help="Roll back every database write at the end")
@click.option(
    "--log-level",
    default="INFO",
    show_default=True,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
)
def main(
    mode: str,
    db_dsn: str,
    config_path: str | None,
    run_id: str | None,
    target_url: str | None,
    targets_path: str | None,
    export_dir: str | None,
    no_render: bool,
    dry_run: bool,
    log_level: str,
) -> None:
    """Staff-directory harvesting and change tracking."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = utcnow().isoformat()

    try:
        settings = load_settings(Path(config_path) if config_path else None)
    except (SettingsValidationError, FileNotFoundError) as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    if mode == MODE_RETRY_ONE:
        _require(target_url, "--target-url", mode, run_id)
    elif mode == "reset_extractor":
        _require(target_url, "--target-url", mode, run_id)
    elif mode == "import_targets":
        _require(targets_path, "--targets-path", mode, run_id)

    conn = psycopg.connect(db_dsn, autocommit=not dry_run)
    if dry_run:
        # Open the outer transaction so every store.transaction() nests as a savepoint.
        conn.execute("SELECT 1")
    store = PostgresStore(conn)
    payload: dict[str, Any] = {}
    exit_code = 0
    try:
        if mode in (MODE_FULL, MODE_RETRY, MODE_RETRY_ONE):
            orchestrator, fetcher, pool = build_orchestrator(
                store,
                settings,
                Path(export_dir) if export_dir else None,
                use_renderer=settings.render.enabled and not no_render,
                with_export=not dry_run,
            )
            try:
                report = _run_in_background(orchestrator, mode, run_id, target_url)
            finally:
                fetcher.close()
                if pool is not None:
                    pool.close()
            click.echo(build_run_summary(report))
            payload["run"] = report.to_dict()
            if report.outcome in (OUTCOME_FAILED, OUTCOME_REJECTED):
                click.echo(f"[{run_id}] FATAL: {report.message}", err=True)
                exit_code = 1

        elif mode == "list_failures":
            failures = FailureLedger(store).list()
            for f in failures:
                click.echo(
                    f"[{run_id}] {f.kind:<15} attempts={f.attempt_count} "
                    f"last={f.last_attempt_at.isoformat()} {f.target_url} :: {f.message}"
                )
            click.echo(f"[{run_id}] {len(failures)} failure record(s)")
            payload["failures"] = [f.to_dict() for f in failures]

        elif mode == "clear_failures":
            ledger = FailureLedger(store)
            if target_url:
                removed = 1 if ledger.clear(target_url) else 0
            else:
                removed = ledger.clear_all()
            click.echo(f"[{run_id}] Cleared {removed} failure record(s)")
            payload["cleared"] = removed

        elif mode == "import_targets":
            try:
                counters = import_targets(store, Path(targets_path))  # type: ignore[arg-type]
            except TargetFileError as exc:
                click.echo(f"[{run_id}] FATAL: {exc}", err=True)
                sys.exit(1)
            click.echo(
                f"[{run_id}] Targets: read={counters.rows_read} imported={counters.imported} "
                f"existing={counters.skipped_existing} rejected={counters.rejected}"
            )
            for warning in counters.warnings[:20]:
                click.echo(f"[{run_id}] WARN: {warning}", err=True)
            payload["targets_path"] = targets_path
            payload["counters"] = counters.to_dict()

        elif mode == "reset_extractor":
            with store.transaction():
                found = store.reset_extractor(target_url)  # type: ignore[arg-type]
            if not found:
                click.echo(f"[{run_id}] FATAL: unknown target {target_url}", err=True)
                exit_code = 1
            else:
                click.echo(f"[{run_id}] Extractor label reset for {target_url}")
            payload["target_url"] = target_url

        elif mode == "export":
            exporter = RosterExporter(
                store, Path(export_dir) if export_dir else Path(settings.export.output_dir)
            )
            result = exporter.export(run_id)
            click.echo(f"[{run_id}] Exported {result.row_count} rows to {result.path}")
            payload["export"] = result.to_dict()

        if dry_run:
            conn.rollback()
            click.echo(f"[{run_id}] DRY RUN: rolled back.")
    except Exception:
        if dry_run:
            conn.rollback()
        raise
    finally:
        conn.close()

    report_path = write_run_report(run_id, started_at, mode, dry_run, settings, payload)
    click.echo(f"[{run_id}] Run report: {report_path}")
    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
