"""roster_watch.export

CSV roster export: one row per member of every target's latest snapshot.
ExportGuard keeps overlapping export requests from running concurrently; a
request that arrives while an export is in progress is skipped, not queued.
"""

from __future__ import annotations

import csv
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from roster_watch.models import utcnow
from roster_watch.normalize import slug_name, split_name

log = logging.getLogger(__name__)

EXPORT_COLUMNS = [
    "base_url",
    "directory_url",
    "category",
    "first_name",
    "last_name",
    "full_name",
    "title",
    "email",
    "phone",
    "profile_url",
    "fingerprint",
    "snapshot_id",
    "captured_at",
]


@dataclass
class ExportResult:
    path: Path
    row_count: int
    target_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": str(self.path),
            "row_count": self.row_count,
            "target_count": self.target_count,
        }


class RosterExporter:
    def __init__(self, store, output_dir: Path) -> None:
        self.store = store
        self.output_dir = Path(output_dir)

    def export(self, label: str | None = None) -> ExportResult:
        stamp = utcnow().strftime("%Y%m%dT%H%M%SZ")
        name = slug_name(label) or "roster"
        path = self.output_dir / f"{name}_{stamp}.csv"
        path.parent.mkdir(parents=True, exist_ok=True)

        rows = 0
        targets = 0
        with open(path, "w", newline="", encoding="utf-8") as fh:
            writer = csv.DictWriter(fh, fieldnames=EXPORT_COLUMNS)
            writer.writeheader()
            for target in self.store.list_targets():
                if not target.latest_snapshot_id:
                    continue
                snapshot = self.store.get_snapshot(target.latest_snapshot_id)
                if snapshot is None:
                    continue
                targets += 1
                for category_name, member in snapshot.iter_members():
                    first, last = split_name(member.name)
                    writer.writerow({
                        "base_url": target.base_url,
                        "directory_url": target.directory_url,
                        "category": category_name,
                        "first_name": first or "",
                        "last_name": last or "",
                        "full_name": member.name or "",
                        "title": member.title or "",
                        "email": "; ".join(member.emails),
                        "phone": "; ".join(member.phones),
                        "profile_url": member.profile_url or "",
                        "fingerprint": member.fingerprint,
                        "snapshot_id": snapshot.id,
                        "captured_at": snapshot.captured_at.isoformat(),
                    })
                    rows += 1

        log.info("Exported %d rows from %d targets to %s", rows, targets, path)
        return ExportResult(path=path, row_count=rows, target_count=targets)


class ExportGuard:
    """Single-flight wrapper: at most one export runs at a time."""

    def __init__(self, exporter: RosterExporter) -> None:
        self.exporter = exporter
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    def run(self, label: str | None = None) -> ExportResult | None:
        """Run an export, or return None if one is already in progress."""
        if not self._lock.acquire(blocking=False):
            log.warning("Export already running; skipping")
            return None
        try:
            return self.exporter.export(label)
        finally:
            self._lock.release()
