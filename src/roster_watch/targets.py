"""roster_watch.targets

Target registration from a CSV or JSON file.

CSV: header row with ``base_url,directory_url`` (``baseUrl,staffDirectory``
is accepted too). JSON: an array of objects with the same keys.
Import is insert-if-absent keyed on the directory URL; rows whose directory
URL is not an absolute http(s) URL are rejected. A missing base URL is
derived from the directory URL's origin.
"""

from __future__ import annotations

import csv
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from roster_watch.normalize import trim

log = logging.getLogger(__name__)

BASE_URL_KEYS = ("base_url", "baseUrl")
DIRECTORY_URL_KEYS = ("directory_url", "staffDirectory")


class TargetFileError(Exception):
    """Import file is missing, unreadable, or has the wrong shape."""


@dataclass
class ImportCounters:
    rows_read: int = 0
    imported: int = 0
    skipped_existing: int = 0
    rejected: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


def _is_http_url(value: str | None) -> bool:
    if not value:
        return False
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _origin(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


def _first(row: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    for k in keys:
        v = row.get(k)
        if isinstance(v, str) and trim(v):
            return trim(v)
    return None


def load_target_file(path: Path) -> list[dict[str, Any]]:
    """Read raw rows from a .csv or .json import file."""
    if not path.exists():
        raise TargetFileError(f"Target file not found: {path}")

    if path.suffix.lower() == ".json":
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise TargetFileError(f"Invalid JSON in {path}: {exc}") from exc
        if not isinstance(data, list) or not all(isinstance(r, dict) for r in data):
            raise TargetFileError(f"{path.name} must contain a JSON array of objects")
        return data

    with open(path, newline="", encoding="utf-8-sig") as fh:
        reader = csv.DictReader(fh)
        headers = {h.strip() for h in (reader.fieldnames or [])}
        if not headers & set(DIRECTORY_URL_KEYS):
            raise TargetFileError(
                f"{path.name} missing directory URL column "
                f"(one of {list(DIRECTORY_URL_KEYS)}); got {sorted(headers)}"
            )
        return [{(k or "").strip(): v for k, v in row.items()} for row in reader]


def import_targets(store, path: Path, counters: ImportCounters | None = None) -> ImportCounters:
    counters = counters or ImportCounters()
    for idx, row in enumerate(load_target_file(path), start=1):
        counters.rows_read += 1
        directory_url = _first(row, DIRECTORY_URL_KEYS)
        if not _is_http_url(directory_url):
            counters.rejected += 1
            counters.warnings.append(f"row {idx}: invalid directory URL {directory_url!r}")
            continue
        base_url = _first(row, BASE_URL_KEYS)
        if base_url is None:
            base_url = _origin(directory_url)
        elif not _is_http_url(base_url):
            counters.rejected += 1
            counters.warnings.append(f"row {idx}: invalid base URL {base_url!r}")
            continue

        with store.transaction():
            created = store.import_target(base_url, directory_url)
        if created:
            counters.imported += 1
        else:
            counters.skipped_existing += 1

    log.info(
        "Imported %d targets from %s (%d existing, %d rejected)",
        counters.imported, path, counters.skipped_existing, counters.rejected,
    )
    return counters
