"""roster_watch.ledger

Failure ledger: one record per currently-failing target.

A record is upserted on every failed attempt (attempt counter +1, first
failure time kept) and deleted as soon as the target succeeds again.
"""

from __future__ import annotations

import logging
from datetime import datetime

from roster_watch.models import VALID_FAILURE_KINDS, FailureRecord, Target, utcnow
from roster_watch.normalize import truncate

log = logging.getLogger(__name__)

DEFAULT_SNIPPET_CHARS = 5000


class FailureLedger:
    def __init__(self, store, snippet_chars: int = DEFAULT_SNIPPET_CHARS) -> None:
        self.store = store
        self.snippet_chars = snippet_chars

    def record(
        self,
        target: Target,
        kind: str,
        message: str | None,
        html_snippet: str | None = None,
        at: datetime | None = None,
    ) -> FailureRecord:
        if kind not in VALID_FAILURE_KINDS:
            raise ValueError(f"unknown failure kind {kind!r}")
        now = at or utcnow()
        stored = self.store.upsert_failure(
            FailureRecord(
                target_url=target.directory_url,
                base_url=target.base_url,
                kind=kind,
                message=message,
                html_snippet=truncate(html_snippet, self.snippet_chars),
                first_failed_at=now,
                last_attempt_at=now,
            )
        )
        log.info(
            "Recorded %s for %s (attempt %d): %s",
            kind, target.directory_url, stored.attempt_count, message,
        )
        return stored

    def resolve(self, directory_url: str) -> bool:
        """Delete the record for a target that just succeeded."""
        removed = self.store.delete_failure(directory_url)
        if removed:
            log.info("Cleared failure record for %s", directory_url)
        return removed

    def get(self, directory_url: str) -> FailureRecord | None:
        return self.store.get_failure(directory_url)

    def list(self) -> list[FailureRecord]:
        """All current failures, most recent attempt first."""
        return self.store.list_failures()

    def clear(self, directory_url: str) -> bool:
        return self.store.delete_failure(directory_url)

    def restore(self, record: FailureRecord) -> bool:
        """Put back a record removed by a retry that never ran to completion.

        Attempt count and first failure time are kept as they were. False when
        a newer record already exists.
        """
        restored = self.store.insert_failure(record)
        if restored:
            log.info("Restored failure record for %s", record.target_url)
        return restored

    def clear_all(self) -> int:
        count = self.store.delete_all_failures()
        log.info("Cleared %d failure records", count)
        return count
