"""roster_watch.snapshots

Building immutable Snapshots from extractor output, and bounding how many of
them are kept per target.
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from datetime import datetime
from typing import Iterable

from roster_watch.identity import person_fingerprint
from roster_watch.models import (
    DEFAULT_CATEGORY,
    Category,
    Member,
    Snapshot,
    StaffRecord,
)
from roster_watch.normalize import normalize_email, normalize_phone, normalize_space, trim

log = logging.getLogger(__name__)

DEFAULT_KEEP = 2


def content_hash(document: str | bytes) -> str:
    if isinstance(document, str):
        document = document.encode("utf-8")
    return hashlib.sha256(document).hexdigest()


def member_from_record(record: StaffRecord, extracted_at: datetime) -> Member:
    """Normalize one extractor record into a snapshot Member."""
    email = normalize_email(record.email)
    phone = normalize_phone(record.phone) or trim(record.phone)
    return Member(
        fingerprint=person_fingerprint(record),
        name=normalize_space(record.name),
        title=normalize_space(record.title),
        emails=[email] if email else [],
        phones=[phone] if phone else [],
        category=normalize_space(record.category),
        profile_url=trim(record.profile_url),
        raw=record.to_dict(),
        extracted_at=extracted_at,
    )


def group_by_category(members: Iterable[Member]) -> list[Category]:
    """Group members by category label, categories in first-seen order.

    A blank label lands in the ``default`` category.
    """
    categories: dict[str, Category] = {}
    for member in members:
        label = member.category or DEFAULT_CATEGORY
        if label not in categories:
            categories[label] = Category(name=label)
        categories[label].members.append(member)
    return list(categories.values())


def build_snapshot(
    target_url: str,
    records: list[StaffRecord],
    document: str | bytes,
    fetch_path: str,
    extractor: str | None,
    captured_at: datetime,
    run_id: str | None = None,
) -> Snapshot:
    if not records:
        raise ValueError("refusing to build a snapshot from an empty extraction")
    members = [member_from_record(r, captured_at) for r in records]
    return Snapshot(
        id=str(uuid.uuid4()),
        target_url=target_url,
        captured_at=captured_at,
        run_id=run_id,
        content_hash=content_hash(document),
        fetch_path=fetch_path,
        extractor=extractor,
        categories=group_by_category(members),
    )


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------

def apply_retention(store, directory_url: str, keep: int = DEFAULT_KEEP) -> int:
    """Delete all but the ``keep`` newest snapshots of a target.

    Change records that reference a pruned snapshot at either end are deleted
    first. Returns the number of snapshots pruned. Caller manages transaction.
    """
    if keep < 1:
        raise ValueError(f"keep must be >= 1, got {keep}")
    snapshots = store.list_snapshots(directory_url)
    pruned = 0
    for old in snapshots[keep:]:
        removed_changes = store.delete_change_records_for_snapshot(old.id)
        store.delete_snapshot(old.id)
        pruned += 1
        log.debug(
            "Pruned snapshot %s of %s (%d change records)",
            old.id, directory_url, removed_changes,
        )
    return pruned
