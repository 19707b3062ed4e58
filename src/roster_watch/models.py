"""roster_watch.models

Dataclasses for targets, snapshots, profiles, change records and the failure
ledger. Nested values (categories, change lists, raw payloads) round-trip
through ``to_dict`` / ``from_dict`` so they can be stored as JSON documents.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

FETCH_FAILED = "fetch_failed"
NO_DATA = "no_data"
PARSING_FAILED = "parsing_failed"
CRITICAL_ERROR = "critical_error"

VALID_FAILURE_KINDS = frozenset({FETCH_FAILED, NO_DATA, PARSING_FAILED, CRITICAL_ERROR})

FETCH_PATH_PRIMARY = "primary"
FETCH_PATH_FALLBACK = "fallback"

DEFAULT_CATEGORY = "default"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dt_out(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _dt_in(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


# ---------------------------------------------------------------------------
# Extraction output
# ---------------------------------------------------------------------------

@dataclass
class StaffRecord:
    """One person as produced by an extractor, before fingerprinting."""

    name: str | None
    title: str | None = None
    email: str | None = None
    phone: str | None = None
    category: str | None = None
    profile_url: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "title": self.title,
            "email": self.email,
            "phone": self.phone,
            "category": self.category,
            "profile_url": self.profile_url,
            **({"raw": self.raw} if self.raw else {}),
        }


# ---------------------------------------------------------------------------
# Snapshot content
# ---------------------------------------------------------------------------

@dataclass
class Member:
    fingerprint: str
    name: str | None
    title: str | None
    emails: list[str]
    phones: list[str]
    category: str | None
    profile_url: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)
    extracted_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "name": self.name,
            "title": self.title,
            "emails": list(self.emails),
            "phones": list(self.phones),
            "category": self.category,
            "profile_url": self.profile_url,
            "raw": self.raw,
            "extracted_at": _dt_out(self.extracted_at),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Member":
        return cls(
            fingerprint=d["fingerprint"],
            name=d.get("name"),
            title=d.get("title"),
            emails=list(d.get("emails") or []),
            phones=list(d.get("phones") or []),
            category=d.get("category"),
            profile_url=d.get("profile_url"),
            raw=dict(d.get("raw") or {}),
            extracted_at=_dt_in(d.get("extracted_at")),
        )


@dataclass
class Category:
    name: str
    members: list[Member] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.members)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "members": [m.to_dict() for m in self.members],
            "count": self.count,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Category":
        return cls(
            name=d["name"],
            members=[Member.from_dict(m) for m in d.get("members") or []],
        )


@dataclass
class Snapshot:
    """Immutable capture of one target's roster."""

    id: str
    target_url: str
    captured_at: datetime
    run_id: str | None
    content_hash: str
    fetch_path: str
    extractor: str | None
    categories: list[Category] = field(default_factory=list)

    @property
    def total_count(self) -> int:
        return sum(c.count for c in self.categories)

    def iter_members(self):
        for category in self.categories:
            for member in category.members:
                yield category.name, member

    def categories_to_json(self) -> list[dict[str, Any]]:
        return [c.to_dict() for c in self.categories]


# ---------------------------------------------------------------------------
# Target registration
# ---------------------------------------------------------------------------

@dataclass
class Target:
    base_url: str
    directory_url: str
    successful_extractor: str | None = None
    extractor_failed_last_time: bool = False
    last_processed_at: datetime | None = None
    last_scraped_at: datetime | None = None
    process_count: int = 0
    last_record_count: int = 0
    is_active: bool = True
    latest_snapshot_id: str | None = None
    created_at: datetime | None = None

    @property
    def preferred_extractor(self) -> str | None:
        """Extractor to try first, unless it came up empty last time."""
        if self.successful_extractor and not self.extractor_failed_last_time:
            return self.successful_extractor
        return None


# ---------------------------------------------------------------------------
# Cross-snapshot identity
# ---------------------------------------------------------------------------

@dataclass
class Profile:
    fingerprint: str
    canonical_name: str | None
    title: str | None
    emails: list[str]
    phones: list[str]
    profile_url: str | None
    categories: list[str]
    first_seen_at: datetime
    last_seen_at: datetime
    last_target_url: str
    last_snapshot_id: str | None


# ---------------------------------------------------------------------------
# Change detection
# ---------------------------------------------------------------------------

@dataclass
class PersonView:
    """One fingerprint as seen across all categories of a snapshot."""

    fingerprint: str
    name: str | None
    categories: list[str]
    data: Member

    def to_dict(self) -> dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "name": self.name,
            "categories": list(self.categories),
            "data": self.data.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "PersonView":
        return cls(
            fingerprint=d["fingerprint"],
            name=d.get("name"),
            categories=list(d.get("categories") or []),
            data=Member.from_dict(d["data"]),
        )


@dataclass
class MemberUpdate:
    fingerprint: str
    name: str | None
    before: PersonView
    after: PersonView
    diffs: dict[str, dict[str, Any]]

    def to_dict(self) -> dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "name": self.name,
            "before": self.before.to_dict(),
            "after": self.after.to_dict(),
            "diffs": self.diffs,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "MemberUpdate":
        return cls(
            fingerprint=d["fingerprint"],
            name=d.get("name"),
            before=PersonView.from_dict(d["before"]),
            after=PersonView.from_dict(d["after"]),
            diffs=dict(d.get("diffs") or {}),
        )


@dataclass
class ChangeSet:
    added: list[PersonView] = field(default_factory=list)
    removed: list[PersonView] = field(default_factory=list)
    updated: list[MemberUpdate] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.updated)

    def summary(self) -> dict[str, int]:
        return {
            "added": len(self.added),
            "removed": len(self.removed),
            "updated": len(self.updated),
        }


@dataclass
class ChangeRecord:
    id: str
    target_url: str
    from_snapshot_id: str
    to_snapshot_id: str
    changes: ChangeSet
    created_at: datetime


# ---------------------------------------------------------------------------
# Failure ledger
# ---------------------------------------------------------------------------

@dataclass
class FailureRecord:
    target_url: str
    base_url: str
    kind: str
    message: str | None
    html_snippet: str | None
    first_failed_at: datetime
    last_attempt_at: datetime
    attempt_count: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_url": self.target_url,
            "base_url": self.base_url,
            "kind": self.kind,
            "message": self.message,
            "attempt_count": self.attempt_count,
            "first_failed_at": _dt_out(self.first_failed_at),
            "last_attempt_at": _dt_out(self.last_attempt_at),
            "html_snippet": self.html_snippet[:200] if self.html_snippet else None,
        }
