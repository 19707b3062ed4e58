"""roster_watch.identity

Stable person identity for extracted staff records.

A fingerprint is sha256 of the normalized email when the record has one,
otherwise of the normalized name. It does not depend on the target the record
came from, so the same person listed on two directories shares one Profile.
"""

from __future__ import annotations

import hashlib
from typing import Any, Mapping

from roster_watch.normalize import normalize_email, normalize_name


def fingerprint_key(email: str | None, name: str | None) -> str:
    """Return the normalized string a fingerprint is hashed from."""
    email_norm = normalize_email(email)
    if email_norm:
        return email_norm
    return normalize_name(name) or ""


def person_fingerprint(record: Any) -> str:
    """sha256(normalized_email) or sha256(normalized_name).

    Accepts a StaffRecord / Member (attribute access) or a plain mapping with
    ``email`` / ``emails`` and ``name`` keys.
    """
    if isinstance(record, Mapping):
        email = record.get("email")
        if not email and record.get("emails"):
            email = record["emails"][0]
        name = record.get("name")
    else:
        email = getattr(record, "email", None)
        if not email and getattr(record, "emails", None):
            email = record.emails[0]
        name = getattr(record, "name", None)
    key = fingerprint_key(email, name)
    return hashlib.sha256(key.encode("utf-8")).hexdigest()
