"""Normalization functions for staff-directory records.

Every helper takes a possibly-missing string and returns None for blank input.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Any, Iterable


def trim(value: str | None) -> str | None:
    """Stripped value, or None when nothing is left."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


def normalize_space(value: str | None) -> str | None:
    """Trimmed value with each whitespace run reduced to one space."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


def normalize_email(value: str | None) -> str | None:
    """Lowercase and trim an email address.

    A leading ``mailto:`` scheme (common in scraped anchors) is dropped.
    """
    v = trim(value)
    if v is None:
        return None
    if v.lower().startswith("mailto:"):
        v = trim(v[7:].split("?", 1)[0])
        if v is None:
            return None
    return v.lower()


def normalize_phone(value: str | None) -> str | None:
    """Digits-only phone with a leading "+", or None.

    Ten digits are treated as a North American number and get a "+1" country
    code. Fewer than seven digits is not a phone number.
    """
    v = trim(value)
    if v is None:
        return None
    digits = re.sub(r"\D", "", v)
    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    if len(digits) >= 7:
        return f"+{digits}"
    return None


def normalize_name(value: str | None) -> str | None:
    """Lowercase, collapse whitespace, trim.

    Punctuation is kept: "O'Neil" and "ONeil" are different people as far as
    the roster is concerned.
    """
    v = normalize_space(value)
    if v is None:
        return None
    return v.lower()


# ---------------------------------------------------------------------------
# Export name columns
# ---------------------------------------------------------------------------

def split_name(full_name: str | None) -> tuple[str | None, str | None]:
    """Split a display name into (first, last).

    "Last, First" → ("First", "Last"); "First Middle Last" → ("First Middle", "Last");
    a single token is returned as the first name.
    """
    v = normalize_space(full_name)
    if not v:
        return (None, None)
    if "," in v:
        last, first = v.split(",", 1)
        return (trim(first), trim(last))
    tokens = v.split()
    if len(tokens) == 1:
        return (tokens[0], None)
    return (" ".join(tokens[:-1]), tokens[-1])


def slug_name(value: str | None) -> str | None:
    """Lowercase alnum with '-' separators."""
    v = trim(value)
    if v is None:
        return None
    v = unicodedata.normalize("NFKD", v)
    v = "".join(c for c in v if not unicodedata.combining(c))
    v = v.lower()
    v = re.sub(r"[^a-z0-9]+", "-", v)
    v = v.strip("-")
    return v if v else None


# ---------------------------------------------------------------------------
# comparison
# ---------------------------------------------------------------------------

def compare_scalar(value: Any) -> str | None:
    """Comparison form of a scalar field: trimmed, casefolded; blank → None."""
    if value is None:
        return None
    return trim(str(value).casefold())


def compare_set(values: Iterable[Any] | None) -> frozenset[str]:
    """Comparison form of a list field: order-insensitive set of scalars."""
    if not values:
        return frozenset()
    out = set()
    for v in values:
        c = compare_scalar(v)
        if c is not None:
            out.add(c)
    return frozenset(out)


def truncate(value: str | None, limit: int) -> str | None:
    """Return at most ``limit`` characters of value (None passes through)."""
    if value is None:
        return None
    return value[:limit]
