"""roster_watch.extractors

Extractors turn a directory document into StaffRecords.

Every extractor has a ``name`` label and ``extract(document, source_url)``
returning a (possibly empty) list of records. The registry runs them in order
and keeps the first non-empty result; the winning label is stored on the
target so the next run tries it first.

Shipped extractors (all BeautifulSoup, html.parser):
  heading_table  - tables with a header row (Name / Title / Email / Phone);
                   category is the closest preceding h1-h4 heading.
  person_card    - repeated blocks anchored on mailto: links.
  generic_table  - positional fallback: name in cell 0, title in cell 1.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, Protocol
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag

from roster_watch.models import StaffRecord
from roster_watch.normalize import normalize_space, trim

log = logging.getLogger(__name__)

_PHONE_RE = re.compile(r"\(?\d{3}\)?[\s.\-]?\d{3}[\s.\-]?\d{4}")
_EMAIL_RE = re.compile(r"[\w.+\-']+@[\w\-]+(?:\.[\w\-]+)+")
_MAILTO_RE = re.compile(r"^\s*mailto:", re.IGNORECASE)
_TEL_RE = re.compile(r"^\s*tel:", re.IGNORECASE)

_CATEGORY_HEADINGS = ["h1", "h2", "h3", "h4"]


class Extractor(Protocol):
    name: str

    def extract(self, document: str, source_url: str) -> list[StaffRecord]:
        ...


@dataclass
class ExtractionResult:
    records: list[StaffRecord] = field(default_factory=list)
    extractor: str | None = None

    @property
    def found(self) -> bool:
        return bool(self.records)


# ---------------------------------------------------------------------------
# Cell helpers
# ---------------------------------------------------------------------------

def _text(el: Tag | None) -> str | None:
    if el is None:
        return None
    return normalize_space(el.get_text(separator=" ", strip=True))


def _mailto(el: Tag) -> str | None:
    a = el.find("a", href=_MAILTO_RE)
    if a is not None:
        return trim(a["href"].strip()[7:].split("?", 1)[0])
    m = _EMAIL_RE.search(el.get_text(" ", strip=True))
    return m.group(0) if m else None


def _phone(el: Tag) -> str | None:
    a = el.find("a", href=_TEL_RE)
    if a is not None:
        return trim(a["href"].strip()[4:])
    m = _PHONE_RE.search(el.get_text(" ", strip=True))
    return m.group(0) if m else None


def _profile_link(el: Tag, source_url: str) -> str | None:
    for a in el.find_all("a", href=True):
        href = a["href"].strip()
        if href.lower().startswith(("mailto:", "tel:", "javascript:", "#")):
            continue
        return urljoin(source_url, href)
    return None


def _preceding_heading(el: Tag) -> str | None:
    return _text(el.find_previous(_CATEGORY_HEADINGS))


# ---------------------------------------------------------------------------
# heading_table
# ---------------------------------------------------------------------------

_HEADER_ALIASES = {
    "name": ("name", "full name", "staff", "staff member", "coach", "employee"),
    "title": ("title", "position", "role", "job title"),
    "email": ("email", "e-mail", "email address"),
    "phone": ("phone", "telephone", "phone number", "office phone"),
}


def _classify_header(label: str) -> str | None:
    label = label.lower().rstrip(":").strip()
    for key, aliases in _HEADER_ALIASES.items():
        if label in aliases:
            return key
    return None


class HeadingTableExtractor:
    """Header-driven table parser; the closest preceding heading is the category."""

    name = "heading_table"

    def extract(self, document: str, source_url: str) -> list[StaffRecord]:
        soup = BeautifulSoup(document, "html.parser")
        records: list[StaffRecord] = []
        for table in soup.find_all("table"):
            rows = table.find_all("tr")
            if not rows:
                continue
            header_cells = rows[0].find_all(["th", "td"])
            columns = {}
            for idx, cell in enumerate(header_cells):
                key = _classify_header(cell.get_text(" ", strip=True))
                if key and key not in columns:
                    columns[key] = idx
            if "name" not in columns:
                continue
            category = _text(table.find("caption")) or _preceding_heading(table)
            for tr in rows[1:]:
                cells = tr.find_all(["td", "th"])
                if len(cells) <= columns["name"]:
                    continue
                name_cell = cells[columns["name"]]
                name = _text(name_cell)
                if not name:
                    continue

                def _col(key: str) -> Tag | None:
                    idx = columns.get(key)
                    return cells[idx] if idx is not None and idx < len(cells) else None

                email_cell = _col("email")
                phone_cell = _col("phone")
                records.append(
                    StaffRecord(
                        name=name,
                        title=_text(_col("title")),
                        email=_mailto(email_cell) if email_cell is not None else _mailto(tr),
                        phone=_phone(phone_cell) if phone_cell is not None else None,
                        category=category,
                        profile_url=_profile_link(name_cell, source_url),
                    )
                )
        return records


# ---------------------------------------------------------------------------
# person_card
# ---------------------------------------------------------------------------

_CARD_CONTAINERS = ["li", "article", "div", "section", "td"]
_NAME_TAGS = ["h3", "h4", "h5", "h6", "strong", "b"]
_TITLE_CLASS_RE = re.compile(r"title|position|role|job", re.IGNORECASE)


class PersonCardExtractor:
    """One record per block containing a mailto: link.

    The block is the nearest li/article/div/section/td ancestor of the link.
    Name comes from the first h3-h6/strong/b inside the block; category from
    the closest h1-h2 heading before it.
    """

    name = "person_card"

    @staticmethod
    def _card_for(anchor: Tag) -> Tag | None:
        """Smallest enclosing block that has a name element and one address."""
        for parent in anchor.find_parents(_CARD_CONTAINERS):
            if parent.find(_NAME_TAGS) is None:
                continue
            addresses = {
                a["href"].strip().lower() for a in parent.find_all("a", href=_MAILTO_RE)
            }
            return parent if len(addresses) == 1 else None
        return None

    def extract(self, document: str, source_url: str) -> list[StaffRecord]:
        soup = BeautifulSoup(document, "html.parser")
        records: list[StaffRecord] = []
        seen: set[int] = set()
        for anchor in soup.find_all("a", href=_MAILTO_RE):
            card = self._card_for(anchor)
            if card is None or id(card) in seen:
                continue
            seen.add(id(card))
            name_el = card.find(_NAME_TAGS)
            name = _text(name_el)
            if not name:
                continue
            title_el = card.find(class_=_TITLE_CLASS_RE)
            records.append(
                StaffRecord(
                    name=name,
                    title=_text(title_el),
                    email=_mailto(card),
                    phone=_phone(card),
                    category=_text(card.find_previous(["h1", "h2"])),
                    profile_url=_profile_link(name_el, source_url),
                )
            )
        return records


# ---------------------------------------------------------------------------
# generic_table
# ---------------------------------------------------------------------------

class GenericTableExtractor:
    """Last resort: any row with >= 2 data cells is name, title, ..."""

    name = "generic_table"

    def extract(self, document: str, source_url: str) -> list[StaffRecord]:
        soup = BeautifulSoup(document, "html.parser")
        records: list[StaffRecord] = []
        for tr in soup.select("table tr"):
            cells = tr.find_all("td")
            if len(cells) < 2:
                continue
            name = _text(cells[0])
            if not name:
                continue
            records.append(
                StaffRecord(
                    name=name,
                    title=_text(cells[1]),
                    email=_mailto(tr),
                    phone=_phone(tr),
                    profile_url=_profile_link(cells[0], source_url),
                )
            )
        return records


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class ExtractorRegistry:
    """Ordered extractors; first non-empty result wins."""

    def __init__(self, extractors: Iterable[Extractor] = ()) -> None:
        self._extractors: list[Extractor] = []
        for ext in extractors:
            self.register(ext)

    def register(self, extractor: Extractor) -> None:
        if any(e.name == extractor.name for e in self._extractors):
            raise ValueError(f"extractor {extractor.name!r} already registered")
        self._extractors.append(extractor)

    @property
    def names(self) -> list[str]:
        return [e.name for e in self._extractors]

    def get(self, name: str) -> Extractor | None:
        for e in self._extractors:
            if e.name == name:
                return e
        return None

    def ordered(self, preferred: str | None = None) -> list[Extractor]:
        """Registry order, with ``preferred`` moved to the front when known."""
        first = self.get(preferred) if preferred else None
        if first is None:
            return list(self._extractors)
        return [first] + [e for e in self._extractors if e is not first]

    def extract(
        self,
        document: str,
        source_url: str,
        preferred: str | None = None,
    ) -> ExtractionResult:
        for ext in self.ordered(preferred):
            try:
                records = ext.extract(document, source_url)
            except Exception as exc:  # noqa: BLE001
                log.warning("Extractor %s failed on %s: %s", ext.name, source_url, exc)
                continue
            if records:
                return ExtractionResult(records=list(records), extractor=ext.name)
        return ExtractionResult()


def default_registry() -> ExtractorRegistry:
    return ExtractorRegistry(
        [HeadingTableExtractor(), PersonCardExtractor(), GenericTableExtractor()]
    )
