"""Unit-test fakes: in-memory store, scripted fetcher and renderer, step clock.

No network, no browser, no database.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Iterable

import pytest

from roster_watch.extractors import default_registry
from roster_watch.fetch import FetchedDocument, FetchError
from roster_watch.models import Target
from roster_watch.pipeline import ExtractionPipeline
from roster_watch.render import RenderNavigationError
from roster_watch.store import MemoryStore

DIRECTORY_URL = "https://athletics.example.edu/staff-directory"
BASE_URL = "https://athletics.example.edu"


class StepClock:
    """Returns start, start+step, start+2*step, ... on successive calls."""

    def __init__(self, start: datetime | None = None, step: timedelta = timedelta(seconds=1)):
        self.now = start or datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = current + self.step
        return current


class ScriptedFetcher:
    """url → html string, or an exception instance to raise."""

    def __init__(self, pages: dict | None = None):
        self.pages = dict(pages or {})
        self.calls: list[str] = []

    def fetch(self, url: str) -> FetchedDocument:
        self.calls.append(url)
        page = self.pages.get(url, FetchError(url, "HTTP 404", 404))
        if isinstance(page, Exception):
            raise page
        return FetchedDocument(url=url, final_url=url, status_code=200, text=page)


class ScriptedRenderer:
    def __init__(self, pages: dict | None = None):
        self.pages = dict(pages or {})
        self.calls: list[str] = []

    def render(self, url: str) -> str:
        self.calls.append(url)
        page = self.pages.get(url, RenderNavigationError(f"render failed for {url}: net::ERR"))
        if isinstance(page, Exception):
            raise page
        return page


def roster_table(people: Iterable[dict], heading: str | None = "Coaching Staff") -> str:
    """HTML section: optional <h2> heading followed by a Name/Title/Email/Phone table."""
    rows = []
    for p in people:
        email = p.get("email")
        email_cell = f'<a href="mailto:{email}">{email}</a>' if email else ""
        rows.append(
            "<tr>"
            f"<td>{p.get('name', '')}</td>"
            f"<td>{p.get('title') or ''}</td>"
            f"<td>{email_cell}</td>"
            f"<td>{p.get('phone') or ''}</td>"
            "</tr>"
        )
    head = f"<h2>{heading}</h2>" if heading else ""
    return (
        f"{head}<table><tr><th>Name</th><th>Title</th><th>Email</th><th>Phone</th></tr>"
        + "".join(rows)
        + "</table>"
    )


def page(*sections: str) -> str:
    return "<html><body>" + "".join(sections) + "</body></html>"


EMPTY_PAGE = "<html><body><p>Loading staff directory...</p></body></html>"


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def target(store: MemoryStore) -> Target:
    store.import_target(BASE_URL, DIRECTORY_URL)
    return store.get_target(DIRECTORY_URL)


@pytest.fixture
def clock() -> StepClock:
    return StepClock()


@pytest.fixture
def make_pipeline(store, clock):
    def _make(fetch_pages=None, render_pages=None, renderer=True, keep=2):
        fetcher = ScriptedFetcher(fetch_pages)
        rend = ScriptedRenderer(render_pages) if renderer else None
        pipeline = ExtractionPipeline(
            store,
            fetcher,
            default_registry(),
            renderer=rend,
            keep_snapshots=keep,
            snippet_chars=5000,
            clock=clock,
        )
        return pipeline, fetcher, rend

    return _make


class _Html:
    table = staticmethod(roster_table)
    page = staticmethod(page)
    empty = EMPTY_PAGE


@pytest.fixture
def html() -> _Html:
    """HTML builders: html.table(people, heading), html.page(*sections), html.empty."""
    return _Html()
