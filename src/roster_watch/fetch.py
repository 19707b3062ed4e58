"""roster_watch.fetch

Primary (plain HTTP) fetch of a directory page.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

import requests

log = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "roster-watch/0.1 (+staff directory change tracking)"


class FetchError(Exception):
    """Primary fetch failed: transport error or non-2xx status."""

    def __init__(self, url: str, reason: str, status_code: int | None = None) -> None:
        super().__init__(f"{reason} fetching {url}")
        self.url = url
        self.reason = reason
        self.status_code = status_code


@dataclass
class FetchedDocument:
    url: str
    final_url: str
    status_code: int
    text: str


class HttpFetcher:
    """GET with a shared requests.Session.

    429 and 5xx responses are retried up to ``max_attempts`` with a linear
    backoff; any other non-2xx status fails immediately.
    """

    def __init__(
        self,
        session: requests.Session | None = None,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = 30.0,
        max_attempts: int = 2,
        backoff_seconds: float = 1.0,
    ) -> None:
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": user_agent})
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds

    def fetch(self, url: str) -> FetchedDocument:
        for attempt in range(1, self.max_attempts + 1):
            try:
                resp = self.session.get(url, timeout=self.timeout)
            except requests.RequestException as exc:
                error = FetchError(url, f"network error ({exc.__class__.__name__}: {exc})")
            else:
                if resp.status_code == 429 or resp.status_code >= 500:
                    error = FetchError(url, f"HTTP {resp.status_code}", resp.status_code)
                elif not 200 <= resp.status_code < 300:
                    raise FetchError(url, f"HTTP {resp.status_code}", resp.status_code)
                else:
                    return FetchedDocument(
                        url=url,
                        final_url=resp.url or url,
                        status_code=resp.status_code,
                        text=resp.text,
                    )

            if attempt == self.max_attempts:
                raise error
            log.debug("Attempt %d for %s: %s", attempt, url, error)
            time.sleep(self.backoff_seconds * attempt)

    def close(self) -> None:
        self.session.close()
