"""roster_watch.render

Rendering fallback: fetch a page through headless Chrome when the plain HTTP
document yields nothing.

BrowserPool owns the WebDriver instances:
  - checkout(): scoped use of one driver. Creation is lazy and reserved under
    the pool's Condition, so callers arriving while a driver is being launched
    wait for it instead of starting a second browser.
  - lease(): held by a run for its whole duration. When the last lease is
    released a Timer tears idle drivers down after idle_teardown_seconds; a
    new lease cancels the pending teardown.
  - close(): immediate teardown.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Protocol

from selenium import webdriver
from selenium.common.exceptions import TimeoutException, WebDriverException
from selenium.webdriver.chrome.options import Options

log = logging.getLogger(__name__)

DEFAULT_WINDOW_SIZE = "1280,720"


class RenderError(Exception):
    """Rendering fallback could not produce a document."""


class RenderTimeoutError(RenderError):
    pass


class RenderNavigationError(RenderError):
    pass


class Renderer(Protocol):
    def render(self, url: str) -> str:
        ...


def _quit(driver: Any) -> None:
    try:
        driver.quit()
    except WebDriverException as exc:
        log.warning("Browser quit failed: %s", exc)


# ---------------------------------------------------------------------------
# Pool
# ---------------------------------------------------------------------------

class BrowserPool:
    def __init__(
        self,
        factory: Callable[[], Any],
        size: int = 1,
        idle_teardown_seconds: float = 60.0,
    ) -> None:
        if size < 1:
            raise ValueError(f"pool size must be >= 1, got {size}")
        self._factory = factory
        self._size = size
        self._idle_teardown_seconds = idle_teardown_seconds
        self._cond = threading.Condition()
        self._idle: list[Any] = []
        self._total = 0  # created or being created
        self._leases = 0
        self._timer: threading.Timer | None = None
        self._closed = False

    @property
    def total(self) -> int:
        with self._cond:
            return self._total

    @property
    def idle_count(self) -> int:
        with self._cond:
            return len(self._idle)

    @property
    def lease_count(self) -> int:
        with self._cond:
            return self._leases

    @property
    def teardown_pending(self) -> bool:
        with self._cond:
            return self._timer is not None

    def _acquire(self) -> tuple[Any, bool]:
        with self._cond:
            while True:
                if self._closed:
                    raise RuntimeError("browser pool is closed")
                if self._idle:
                    return self._idle.pop(), False
                if self._total < self._size:
                    self._total += 1
                    return None, True
                self._cond.wait()

    def _discard(self, driver: Any) -> None:
        with self._cond:
            self._total -= 1
            self._cond.notify_all()
        if driver is not None:
            _quit(driver)

    @contextmanager
    def checkout(self) -> Iterator[Any]:
        driver, must_create = self._acquire()
        if must_create:
            try:
                driver = self._factory()
            except BaseException:
                self._discard(None)
                raise
            log.info("Browser launched (%d/%d)", self.total, self._size)

        try:
            yield driver
        except WebDriverException:
            self._discard(driver)
            raise
        except BaseException:
            self._release(driver)
            raise
        else:
            self._release(driver)

    def _release(self, driver: Any) -> None:
        with self._cond:
            if not self._closed:
                self._idle.append(driver)
                self._cond.notify_all()
                return
            self._total -= 1
            self._cond.notify_all()
        _quit(driver)

    @contextmanager
    def lease(self) -> Iterator["BrowserPool"]:
        with self._cond:
            self._leases += 1
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        try:
            yield self
        finally:
            with self._cond:
                self._leases -= 1
                if self._leases == 0 and not self._closed:
                    self._timer = threading.Timer(
                        self._idle_teardown_seconds, self._teardown_idle
                    )
                    self._timer.daemon = True
                    self._timer.start()

    def _teardown_idle(self) -> None:
        with self._cond:
            if self._leases > 0:
                return
            self._timer = None
            drivers, self._idle = self._idle, []
            self._total -= len(drivers)
            self._cond.notify_all()
        for driver in drivers:
            _quit(driver)
        if drivers:
            log.info("Closed %d idle browser(s)", len(drivers))

    def close(self) -> None:
        with self._cond:
            self._closed = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            drivers, self._idle = self._idle, []
            self._total -= len(drivers)
            self._cond.notify_all()
        for driver in drivers:
            _quit(driver)


# ---------------------------------------------------------------------------
# Selenium renderer
# ---------------------------------------------------------------------------

class SeleniumRenderer:
    def __init__(self, pool: BrowserPool, settle_seconds: float = 1.0) -> None:
        self.pool = pool
        self.settle_seconds = settle_seconds

    def render(self, url: str) -> str:
        try:
            with self.pool.checkout() as driver:
                driver.get(url)
                if self.settle_seconds > 0:
                    time.sleep(self.settle_seconds)
                return driver.page_source
        except TimeoutException as exc:
            raise RenderTimeoutError(f"render timed out for {url}: {exc.msg}") from exc
        except WebDriverException as exc:
            raise RenderNavigationError(f"render failed for {url}: {exc.msg}") from exc


def chrome_options(user_agent: str | None = None, window_size: str = DEFAULT_WINDOW_SIZE) -> Options:
    options = Options()
    options.add_argument("--headless=new")
    options.add_argument("--no-sandbox")
    options.add_argument("--disable-dev-shm-usage")
    options.add_argument("--disable-gpu")
    options.add_argument(f"--window-size={window_size}")
    if user_agent:
        options.add_argument(f"user-agent={user_agent}")
    return options


def chrome_driver_factory(
    user_agent: str | None = None,
    page_load_timeout: float = 30.0,
    window_size: str = DEFAULT_WINDOW_SIZE,
) -> Callable[[], webdriver.Chrome]:
    """Return a zero-argument factory launching a headless Chrome driver."""

    def _factory() -> webdriver.Chrome:
        driver = webdriver.Chrome(options=chrome_options(user_agent, window_size))
        driver.set_page_load_timeout(page_load_timeout)
        return driver

    return _factory
