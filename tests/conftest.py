"""
Pytest configuration and shared fixtures.

Test Classification:
- @pytest.mark.unit: Unit tests with no external dependencies (fast)
- @pytest.mark.integration: Several pipeline components wired together
  around a scripted rendering context (still no browser, no network)

Tests without an explicit classification marker are treated as unit tests.

Rendering context strategy:
- No test launches a browser. FakeRenderingContext answers the in-page
  scripts the way a loaded page would and records every call, so tests
  can assert on navigation order, concurrency and cookies.
- The direct HTTP path is exercised with httpx.MockTransport.
"""

import asyncio
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import pytest
import pytest_asyncio

from clearpass.crawler.page_scripts import EXTRACT_PAGE_JS, ORIGIN_READY_JS, SCRIPTED_POST_JS

# =============================================================================
# Sample pages
# =============================================================================

GENUINE_TITLE = "Chapter 1"
GENUINE_HTML = (
    "<html><head><title>Chapter 1</title></head>"
    "<body><article><p>It was a bright cold day in April.</p></article></body></html>"
)
CHALLENGE_TITLE = "Just a moment..."
CHALLENGE_HTML = (
    "<html><head><title>Just a moment...</title></head>"
    '<body><div id="challenge-running"><div id="cf-browser-verification">'
    "Checking your browser before accessing example.com.</div></div>"
    "<script>window._cf_chl_opt = {cvId: '2'};</script></body></html>"
)
EMPTY_HTML = "<html><head></head><body></body></html>"


def _strip_nonce(url: str) -> str:
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != "_cpn"]
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), ""))


# =============================================================================
# Scripted rendering context
# =============================================================================


class FakeRenderingContext:
    """Scripted stand-in for a browser page.

    Pages are looked up by the loaded URL with the navigation nonce
    removed. Each extraction consumes the next snapshot of that URL's
    sequence; the last snapshot stays in place.
    """

    def __init__(self, start_url: str = "about:blank"):
        self.current_url = start_url
        self.pages: dict[str, list[tuple[str, str]]] = {}
        self.default_page: tuple[str, str] = (GENUINE_TITLE, GENUINE_HTML)
        self.redirects: dict[str, str] = {}
        self.cookie_jar: dict[str, list[dict[str, Any]]] = {}

        self.navigate_delay = 0.0
        self.evaluate_delay = 0.0
        self.navigate_error: Exception | None = None
        self.navigate_hook: Callable[[str], None] | None = None

        # Extractions report these URLs instead of the loaded one, in order
        self.stale_urls: list[str] = []
        self.extract_message: Any = None  # Overrides the extraction message
        # Extractions raise these in order (None lets an extraction through)
        self.extract_errors: list[Exception | None] = []
        self.post_message: Any = None  # Overrides the scripted POST message

        self.navigations: list[str] = []
        self.extractions: list[str] = []
        self.posts: list[dict[str, Any]] = []
        self.active = 0
        self.max_active = 0

    # -------------------------------------------------------------------------
    # Scripting helpers
    # -------------------------------------------------------------------------

    def set_pages(self, url: str, *snapshots: tuple[str, str]) -> None:
        self.pages[_strip_nonce(url)] = list(snapshots)

    def serve(self, url: str, title: str, html: str) -> None:
        """Replace whatever a URL shows from now on."""
        self.set_pages(url, (title, html))

    def set_cookies(self, domain: str, *cookies: dict[str, Any]) -> None:
        self.cookie_jar[domain] = list(cookies)

    # -------------------------------------------------------------------------
    # RenderingContext protocol
    # -------------------------------------------------------------------------

    async def navigate(self, url: str, timeout: float) -> str:
        self._enter()
        try:
            self.navigations.append(url)
            if self.navigate_hook is not None:
                self.navigate_hook(url)
            if self.navigate_delay:
                await asyncio.sleep(self.navigate_delay)
            if self.navigate_error is not None:
                raise self.navigate_error
            self.current_url = self.redirects.get(_strip_nonce(url), url)
            return self.current_url
        finally:
            self._exit()

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        self._enter()
        try:
            if self.evaluate_delay:
                await asyncio.sleep(self.evaluate_delay)
            if script == EXTRACT_PAGE_JS:
                return self._extract()
            if script == ORIGIN_READY_JS:
                return {
                    "type": "domainReady",
                    "url": self.current_url,
                    "origin": self._origin(self.current_url),
                }
            if script == SCRIPTED_POST_JS:
                self.posts.append(arg)
                if self.post_message is not None:
                    return self.post_message
                return {
                    "type": "postResponse",
                    "status": 200,
                    "html": '{"ok": true}',
                    "url": arg["url"],
                }
            raise AssertionError(f"Unexpected script: {script[:40]!r}")
        finally:
            self._exit()

    async def cookies(self, url: str) -> list[dict[str, Any]]:
        return list(self.cookie_jar.get(urlsplit(url).hostname or "", []))

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _extract(self) -> Any:
        self.extractions.append(self.current_url)
        error = self.extract_errors.pop(0) if self.extract_errors else None
        if error is not None:
            raise error
        if self.extract_message is not None:
            return self.extract_message

        url = self.stale_urls.pop(0) if self.stale_urls else self.current_url
        sequence = self.pages.get(_strip_nonce(self.current_url))
        if sequence:
            title, html = sequence.pop(0) if len(sequence) > 1 else sequence[0]
        else:
            title, html = self.default_page
        return {
            "type": "html",
            "html": html,
            "title": title,
            "url": url,
            "origin": self._origin(url),
        }

    @staticmethod
    def _origin(url: str) -> str:
        parts = urlsplit(url)
        if parts.scheme not in ("http", "https"):
            return ""
        return f"{parts.scheme}://{parts.netloc}"

    def _enter(self) -> None:
        self.active += 1
        self.max_active = max(self.max_active, self.active)

    def _exit(self) -> None:
        self.active -= 1


async def wait_for_condition(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate() is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.005)


# =============================================================================
# Pytest Hooks for Test Classification
# =============================================================================


def pytest_configure(config):
    """Register custom markers for test classification."""
    config.addinivalue_line(
        "markers", "unit: Unit tests with no external dependencies (fast, <1s/test)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests with mocked external dependencies (<5s/test)"
    )


def pytest_collection_modifyitems(config, items):
    """Tests without explicit markers are assumed to be unit tests."""
    for item in items:
        has_classification = any(
            marker.name in ("unit", "integration") for marker in item.iter_markers()
        )
        if not has_classification:
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Settings isolation
# =============================================================================


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[Path, None, None]:
    """Point settings at an empty config dir and shorten pipeline delays.

    Yields the config directory so tests can drop YAML files into it.
    """
    from clearpass.utils.config import get_settings
    from clearpass.utils.domain_policy import reset_site_policy_manager

    config_dir = tmp_path / "config"
    config_dir.mkdir()
    monkeypatch.setenv("CLEARPASS_CONFIG_DIR", str(config_dir))
    monkeypatch.setenv("CLEARPASS_DISPATCHER__LOAD_SETTLE_DELAY", "0.0")
    monkeypatch.setenv("CLEARPASS_DISPATCHER__STALE_RETRY_DELAY", "0.0")
    monkeypatch.setenv("CLEARPASS_CHALLENGE__RETRY_DELAY", "0.0")
    monkeypatch.setenv("CLEARPASS_MANUAL__CHECK_INTERVAL", "0.01")
    monkeypatch.setenv("CLEARPASS_MANUAL__INITIAL_CHECK_DELAY", "0.01")
    get_settings.cache_clear()
    reset_site_policy_manager()

    yield config_dir

    get_settings.cache_clear()
    reset_site_policy_manager()


# =============================================================================
# Component fixtures
# =============================================================================


@pytest.fixture
def fake_context() -> FakeRenderingContext:
    """Scripted rendering context."""
    return FakeRenderingContext()


@pytest.fixture
def memory_kv():
    """In-memory key-value store."""
    from clearpass.storage.kv_store import MemoryKeyValueStore

    return MemoryKeyValueStore()


@pytest.fixture
def cookie_store(fake_context: FakeRenderingContext, memory_kv):
    """Cookie store reading from the fake context."""
    from clearpass.crawler.cookie_store import CookieStore

    return CookieStore(fake_context, memory_kv)


@pytest_asyncio.fixture
async def dispatcher(fake_context: FakeRenderingContext, cookie_store):
    """Dispatcher attached to the fake context, without manual escalation."""
    from clearpass.crawler.dispatcher import Dispatcher

    d = Dispatcher(fake_context, cookie_store=cookie_store)
    yield d
    await d.close()


@pytest.fixture
def temp_db_path(tmp_path: Path) -> Path:
    """Get path for temporary test database."""
    return tmp_path / "test_clearpass.db"
