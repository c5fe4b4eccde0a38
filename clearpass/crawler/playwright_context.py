"""
Playwright-backed rendering context for clearpass.

Wraps a single Playwright page. Supports launching a browser (headless or
headful) or attaching to a running Chrome over CDP so that an existing
profile's cookies are reused.
"""

from typing import TYPE_CHECKING, Any

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from clearpass.utils.config import BrowserConfig, get_settings
from clearpass.utils.errors import FetchTimeoutError, NetworkError, ScriptError
from clearpass.utils.logging import get_logger

if TYPE_CHECKING:
    from playwright.async_api import Browser, BrowserContext, Page, Playwright

    from clearpass.utils.intervention_types import ManualChallenge

logger = get_logger(__name__)


class PlaywrightRenderingContext:
    """Rendering context implementation using one Playwright page."""

    def __init__(
        self,
        page: "Page",
        *,
        playwright: "Playwright | None" = None,
        browser: "Browser | None" = None,
        owns_browser: bool = False,
    ):
        """Wrap an existing page.

        Args:
            page: Playwright page every operation runs against.
            playwright: Playwright driver to stop on close (when owned).
            browser: Browser the page belongs to.
            owns_browser: Whether close() shuts the browser down.
        """
        self._page = page
        self._playwright = playwright
        self._browser = browser
        self._owns_browser = owns_browser

    @classmethod
    async def launch(cls, config: BrowserConfig | None = None) -> "PlaywrightRenderingContext":
        """Start Playwright and open the page the pipeline will drive.

        With ``cdp_url`` set, connects to a running Chrome and reuses its
        first context (preserving profile cookies). Otherwise launches a
        fresh browser.

        Args:
            config: Browser configuration. Uses settings if None.

        Returns:
            Rendering context owning the browser.
        """
        config = config or get_settings().browser
        playwright = await async_playwright().start()
        browser_type = getattr(playwright, config.browser_type)

        context: BrowserContext
        if config.cdp_url:
            try:
                browser = await playwright.chromium.connect_over_cdp(config.cdp_url)
            except PlaywrightError as e:
                await playwright.stop()
                raise RuntimeError(f"CDP connection failed: {e}") from e
            if browser.contexts:
                context = browser.contexts[0]
                logger.info(
                    "Reusing existing browser context for cookie preservation",
                    context_count=len(browser.contexts),
                )
            else:
                context = await browser.new_context()
            logger.info("Connected to Chrome via CDP", url=config.cdp_url)
        else:
            browser = await browser_type.launch(headless=config.headless)
            context = await browser.new_context(
                viewport={
                    "width": config.viewport_width,
                    "height": config.viewport_height,
                },
            )
            logger.info(
                "Browser launched",
                browser_type=config.browser_type,
                headless=config.headless,
            )

        page = await context.new_page()
        return cls(page, playwright=playwright, browser=browser, owns_browser=True)

    @property
    def page(self) -> "Page":
        return self._page

    @property
    def current_url(self) -> str:
        return self._page.url

    async def navigate(self, url: str, timeout: float) -> str:
        try:
            await self._page.goto(url, timeout=int(timeout * 1000), wait_until="load")
        except PlaywrightTimeoutError as e:
            raise FetchTimeoutError(url, timeout=timeout) from e
        except PlaywrightError as e:
            raise NetworkError(f"Navigation failed: {e.message}", url=url) from e
        return self._page.url

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        try:
            return await self._page.evaluate(script, arg)
        except PlaywrightError as e:
            raise ScriptError(f"Script evaluation failed: {e.message}", url=self._page.url) from e

    async def cookies(self, url: str) -> list[dict[str, Any]]:
        return [dict(c) for c in await self._page.context.cookies([url])]

    async def bring_to_front(self) -> None:
        await self._page.bring_to_front()

    async def close(self) -> None:
        """Close the page, and the browser when this context launched it."""
        try:
            await self._page.close()
        except PlaywrightError as e:
            logger.debug("Page close error", error=str(e))

        if self._owns_browser:
            if self._browser is not None:
                await self._browser.close()
            if self._playwright is not None:
                await self._playwright.stop()
        logger.info("Rendering context closed")


class BrowserWindowPresenter:
    """Manual-challenge presenter that shows the live browser window.

    Only meaningful for a headful browser: the user solves the challenge
    directly in the window and then calls complete() on the coordinator.
    """

    def __init__(self, context: PlaywrightRenderingContext):
        self._context = context

    async def show(self, challenge: "ManualChallenge") -> None:
        await self._context.bring_to_front()
        logger.warning(
            challenge.title or "Verification required",
            url=challenge.url[:80],
            origin=challenge.origin,
            instructions=challenge.message,
        )

    async def hide(self, challenge: "ManualChallenge") -> None:
        logger.info("Challenge window released", origin=challenge.origin)
