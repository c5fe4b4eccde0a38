"""
Fetch pipeline assembly.
Wires the cookie store, dispatcher, warmup, manual challenge coordinator,
direct HTTP client and facade around one rendering context.
"""

from clearpass.crawler.cookie_store import CookieStore
from clearpass.crawler.dispatcher import Dispatcher
from clearpass.crawler.fetcher import FetchFacade
from clearpass.crawler.http_fetcher import HTTPFetcher
from clearpass.crawler.rendering_context import RenderingContext
from clearpass.crawler.warmup import SessionWarmupCoordinator
from clearpass.storage.kv_store import KeyValueStore, MemoryKeyValueStore, SqliteKeyValueStore
from clearpass.utils.config import get_settings
from clearpass.utils.domain_policy import SitePolicyManager
from clearpass.utils.intervention_manager import ManualChallengeCoordinator
from clearpass.utils.intervention_types import ChallengePresenter
from clearpass.utils.logging import get_logger

logger = get_logger(__name__)


class FetchPipeline:
    """All fetch components sharing one rendering context.

    Example:
        pipeline = FetchPipeline(kv_store=MemoryKeyValueStore())
        await pipeline.start(context)
        html = await pipeline.facade.fetch_document(url)
        await pipeline.close()
    """

    def __init__(
        self,
        *,
        kv_store: KeyValueStore | None = None,
        presenter: ChallengePresenter | None = None,
        http_fetcher: HTTPFetcher | None = None,
        policy_manager: SitePolicyManager | None = None,
    ) -> None:
        self.kv_store = kv_store if kv_store is not None else MemoryKeyValueStore()
        self.cookie_store = CookieStore(kv_store=self.kv_store)
        self.manual = ManualChallengeCoordinator(
            cookie_store=self.cookie_store,
            presenter=presenter,
        )
        self.dispatcher = Dispatcher(cookie_store=self.cookie_store, manual=self.manual)
        self.warmup = SessionWarmupCoordinator(self.dispatcher, self.cookie_store)
        self.http = http_fetcher or HTTPFetcher()
        self.facade = FetchFacade(
            self.dispatcher,
            self.http,
            self.cookie_store,
            self.warmup,
            policy_manager=policy_manager,
        )
        self._context: RenderingContext | None = None

    @property
    def context(self) -> RenderingContext | None:
        return self._context

    async def start(self, context: RenderingContext) -> None:
        """Load persisted cookies and attach the rendering context."""
        await self.cookie_store.load()
        await self.cookie_store.clean_expired()
        self._context = context
        self.manual.attach(context)
        self.dispatcher.attach(context)
        logger.info("Fetch pipeline started", cookie_domains=len(self.cookie_store.stored_domains()))

    def warmup_sites(self) -> int:
        """Start warmups for every configured site that needs the rendering context.

        Returns:
            Number of warmups started.
        """
        started = 0
        policies = self.facade.policies
        for origin in policies.get_bypass_origins():
            policy = policies.get_policy(origin)
            if self.warmup.warmup(origin, policy.require_strong_clearance) is not None:
                started += 1
        return started

    async def close(self) -> None:
        """Stop background work and release the HTTP client."""
        await self.warmup.close()
        await self.dispatcher.close()
        await self.http.close()
        if isinstance(self.kv_store, SqliteKeyValueStore):
            await self.kv_store.close()
        close = getattr(self._context, "close", None)
        if close is not None:
            await close()
        logger.info("Fetch pipeline closed")


async def launch_pipeline() -> FetchPipeline:
    """Launch a Playwright browser and a pipeline driving it.

    Cookies persist in the SQLite store configured under ``storage``. With
    a headful browser the live window is used to present manual challenges.
    """
    from clearpass.crawler.playwright_context import (
        BrowserWindowPresenter,
        PlaywrightRenderingContext,
    )

    settings = get_settings()
    context = await PlaywrightRenderingContext.launch(settings.browser)
    kv_store = SqliteKeyValueStore()
    await kv_store.connect()

    presenter = None if settings.browser.headless else BrowserWindowPresenter(context)
    pipeline = FetchPipeline(kv_store=kv_store, presenter=presenter)
    await pipeline.start(context)
    return pipeline


_pipeline: FetchPipeline | None = None


async def get_pipeline() -> FetchPipeline:
    """Get the global pipeline instance, launching it on first use."""
    global _pipeline
    if _pipeline is None:
        _pipeline = await launch_pipeline()
    return _pipeline


async def close_pipeline() -> None:
    """Close the global pipeline instance."""
    global _pipeline
    if _pipeline is not None:
        await _pipeline.close()
        _pipeline = None
