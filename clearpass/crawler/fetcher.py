"""
Fetch facade for clearpass.
Single entry point for site adapters: routes each request either through
the shared rendering context or through the direct HTTP client.

Features:
- Per-site routing from declared policy (sites.yaml or registration)
- Waits for an in-flight warmup of the origin before queueing
- Direct requests carry the cookie store's Cookie header and the site Referer
- Challenges seen on the direct path invalidate the domain's session
  after repeated strikes
- Relative URLs resolved against the site base URL
- Never retries; outcomes pass through unchanged
"""

from typing import TYPE_CHECKING

from clearpass.crawler.fetch_request import FetchRequest, host_of, origin_of
from clearpass.utils.config import get_settings
from clearpass.utils.domain_policy import SitePolicy, SitePolicyManager, get_site_policy_manager
from clearpass.utils.errors import NetworkError
from clearpass.utils.logging import get_logger

if TYPE_CHECKING:
    from clearpass.crawler.cookie_store import CookieStore
    from clearpass.crawler.dispatcher import Dispatcher
    from clearpass.crawler.http_fetcher import HTTPFetcher, HttpResponse
    from clearpass.crawler.warmup import SessionWarmupCoordinator

logger = get_logger(__name__)


class FetchFacade:
    """Routes fetches to the rendering context or the direct HTTP client.

    Example:
        facade = FetchFacade(dispatcher, http_fetcher, cookie_store, warmup)
        html = await facade.fetch_document("https://example.com/title/1")
        body = await facade.post_form("https://example.com/ajax", "id=1")
    """

    def __init__(
        self,
        dispatcher: "Dispatcher",
        http_fetcher: "HTTPFetcher",
        cookie_store: "CookieStore",
        warmup: "SessionWarmupCoordinator | None" = None,
        *,
        policy_manager: SitePolicyManager | None = None,
    ) -> None:
        settings = get_settings()
        self._dispatcher = dispatcher
        self._http = http_fetcher
        self._cookie_store = cookie_store
        self._warmup = warmup
        self._policies = policy_manager or get_site_policy_manager()
        self._warmup_wait = settings.warmup.wait_for_warmup_on_fetch
        self._strike_limit = settings.http.challenge_strikes_before_invalidate
        self._strikes: dict[str, int] = {}

    @property
    def policies(self) -> SitePolicyManager:
        return self._policies

    async def fetch_document(self, url: str, *, site: str | None = None) -> str:
        """Fetch a document.

        Args:
            url: Absolute URL, or a path relative to the site's base URL.
            site: Site identifier used to resolve relative URLs.

        Returns:
            Document markup.

        Raises:
            FetchError: Any pipeline failure, passed through unchanged.
        """
        policy, absolute = self._resolve(url, site)
        if policy.needs_bypass:
            return await self._via_context(FetchRequest.navigate(absolute), policy)

        response = await self._direct("GET", absolute, policy)
        return response.text

    async def post_form(
        self,
        url: str,
        body: str,
        headers: dict[str, str] | None = None,
        *,
        site: str | None = None,
    ) -> str:
        """Send a form POST.

        Args:
            url: Absolute URL, or a path relative to the site's base URL.
            body: Form-encoded body.
            headers: Extra request headers.
            site: Site identifier used to resolve relative URLs.

        Returns:
            Response body.
        """
        policy, absolute = self._resolve(url, site)
        if policy.needs_bypass:
            return await self._via_context(
                FetchRequest.scripted_post(absolute, body, headers),
                policy,
            )

        response = await self._direct("POST", absolute, policy, body=body, headers=headers)
        return response.text

    def _resolve(self, url: str, site: str | None) -> tuple[SitePolicy, str]:
        if site is not None:
            site_policy = self._policies.get_site(site)
            if site_policy is None:
                raise ValueError(f"Unknown site: {site!r}")
            absolute = site_policy.resolve_url(url)
        else:
            absolute = url
        return self._policies.get_policy(host_of(absolute)), absolute

    async def _via_context(self, request: FetchRequest, policy: SitePolicy) -> str:
        origin = origin_of(request.url)
        if self._warmup is not None and self._warmup.is_warming(origin):
            logger.debug("Waiting for warmup before fetch", origin=origin)
            await self._warmup.wait_until_ready(origin, self._warmup_wait)

        logger.debug(
            "Fetching through rendering context",
            kind=request.kind.value,
            url=request.url[:80],
            site_id=policy.site_id,
        )
        return await self._dispatcher.enqueue(request)

    async def _direct(
        self,
        method: str,
        url: str,
        policy: SitePolicy,
        *,
        body: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> "HttpResponse":
        host = host_of(url)
        cookie = await self._cookie_store.get(host)
        merged = {**(policy.headers or {}), **(headers or {})}

        response = await self._http.fetch(
            url,
            method=method,
            body=body,
            cookie=cookie,
            referer=policy.referer,
            headers=merged or None,
        )

        if response.is_challenge:
            await self._record_strike(url)
            raise NetworkError(
                f"Challenge returned by direct request ({response.challenge_type})",
                url=url,
                status=response.status,
            )
        self._strikes.pop(host, None)

        if not response.ok:
            raise NetworkError(f"HTTP {response.status}", url=url, status=response.status)
        return response

    async def _record_strike(self, url: str) -> None:
        host = host_of(url)
        strikes = self._strikes.get(host, 0) + 1
        self._strikes[host] = strikes
        logger.info("Direct challenge strike", domain=host, strikes=strikes, limit=self._strike_limit)
        if strikes < self._strike_limit:
            return

        self._strikes.pop(host, None)
        if self._warmup is not None:
            await self._warmup.invalidate(origin_of(url))
        else:
            await self._cookie_store.invalidate(host)
        logger.warning("Session invalidated after repeated challenges", domain=host)
