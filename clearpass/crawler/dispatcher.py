"""
Rendering context dispatcher.

Serializes all work on the single shared rendering context.

Design:
- Strict FIFO queue, exactly one request active against the context
- Each request carries its own deadline: a loop timer rejects it while
  queued, asyncio.wait_for bounds it while active
- A timed-out active operation is abandoned: its coroutine is cancelled
  and any late answer from the context is ignored
- Requests enqueued before a context is attached wait in the queue
- A persisting challenge is escalated to manual solving while the
  dispatcher still holds the context, so nothing else can touch it
"""

from __future__ import annotations

import asyncio
import secrets
from typing import TYPE_CHECKING
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from clearpass.crawler.fetch_request import (
    FetchRequest,
    RenderingContextState,
    RequestKind,
    origin_of,
)
from clearpass.crawler.fetch_result import PageSnapshot, PostResult
from clearpass.crawler.page_scripts import (
    EXTRACT_PAGE_JS,
    ORIGIN_READY_JS,
    SCRIPTED_POST_JS,
    post_arg,
)
from clearpass.crawler.retry import ChallengeRetryController
from clearpass.utils.config import get_settings
from clearpass.utils.errors import (
    ChallengePersisted,
    ChallengeUnresolved,
    FetchError,
    FetchTimeoutError,
    ScriptError,
    SourceUnavailable,
    StaleResponseMismatch,
)
from clearpass.utils.logging import LogContext, get_logger

if TYPE_CHECKING:
    from clearpass.crawler.cookie_store import CookieStore
    from clearpass.crawler.rendering_context import RenderingContext
    from clearpass.utils.intervention_manager import ManualChallengeCoordinator

logger = get_logger(__name__)

_CHALLENGE_PARAM_PREFIX = "__cf_chl"


def _normalize_url(url: str, drop_params: tuple[str, ...] = ()) -> str:
    """Normalize a URL for identity comparison.

    Drops the fragment, a trailing path slash, challenge bookkeeping
    parameters and the given parameters.
    """
    parts = urlsplit(url)
    query = [
        (k, v)
        for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if not k.startswith(_CHALLENGE_PARAM_PREFIX) and k not in drop_params
    ]
    path = parts.path.rstrip("/")
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, urlencode(query), ""))


class Dispatcher:
    """Serializes requests against one rendering context.

    Example:
        dispatcher = Dispatcher(cookie_store=store, manual=coordinator)
        dispatcher.attach(context)
        html = await dispatcher.enqueue(FetchRequest.navigate(url))
    """

    def __init__(
        self,
        context: RenderingContext | None = None,
        *,
        cookie_store: CookieStore | None = None,
        manual: ManualChallengeCoordinator | None = None,
        retry_controller: ChallengeRetryController | None = None,
    ) -> None:
        """Initialize dispatcher.

        Args:
            context: Rendering context. May be attached later.
            cookie_store: Store synced after genuine content is seen.
            manual: Manual challenge coordinator used for escalation.
            retry_controller: Challenge retry policy (built from settings if None).
        """
        settings = get_settings()
        self._settings = settings.dispatcher
        self._escalate_to_manual = settings.challenge.escalate_to_manual
        self._context: RenderingContext | None = None
        self._cookie_store = cookie_store
        self._manual = manual
        self._retry = retry_controller or ChallengeRetryController(cookie_store)

        self._state = RenderingContextState()
        self._wakeup = asyncio.Event()
        self._worker: asyncio.Task[None] | None = None
        self._closed = False

        if context is not None:
            self.attach(context)

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    @property
    def state(self) -> RenderingContextState:
        return self._state

    @property
    def context(self) -> RenderingContext | None:
        return self._context

    @property
    def queue_size(self) -> int:
        return sum(1 for r in self._state.queue if not r.done)

    @property
    def is_closed(self) -> bool:
        return self._closed

    def attach(self, context: RenderingContext) -> None:
        """Attach the rendering context and start processing the queue."""
        self._context = context
        current = context.current_url or ""
        self._state.current_origin = (
            origin_of(current) if current.startswith(("http://", "https://")) else ""
        )
        if self._cookie_store is not None:
            self._cookie_store.attach(context)
        logger.info(
            "Rendering context attached",
            current_origin=self._state.current_origin,
            queued=self.queue_size,
        )
        self._wakeup.set()

    def enqueue(self, request: FetchRequest) -> asyncio.Future[str]:
        """Queue a request.

        Args:
            request: Request to run.

        Returns:
            Future resolving to the page markup (navigate) or the response
            body (scripted_post).

        Raises:
            SourceUnavailable: If the dispatcher is closed.
        """
        if self._closed:
            raise SourceUnavailable("Dispatcher is closed", url=request.url)

        loop = asyncio.get_running_loop()
        if request.timeout is None:
            request.timeout = (
                self._settings.post_timeout
                if request.kind is RequestKind.SCRIPTED_POST
                else self._settings.request_timeout
            )
        request.deadline = loop.time() + request.timeout
        request.future = loop.create_future()
        request.timer = loop.call_at(request.deadline, self._expire_queued, request)

        self._state.queue.append(request)
        self._ensure_worker()
        self._wakeup.set()

        logger.debug(
            "Request queued",
            request_id=request.id,
            kind=request.kind.value,
            url=request.url[:80],
            queue_size=self.queue_size,
        )
        return request.future

    async def close(self) -> None:
        """Stop the worker and reject every pending request."""
        if self._closed:
            return
        self._closed = True
        active = self._state.active_request

        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

        rejected = 0
        pending = list(self._state.queue)
        if active is not None:
            pending.append(active)
        for request in pending:
            if request.timer is not None:
                request.timer.cancel()
            if not request.done:
                request.future.set_exception(
                    SourceUnavailable("Dispatcher closed", url=request.url)
                )
                rejected += 1
        self._state.queue.clear()
        self._state.active_request = None

        logger.info("Dispatcher closed", rejected=rejected)

    # -------------------------------------------------------------------------
    # Worker
    # -------------------------------------------------------------------------

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(
                self._run(), name="clearpass-dispatcher"
            )

    def _expire_queued(self, request: FetchRequest) -> None:
        """Deadline timer for a request that has not started yet."""
        if request is self._state.active_request or request.done:
            return
        try:
            self._state.queue.remove(request)
        except ValueError:
            pass
        request.future.set_exception(FetchTimeoutError(request.url, timeout=request.timeout))
        logger.info(
            "Queued request timed out",
            request_id=request.id,
            url=request.url[:80],
            timeout=request.timeout,
        )

    def _next_request(self) -> FetchRequest | None:
        if self._context is None:
            return None
        while self._state.queue:
            request = self._state.queue.popleft()
            if not request.done:
                return request
        return None

    async def _run(self) -> None:
        while not self._closed:
            request = self._next_request()
            if request is None:
                self._wakeup.clear()
                await self._wakeup.wait()
                continue
            await self._process(request)

    async def _process(self, request: FetchRequest) -> None:
        if request.timer is not None:
            request.timer.cancel()
        self._state.active_request = request

        with LogContext(request_id=request.id):
            try:
                result = await self._run_with_deadline(request)
            except FetchError as e:
                if not request.done:
                    request.future.set_exception(e)
                logger.info(
                    "Request failed",
                    kind=request.kind.value,
                    url=request.url[:80],
                    error_code=e.code.value,
                    error=e.message,
                )
            except Exception as e:
                logger.exception("Unexpected dispatcher error", url=request.url[:80])
                if not request.done:
                    error = ScriptError(f"Unexpected error: {e}", url=request.url)
                    error.__cause__ = e
                    request.future.set_exception(error)
            else:
                if not request.done:
                    request.future.set_result(result)
                logger.debug(
                    "Request completed",
                    kind=request.kind.value,
                    url=request.url[:80],
                    content_length=len(result),
                )
            finally:
                self._state.active_request = None

    async def _run_with_deadline(self, request: FetchRequest) -> str:
        loop = asyncio.get_running_loop()
        remaining = request.remaining(loop)
        if remaining <= 0:
            raise FetchTimeoutError(request.url, timeout=request.timeout)

        try:
            return await self._bounded(request, remaining)
        except ChallengePersisted as e:
            if not (request.allow_escalation and self._escalate_to_manual and self._manual):
                raise ChallengeUnresolved(request.url, origin=request.origin) from e
            persisted = e

        # Escalation runs outside the request deadline; the manual flow has
        # its own bound. The context stays held, so the queue is gated.
        result = await self._manual.request(
            request.origin, request.url, require_clearance=request.require_clearance
        )
        if not result.success:
            raise ChallengeUnresolved(request.url, origin=request.origin) from persisted

        logger.info("Challenge solved manually, retrying request", url=request.url[:80])
        request.allow_escalation = False
        request.deadline = loop.time() + request.timeout
        try:
            return await self._bounded(request, request.timeout)
        except ChallengePersisted as e:
            raise ChallengeUnresolved(request.url, origin=request.origin) from e

    async def _bounded(self, request: FetchRequest, timeout: float) -> str:
        try:
            return await asyncio.wait_for(self._execute(request), timeout=timeout)
        except TimeoutError as e:
            if isinstance(e, FetchTimeoutError):
                raise
            raise FetchTimeoutError(request.url, timeout=request.timeout) from None

    async def _execute(self, request: FetchRequest) -> str:
        if request.kind is RequestKind.SCRIPTED_POST:
            return await self._scripted_post(request)
        snapshot, landed = await self._navigate(request)
        return await self._retry.resolve(
            request,
            snapshot,
            lambda: self._extract(request, landed),
        )

    # -------------------------------------------------------------------------
    # Navigate
    # -------------------------------------------------------------------------

    def _cache_busted(self, url: str, nonce: str) -> str:
        """Append the nonce to the query, leaving the existing query byte for byte."""
        parts = urlsplit(url)
        param = f"{self._settings.cache_bust_param}={nonce}"
        query = f"{parts.query}&{param}" if parts.query else param
        return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))

    def _belongs_to(self, extracted_url: str, landed_url: str, nonce: str) -> bool:
        """Check that an extracted URL belongs to the current navigation."""
        param = self._settings.cache_bust_param
        extracted_nonce = dict(parse_qsl(urlsplit(extracted_url).query)).get(param)
        if extracted_nonce is not None and extracted_nonce != nonce:
            return False
        return _normalize_url(extracted_url, (param,)) == _normalize_url(landed_url, (param,))

    async def _navigate(self, request: FetchRequest) -> tuple[PageSnapshot, str]:
        assert self._context is not None
        loop = asyncio.get_running_loop()

        request.nonce = secrets.token_urlsafe(8)
        target = self._cache_busted(request.url, request.nonce)
        landed = await self._context.navigate(target, request.remaining(loop))
        self._state.current_origin = origin_of(landed)
        logger.debug("Navigation loaded", url=request.url[:80], landed=landed[:120])

        await asyncio.sleep(self._settings.load_settle_delay)
        return await self._extract(request, landed), landed

    async def _extract(self, request: FetchRequest, landed: str) -> PageSnapshot:
        assert self._context is not None
        max_attempts = max(1, self._settings.max_stale_retries)
        snapshot: PageSnapshot | None = None
        for attempt in range(1, max_attempts + 1):
            message = await self._context.evaluate(EXTRACT_PAGE_JS)
            snapshot = PageSnapshot.from_message(message, request.url)
            if self._belongs_to(snapshot.url, landed, request.nonce):
                return snapshot
            logger.warning(
                "Stale page extracted",
                url=request.url[:80],
                extracted_url=snapshot.url[:120],
                attempt=attempt,
            )
            if attempt < max_attempts:
                await asyncio.sleep(self._settings.stale_retry_delay)

        raise StaleResponseMismatch(request.url, extracted_url=snapshot.url if snapshot else None)

    # -------------------------------------------------------------------------
    # Scripted POST
    # -------------------------------------------------------------------------

    async def _prime_origin(self, request: FetchRequest) -> None:
        """Move the context onto the request's origin before posting."""
        assert self._context is not None
        loop = asyncio.get_running_loop()
        origin = request.origin

        logger.info("Priming origin for scripted POST", origin=origin)
        landed = await self._context.navigate(origin + "/", request.remaining(loop))
        self._state.current_origin = origin_of(landed)
        await asyncio.sleep(self._settings.load_settle_delay)

        message = await self._context.evaluate(ORIGIN_READY_JS)
        if not isinstance(message, dict) or message.get("type") != "domainReady":
            raise ScriptError("Origin readiness check failed", url=request.url)
        self._state.current_origin = message.get("origin") or self._state.current_origin
        if self._state.current_origin != origin:
            raise ScriptError(
                f"Context landed on {self._state.current_origin} instead of {origin}",
                url=request.url,
            )

    async def _scripted_post(self, request: FetchRequest) -> str:
        assert self._context is not None
        if self._state.current_origin != request.origin:
            await self._prime_origin(request)
        request.origin_ready = True

        message = await self._context.evaluate(
            SCRIPTED_POST_JS,
            post_arg(request.url, request.body, request.headers),
        )
        result = PostResult.from_message(message, request.url)
        log = logger.debug if result.ok else logger.warning
        log(
            "Scripted POST answered",
            url=request.url[:80],
            status=result.status,
            content_length=len(result.body),
        )
        return result.body
