"""
Challenge retry controller.

Decides what to do with each page extracted by a navigation:
- Genuine content: sync cookies and return the markup
- Challenge (or nothing rendered yet): wait, then re-extract from the same
  loaded page, up to a bounded number of classifications
- Challenge at the ceiling: signal the dispatcher to escalate
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from clearpass.crawler.challenge_detector import (
    PageVerdict,
    classify,
    detect_challenge_type,
    estimate_auth_effort,
)
from clearpass.crawler.fetch_result import PageSnapshot
from clearpass.crawler.fetch_request import FetchRequest
from clearpass.utils.config import get_settings
from clearpass.utils.errors import ChallengePersisted, ScriptError
from clearpass.utils.logging import get_logger

if TYPE_CHECKING:
    from clearpass.crawler.cookie_store import CookieStore

logger = get_logger(__name__)


class ChallengeRetryController:
    """Bounded re-extraction around a loaded page.

    Example:
        controller = ChallengeRetryController(cookie_store)
        html = await controller.resolve(request, snapshot, reextract)
    """

    def __init__(
        self,
        cookie_store: "CookieStore | None" = None,
        *,
        max_attempts: int | None = None,
        retry_delay: float | None = None,
    ):
        """Initialize retry controller.

        Args:
            cookie_store: Store synced after genuine content is seen.
            max_attempts: Classifications before giving up (default from settings).
            retry_delay: Seconds between re-extractions (default from settings).
        """
        settings = get_settings().challenge
        self._cookie_store = cookie_store
        self._max_attempts = max_attempts if max_attempts is not None else settings.max_attempts
        self._retry_delay = retry_delay if retry_delay is not None else settings.retry_delay
        if self._max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    async def resolve(
        self,
        request: FetchRequest,
        snapshot: PageSnapshot,
        reextract: Callable[[], Awaitable[PageSnapshot]],
    ) -> str:
        """Classify the loaded page until it is genuine or attempts run out.

        Args:
            request: Navigate request being served.
            snapshot: First extraction of the loaded page.
            reextract: Re-runs extraction on the same page (no navigation).

        Returns:
            Page markup.

        Raises:
            ChallengePersisted: Still a challenge after the last attempt.
        """
        verdict = PageVerdict.INDETERMINATE
        for attempt in range(1, self._max_attempts + 1):
            verdict = classify(snapshot.title, snapshot.html)

            if verdict is PageVerdict.GENUINE:
                await self._sync_cookies(request.host)
                if not request.require_clearance or await self._has_clearance(request.host):
                    if attempt > 1:
                        logger.info(
                            "Challenge cleared automatically",
                            url=request.url[:80],
                            attempts=attempt,
                        )
                    return snapshot.html
                logger.info(
                    "Clearance cookie not issued yet",
                    url=request.url[:80],
                    attempt=attempt,
                )

            if attempt == self._max_attempts:
                break

            logger.info(
                "Page not ready, re-extracting",
                url=request.url[:80],
                verdict=verdict.value,
                attempt=attempt,
                max_attempts=self._max_attempts,
            )
            await asyncio.sleep(self._retry_delay)
            try:
                snapshot = await reextract()
            except ScriptError as e:
                # A self-clearing challenge reloads the page under the script
                logger.info(
                    "Re-extraction failed, page still loading",
                    url=request.url[:80],
                    attempt=attempt + 1,
                    error=e.message,
                )

        if verdict is PageVerdict.INDETERMINATE:
            logger.warning(
                "Page still empty after retries, returning as is",
                url=request.url[:80],
            )
            return snapshot.html

        challenge_type = (
            detect_challenge_type(snapshot.html) if verdict is PageVerdict.CHALLENGE else "clearance"
        )
        logger.warning(
            "Challenge persisted",
            url=request.url[:80],
            challenge_type=challenge_type,
            estimated_effort=estimate_auth_effort(challenge_type),
            attempts=self._max_attempts,
        )
        raise ChallengePersisted(
            request.url,
            attempts=self._max_attempts,
            challenge_type=challenge_type,
        )

    async def _sync_cookies(self, host: str) -> None:
        if self._cookie_store is None:
            return
        try:
            await self._cookie_store.sync(host)
        except Exception as e:
            logger.warning("Cookie sync failed", domain=host, error=str(e))

    async def _has_clearance(self, host: str) -> bool:
        if self._cookie_store is None:
            return True
        return await self._cookie_store.has_clearance(host)
