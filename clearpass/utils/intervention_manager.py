"""Manual challenge coordinator.

Hands a persisting challenge to the user and waits for it to clear.

Operation:
- One manual challenge at a time (process-wide lock); others queue
- The live rendering context is shown through a presenter
- The page is checked periodically; a genuine page resolves the challenge
  (with a clearance cookie, when the caller requires one)
- The user answers "Done" (immediate final check) or "Cancel"
- A bounded maximum wait; after a failure the origin cools down and
  further requests for it fail without prompting
"""

import asyncio
import time
from typing import TYPE_CHECKING

from clearpass.crawler.challenge_detector import (
    PageVerdict,
    classify,
    detect_challenge_type,
)
from clearpass.crawler.fetch_request import host_of, origin_of
from clearpass.crawler.fetch_result import PageSnapshot
from clearpass.crawler.page_scripts import EXTRACT_PAGE_JS
from clearpass.utils.config import get_settings
from clearpass.utils.errors import FetchError
from clearpass.utils.intervention_types import (
    ChallengePresenter,
    InterventionResult,
    InterventionState,
    InterventionStatus,
    ManualChallenge,
    UserAction,
    get_challenge_message,
)
from clearpass.utils.logging import get_logger

if TYPE_CHECKING:
    from clearpass.crawler.cookie_store import CookieStore
    from clearpass.crawler.rendering_context import RenderingContext

logger = get_logger(__name__)


class ManualChallengeCoordinator:
    """Coordinates human-in-the-loop challenge solving.

    Runs inside the dispatcher's active slot, so it may drive the
    rendering context directly.
    """

    def __init__(
        self,
        context: "RenderingContext | None" = None,
        *,
        cookie_store: "CookieStore | None" = None,
        presenter: ChallengePresenter | None = None,
        check_interval: float | None = None,
        initial_check_delay: float | None = None,
        max_wait_seconds: float | None = None,
        cooldown_seconds: float | None = None,
    ) -> None:
        settings = get_settings()
        manual = settings.manual
        self._context = context
        self._cookie_store = cookie_store
        self._presenter = presenter
        self._check_interval = check_interval if check_interval is not None else manual.check_interval
        self._initial_check_delay = (
            initial_check_delay if initial_check_delay is not None else manual.initial_check_delay
        )
        self._max_wait = max_wait_seconds if max_wait_seconds is not None else manual.max_wait_seconds
        self._cooldown = cooldown_seconds if cooldown_seconds is not None else manual.cooldown_seconds
        self._navigation_timeout = settings.browser.navigation_timeout

        self._lock = asyncio.Lock()
        self._current: ManualChallenge | None = None
        self._cooldowns: dict[str, float] = {}

    def attach(self, context: "RenderingContext") -> None:
        self._context = context

    @property
    def state(self) -> InterventionState:
        if self._current is None:
            return InterventionState.IDLE
        return InterventionState.AWAITING_USER

    @property
    def current_challenge(self) -> ManualChallenge | None:
        return self._current

    def current_url(self) -> str | None:
        """URL of the challenge being solved, if any."""
        return self._current.url if self._current else None

    def cooldown_remaining(self, origin: str) -> float:
        """Seconds left in an origin's cooldown (0 when none)."""
        until = self._cooldowns.get(origin)
        if until is None:
            return 0.0
        remaining = until - time.monotonic()
        if remaining <= 0:
            del self._cooldowns[origin]
            return 0.0
        return remaining

    def clear_cooldown(self, origin: str) -> None:
        self._cooldowns.pop(origin, None)

    # -------------------------------------------------------------------------
    # UI answers
    # -------------------------------------------------------------------------

    def complete(self) -> bool:
        """User pressed "Done": run a final check now.

        Returns:
            True if a challenge was waiting for the answer.
        """
        return self._answer(UserAction.COMPLETE)

    def cancel(self) -> bool:
        """User pressed "Cancel": give up on the challenge.

        Returns:
            True if a challenge was waiting for the answer.
        """
        return self._answer(UserAction.CANCEL)

    def _answer(self, action: UserAction) -> bool:
        challenge = self._current
        if challenge is None or challenge.action is None or challenge.action.done():
            logger.debug("No manual challenge awaiting an answer", action=action.value)
            return False
        challenge.action.set_result(action)
        logger.info("User answered manual challenge", action=action.value, origin=challenge.origin)
        return True

    # -------------------------------------------------------------------------
    # Escalation
    # -------------------------------------------------------------------------

    async def request(
        self,
        origin: str,
        url: str | None = None,
        *,
        require_clearance: bool = False,
    ) -> InterventionResult:
        """Ask the user to solve the challenge for an origin.

        Args:
            origin: Origin (``scheme://host``) the challenge blocks.
            url: Page that hit the challenge (defaults to the origin root).
            require_clearance: Genuine content is not enough; the origin must
                also have issued a clearance cookie.

        Returns:
            InterventionResult; ``cookies`` holds the Cookie header on success.
        """
        async with self._lock:
            started = time.monotonic()

            remaining = self.cooldown_remaining(origin)
            if remaining > 0:
                logger.info(
                    "Manual challenge skipped (cooldown)",
                    origin=origin,
                    cooldown_remaining=round(remaining, 1),
                )
                return InterventionResult(
                    False,
                    status=InterventionStatus.COOLDOWN,
                    cooldown_until=time.time() + remaining,
                )

            if self._context is None:
                logger.warning("Manual challenge requested without a rendering context", origin=origin)
                return InterventionResult(False, status=InterventionStatus.UNAVAILABLE)

            loop = asyncio.get_running_loop()
            challenge = ManualChallenge(
                url=url or origin + "/",
                origin=origin,
                require_clearance=require_clearance,
                action=loop.create_future(),
            )
            self._current = challenge

            try:
                status = await self._solve(challenge)
            finally:
                await self._hide(challenge)
                self._current = None

            elapsed = time.monotonic() - started
            if status is InterventionStatus.SUCCESS:
                self._cooldowns.pop(origin, None)
                cookies = None
                if self._cookie_store is not None:
                    cookies = await self._cookie_store.get(host_of(origin))
                logger.info(
                    "Manual challenge solved",
                    origin=origin,
                    elapsed_seconds=round(elapsed, 1),
                    has_cookies=bool(cookies),
                )
                return InterventionResult(
                    True,
                    cookies=cookies,
                    status=status,
                    elapsed_seconds=elapsed,
                )

            self._cooldowns[origin] = time.monotonic() + self._cooldown
            logger.warning(
                "Manual challenge failed",
                origin=origin,
                status=status.value,
                elapsed_seconds=round(elapsed, 1),
                cooldown_seconds=self._cooldown,
            )
            return InterventionResult(
                False,
                status=status,
                elapsed_seconds=elapsed,
                cooldown_until=time.time() + self._cooldown,
            )

    async def _solve(self, challenge: ManualChallenge) -> InterventionStatus:
        assert self._context is not None
        assert challenge.action is not None

        current = self._context.current_url or ""
        if not current.startswith(("http://", "https://")) or origin_of(current) != challenge.origin:
            try:
                await self._context.navigate(challenge.origin + "/", self._navigation_timeout)
            except FetchError as e:
                logger.warning("Could not load challenge origin", origin=challenge.origin, error=str(e))
                return InterventionStatus.FAILED

        verdict, html = await self._check(challenge)
        if await self._is_solved(challenge, verdict):
            # Cleared between the last automatic attempt and now
            return InterventionStatus.SUCCESS
        challenge.challenge_type = (
            detect_challenge_type(html) if verdict is PageVerdict.CHALLENGE else "clearance"
        )

        await self._show(challenge)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._max_wait
        wait = self._initial_check_delay

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return InterventionStatus.TIMEOUT

            done, _ = await asyncio.wait({challenge.action}, timeout=min(wait, remaining))
            wait = self._check_interval
            action = challenge.action.result() if done else None

            if action is UserAction.CANCEL:
                return InterventionStatus.CANCELLED

            verdict, _ = await self._check(challenge)
            if await self._is_solved(challenge, verdict):
                return InterventionStatus.SUCCESS

            if action is UserAction.COMPLETE:
                logger.info(
                    "Challenge not cleared after Done",
                    origin=challenge.origin,
                    verdict=verdict.value,
                )
                return InterventionStatus.FAILED

    async def _check(self, challenge: ManualChallenge) -> tuple[PageVerdict, str]:
        """Classify the live page. Pages mid-navigation count as challenge."""
        assert self._context is not None
        try:
            message = await self._context.evaluate(EXTRACT_PAGE_JS)
            snapshot = PageSnapshot.from_message(message, challenge.url)
        except FetchError as e:
            logger.debug("Challenge check failed", origin=challenge.origin, error=str(e))
            return PageVerdict.CHALLENGE, ""
        if snapshot.origin and snapshot.origin != challenge.origin:
            return PageVerdict.CHALLENGE, snapshot.html
        verdict = classify(snapshot.title, snapshot.html)
        if verdict is PageVerdict.INDETERMINATE:
            return PageVerdict.CHALLENGE, snapshot.html
        return verdict, snapshot.html

    async def _is_solved(self, challenge: ManualChallenge, verdict: PageVerdict) -> bool:
        """Genuine content, plus a clearance cookie when one is required."""
        if verdict is PageVerdict.CHALLENGE:
            return False
        await self._sync_cookies(challenge)
        if not challenge.require_clearance or self._cookie_store is None:
            return True
        return await self._cookie_store.has_clearance(host_of(challenge.origin))

    async def _sync_cookies(self, challenge: ManualChallenge) -> None:
        if self._cookie_store is None:
            return
        try:
            await self._cookie_store.sync(host_of(challenge.origin))
        except Exception as e:
            logger.warning("Cookie sync after manual challenge failed", error=str(e))

    async def _show(self, challenge: ManualChallenge) -> None:
        challenge.title, challenge.message = get_challenge_message(
            challenge.challenge_type
        ).format_popup(challenge.origin)
        logger.info(
            "Manual challenge awaiting user",
            origin=challenge.origin,
            url=challenge.url[:80],
            challenge_type=challenge.challenge_type,
            title=challenge.title,
        )
        challenge.shown = True
        if self._presenter is None:
            logger.warning("No challenge presenter configured", message=challenge.message)
            return
        try:
            await self._presenter.show(challenge)
        except Exception as e:
            logger.warning("Challenge presenter failed to show", error=str(e))

    async def _hide(self, challenge: ManualChallenge) -> None:
        if self._presenter is None or not challenge.shown:
            return
        try:
            await self._presenter.hide(challenge)
        except Exception as e:
            logger.warning("Challenge presenter failed to hide", error=str(e))
