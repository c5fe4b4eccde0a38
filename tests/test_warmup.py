"""
Tests for the session warmup coordinator.

Test Classification:
- @pytest.mark.integration: Warmup drives a real Dispatcher around a
  scripted rendering context

Requirements tested:
- Fire-and-forget, idempotent warmup (one in flight per origin)
- wait_until_ready() outcomes: ready, failure, own timeout
- Strong clearance requirement
- Manual escalation outcomes (solved, clearance issued, cancelled)
- Invalidation (readiness and cookies), including during a warmup

## Test Perspectives Table

| Case ID | Input / Precondition | Perspective (Equivalence / Boundary) | Expected Result | Notes |
|---------|---------------------|---------------------------------------|-----------------|-------|
| TC-WU-N-01 | warmup twice while warming | Equivalence – normal | Same task, one load | idempotent |
| TC-WU-N-02 | warmup then wait | Equivalence – normal | True, is_ready | scenario B |
| TC-WU-N-03 | Ready origin | Equivalence – normal | warmup() returns None | - |
| TC-WU-N-04 | Strong clearance, cookie issued | Equivalence – normal | Ready | - |
| TC-WU-N-05 | invalidate | Equivalence – normal | Not ready, cookies cleared | - |
| TC-WU-N-06 | Strong clearance, user issues cookie | Equivalence – normal | Ready after manual escalation | - |
| TC-WU-N-07 | Persistent challenge, user solves it | Equivalence – normal | Ready after manual escalation | - |
| TC-WU-B-01 | Wait shorter than warmup | Boundary – timeout | False, warmup continues | scenario B |
| TC-WU-B-02 | No warmup in flight | Boundary – empty | False | - |
| TC-WU-A-01 | Persistent challenge | Equivalence – abnormal | False, not ready | - |
| TC-WU-A-02 | Strong clearance, no cookie | Equivalence – abnormal | False | - |
| TC-WU-A-03 | invalidate during warmup | Equivalence – abnormal | Result discarded | - |
| TC-WU-A-04 | Persistent challenge, user cancels | Equivalence – abnormal | False, not ready | - |
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from clearpass.crawler.cookie_store import CookieStore
from clearpass.crawler.dispatcher import Dispatcher
from clearpass.crawler.retry import ChallengeRetryController
from clearpass.crawler.warmup import SessionWarmupCoordinator
from clearpass.utils.intervention_manager import ManualChallengeCoordinator
from tests.conftest import (
    CHALLENGE_HTML,
    CHALLENGE_TITLE,
    GENUINE_HTML,
    GENUINE_TITLE,
    FakeRenderingContext,
    wait_for_condition,
)

pytestmark = pytest.mark.integration

ORIGIN = "https://reader.example.com"
HOST = "reader.example.com"


@pytest.fixture
def warmup(dispatcher: Dispatcher, cookie_store: CookieStore):
    return SessionWarmupCoordinator(dispatcher, cookie_store, timeout=2.0, clearance_timeout=2.0)


class TestWarmup:
    """Tests for warmup() and wait_until_ready()."""

    async def test_idempotent_while_warming(
        self, warmup: SessionWarmupCoordinator, fake_context: FakeRenderingContext
    ) -> None:
        """
        TC-WU-N-01: Repeated calls share one warmup.

        // Given: A warmup in flight
        // When: warmup() is called again for the same origin (and a URL on it)
        // Then: The same task is returned and the origin root is loaded once
        """
        fake_context.navigate_delay = 0.05

        first = warmup.warmup(ORIGIN)
        second = warmup.warmup(f"{ORIGIN}/title/1")

        assert first is second
        assert warmup.is_warming(ORIGIN)
        assert await first is True
        assert len(fake_context.navigations) == 1
        assert fake_context.navigations[0].startswith(f"{ORIGIN}/?_cpn=")

    async def test_wait_until_ready(
        self, warmup: SessionWarmupCoordinator, fake_context: FakeRenderingContext
    ) -> None:
        """
        TC-WU-N-02: Waiters see readiness once the navigation is genuine.

        // Given: warmup() started
        // When: Two callers wait with a generous timeout
        // Then: Both get True and the origin is ready
        """
        fake_context.navigate_delay = 0.02
        warmup.warmup(ORIGIN)

        results = await asyncio.gather(
            warmup.wait_until_ready(ORIGIN, 5.0),
            warmup.wait_until_ready(ORIGIN, 5.0),
        )

        assert results == [True, True]
        assert warmup.is_ready(ORIGIN)
        assert not warmup.is_warming(ORIGIN)
        assert warmup.ready_origins() == [ORIGIN]

    async def test_ready_origin_not_warmed_again(
        self, warmup: SessionWarmupCoordinator, fake_context: FakeRenderingContext
    ) -> None:
        """TC-WU-N-03: A ready origin is a no-op."""
        await warmup.warmup(ORIGIN)

        assert warmup.warmup(ORIGIN) is None
        assert await warmup.wait_until_ready(ORIGIN, 0.01) is True
        assert len(fake_context.navigations) == 1

    async def test_wait_shorter_than_warmup(
        self, warmup: SessionWarmupCoordinator, fake_context: FakeRenderingContext
    ) -> None:
        """
        TC-WU-B-01: The waiter's own bound expires first.

        // Given: A slow warmup
        // When: Waiting with a short timeout
        // Then: The wait returns False and the warmup still completes
        """
        fake_context.navigate_delay = 0.2
        task = warmup.warmup(ORIGIN)

        assert await warmup.wait_until_ready(ORIGIN, 0.02) is False
        assert not task.done()
        assert await task is True
        assert warmup.is_ready(ORIGIN)

    async def test_wait_without_warmup(self, warmup: SessionWarmupCoordinator) -> None:
        """TC-WU-B-02: Nothing to wait for."""
        assert await warmup.wait_until_ready(ORIGIN, 1.0) is False

    async def test_persistent_challenge_fails(
        self, warmup: SessionWarmupCoordinator, fake_context: FakeRenderingContext
    ) -> None:
        """TC-WU-A-01: A warmup that cannot clear the challenge."""
        fake_context.serve(f"{ORIGIN}/", CHALLENGE_TITLE, CHALLENGE_HTML)
        warmup.warmup(ORIGIN)

        assert await warmup.wait_until_ready(ORIGIN, 5.0) is False
        assert not warmup.is_ready(ORIGIN)


class TestStrongClearance:
    """Tests for require_strong_clearance."""

    async def test_clearance_cookie_issued(
        self, warmup: SessionWarmupCoordinator, fake_context: FakeRenderingContext
    ) -> None:
        """TC-WU-N-04: The clearance cookie completes the warmup."""
        fake_context.set_cookies(HOST, {"name": "cf_clearance", "value": "tok", "expires": -1})

        assert await warmup.warmup(ORIGIN, require_strong_clearance=True) is True
        assert warmup.is_ready(ORIGIN)

    async def test_clearance_cookie_missing(
        self, warmup: SessionWarmupCoordinator, fake_context: FakeRenderingContext
    ) -> None:
        """TC-WU-A-02: Genuine content without clearance is not enough."""
        assert await warmup.warmup(ORIGIN, require_strong_clearance=True) is False
        assert not warmup.is_ready(ORIGIN)


class TestManualEscalation:
    """Warmups whose challenge needs the user."""

    @pytest_asyncio.fixture
    async def escalating(self, fake_context: FakeRenderingContext, cookie_store: CookieStore):
        """Warmup over a dispatcher that escalates to a manual coordinator."""
        presenter = MagicMock()
        presenter.show = AsyncMock()
        presenter.hide = AsyncMock()
        manual = ManualChallengeCoordinator(
            fake_context, cookie_store=cookie_store, presenter=presenter, max_wait_seconds=5.0
        )
        dispatcher = Dispatcher(
            fake_context,
            cookie_store=cookie_store,
            manual=manual,
            retry_controller=ChallengeRetryController(cookie_store, max_attempts=2, retry_delay=0),
        )
        warmup = SessionWarmupCoordinator(dispatcher, cookie_store, timeout=2.0, clearance_timeout=2.0)
        yield warmup, manual, presenter
        await dispatcher.close()

    async def test_user_issues_clearance(
        self, escalating, fake_context: FakeRenderingContext
    ) -> None:
        """
        TC-WU-N-06: The user completes a strong-clearance warmup.

        // Given: Genuine content but no clearance cookie, strong clearance required
        // When: The user completes verification while the prompt is shown
        // Then: The origin becomes ready
        """
        warmup, _, presenter = escalating
        presenter.show.side_effect = lambda challenge: fake_context.set_cookies(
            HOST, {"name": "cf_clearance", "value": "tok", "expires": -1}
        )

        warmup.warmup(ORIGIN, require_strong_clearance=True)

        assert await warmup.wait_until_ready(ORIGIN, 5.0) is True
        assert warmup.is_ready(ORIGIN)
        presenter.show.assert_awaited_once()
        assert presenter.show.await_args.args[0].challenge_type == "clearance"

    async def test_user_solves_challenge(
        self, escalating, fake_context: FakeRenderingContext
    ) -> None:
        """TC-WU-N-07: A persistent challenge solved by the user."""
        warmup, _, presenter = escalating
        fake_context.serve(f"{ORIGIN}/", CHALLENGE_TITLE, CHALLENGE_HTML)
        presenter.show.side_effect = lambda challenge: fake_context.serve(
            f"{ORIGIN}/", GENUINE_TITLE, GENUINE_HTML
        )

        warmup.warmup(ORIGIN)

        assert await warmup.wait_until_ready(ORIGIN, 5.0) is True
        assert warmup.is_ready(ORIGIN)
        presenter.show.assert_awaited_once()

    async def test_user_cancels(self, escalating, fake_context: FakeRenderingContext) -> None:
        """TC-WU-A-04: Cancelling the prompt fails the warmup."""
        warmup, manual, presenter = escalating
        fake_context.serve(f"{ORIGIN}/", CHALLENGE_TITLE, CHALLENGE_HTML)

        warmup.warmup(ORIGIN)
        await wait_for_condition(lambda: presenter.show.await_count == 1)
        assert manual.cancel() is True

        assert await warmup.wait_until_ready(ORIGIN, 5.0) is False
        assert not warmup.is_ready(ORIGIN)


class TestInvalidate:
    """Tests for invalidate()."""

    async def test_invalidate_clears_readiness_and_cookies(
        self,
        warmup: SessionWarmupCoordinator,
        fake_context: FakeRenderingContext,
        cookie_store: CookieStore,
    ) -> None:
        """
        TC-WU-N-05: Invalidation forgets the session.

        // Given: A ready origin with stored cookies
        // When: It is invalidated
        // Then: It is no longer ready, its cookies are gone and warmup runs again
        """
        fake_context.set_cookies(HOST, {"name": "session", "value": "v", "expires": -1})
        await warmup.warmup(ORIGIN)
        assert await cookie_store.get(HOST) == "session=v"

        await warmup.invalidate(ORIGIN)

        assert not warmup.is_ready(ORIGIN)
        assert await cookie_store.get(HOST) is None
        assert await warmup.warmup(ORIGIN) is True
        assert len(fake_context.navigations) == 2

    async def test_invalidate_during_warmup(
        self, warmup: SessionWarmupCoordinator, fake_context: FakeRenderingContext
    ) -> None:
        """TC-WU-A-03: A warmup that finishes after invalidation is discarded."""
        fake_context.navigate_delay = 0.05
        task = warmup.warmup(ORIGIN)

        await warmup.invalidate(ORIGIN)

        assert await task is False
        assert not warmup.is_ready(ORIGIN)

    async def test_close_cancels_in_flight(
        self, warmup: SessionWarmupCoordinator, fake_context: FakeRenderingContext
    ) -> None:
        """close() cancels running warmups."""
        fake_context.navigate_delay = 1.0
        task = warmup.warmup(ORIGIN)

        await warmup.close()

        assert task.cancelled()
        assert not warmup.is_warming(ORIGIN)
