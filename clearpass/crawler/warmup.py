"""
Session warmup coordinator.

Primes origins ahead of a batch of fetches: one navigation of the origin
root through the dispatcher clears the site's challenge and leaves its
cookies in the rendering context (and the cookie store).

- warmup() is fire-and-forget and idempotent per origin
- At most one warmup is in flight per origin
- An origin stays ready until invalidated
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from clearpass.crawler.fetch_request import FetchRequest, host_of, origin_of
from clearpass.utils.config import get_settings
from clearpass.utils.errors import FetchError
from clearpass.utils.logging import get_logger

if TYPE_CHECKING:
    from clearpass.crawler.cookie_store import CookieStore
    from clearpass.crawler.dispatcher import Dispatcher

logger = get_logger(__name__)


class SessionWarmupCoordinator:
    """Tracks per-origin session readiness.

    Example:
        warmup = SessionWarmupCoordinator(dispatcher, cookie_store)
        warmup.warmup("https://example.com")
        if await warmup.wait_until_ready("https://example.com", timeout=10):
            ...
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        cookie_store: CookieStore | None = None,
        *,
        timeout: float | None = None,
        clearance_timeout: float | None = None,
    ) -> None:
        """Initialize warmup coordinator.

        Args:
            dispatcher: Dispatcher the warmup navigations go through.
            cookie_store: Store cleared when an origin is invalidated.
            timeout: Warmup deadline in seconds.
            clearance_timeout: Warmup deadline when strong clearance is required.
        """
        settings = get_settings().warmup
        self._dispatcher = dispatcher
        self._cookie_store = cookie_store
        self._timeout = timeout if timeout is not None else settings.timeout
        self._clearance_timeout = (
            clearance_timeout if clearance_timeout is not None else settings.clearance_timeout
        )

        self._ready: set[str] = set()
        self._tasks: dict[str, asyncio.Task[bool]] = {}
        self._generation: dict[str, int] = {}

    def warmup(
        self,
        origin: str,
        require_strong_clearance: bool = False,
    ) -> asyncio.Task[bool] | None:
        """Start warming an origin unless it is ready or already warming.

        Args:
            origin: Origin (or any URL on it).
            require_strong_clearance: Also require a clearance cookie.

        Returns:
            The in-flight warmup task, or None when the origin is ready.
        """
        origin = origin_of(origin)
        if origin in self._ready:
            return None
        existing = self._tasks.get(origin)
        if existing is not None:
            return existing

        generation = self._generation.get(origin, 0)
        task = asyncio.get_running_loop().create_task(
            self._run(origin, require_strong_clearance, generation),
            name=f"clearpass-warmup:{origin}",
        )
        self._tasks[origin] = task
        task.add_done_callback(lambda t, o=origin: self._forget(o, t))
        logger.info(
            "Warmup started",
            origin=origin,
            require_strong_clearance=require_strong_clearance,
        )
        return task

    def is_ready(self, origin: str) -> bool:
        return origin_of(origin) in self._ready

    def is_warming(self, origin: str) -> bool:
        return origin_of(origin) in self._tasks

    async def wait_until_ready(self, origin: str, timeout: float) -> bool:
        """Wait for an in-flight warmup of an origin.

        The warmup itself is not cancelled when the wait expires.

        Args:
            origin: Origin (or any URL on it).
            timeout: Maximum wait in seconds.

        Returns:
            True if the origin is ready; False on failure, on timeout, or
            when no warmup is in flight.
        """
        origin = origin_of(origin)
        if origin in self._ready:
            return True
        task = self._tasks.get(origin)
        if task is None:
            return False

        done, _ = await asyncio.wait({task}, timeout=timeout)
        if not done:
            logger.debug("Wait for warmup expired", origin=origin, timeout=timeout)
            return False
        if task.cancelled():
            return False
        return task.result() and origin in self._ready

    async def invalidate(self, origin: str) -> None:
        """Forget an origin's readiness and clear its cookies."""
        origin = origin_of(origin)
        self._ready.discard(origin)
        self._generation[origin] = self._generation.get(origin, 0) + 1
        if self._cookie_store is not None:
            await self._cookie_store.invalidate(host_of(origin))
        logger.info("Session invalidated", origin=origin)

    def ready_origins(self) -> list[str]:
        return sorted(self._ready)

    async def close(self) -> None:
        """Cancel in-flight warmups."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    def _forget(self, origin: str, task: asyncio.Task[bool]) -> None:
        if self._tasks.get(origin) is task:
            del self._tasks[origin]

    async def _run(self, origin: str, require_strong_clearance: bool, generation: int) -> bool:
        timeout = self._clearance_timeout if require_strong_clearance else self._timeout
        request = FetchRequest.navigate(
            origin + "/",
            timeout=timeout,
            require_clearance=require_strong_clearance,
        )
        try:
            await self._dispatcher.enqueue(request)
        except FetchError as e:
            logger.warning(
                "Warmup failed",
                origin=origin,
                error_code=e.code.value,
                error=e.message,
            )
            return False

        if self._generation.get(origin, 0) != generation:
            logger.info("Warmup finished after invalidation, discarding", origin=origin)
            return False

        self._ready.add(origin)
        logger.info("Warmup complete", origin=origin)
        return True
