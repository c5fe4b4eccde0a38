"""
Request and context-state records owned by the dispatcher.
"""

from __future__ import annotations

import asyncio
import secrets
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from urllib.parse import urlsplit


class RequestKind(str, Enum):
    """Operation a request performs against the rendering context."""

    NAVIGATE = "navigate"
    SCRIPTED_POST = "scripted_post"


def origin_of(url: str) -> str:
    """Return ``scheme://host[:port]`` for a URL."""
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


def host_of(url: str) -> str:
    """Return the host name of a URL (no port)."""
    return urlsplit(url).hostname or ""


def _new_id() -> str:
    return secrets.token_hex(6)


@dataclass(eq=False)
class FetchRequest:
    """A unit of work for the rendering context.

    Created by the facade or the warmup coordinator; owned by the
    dispatcher once enqueued; finished when ``future`` resolves.
    """

    kind: RequestKind
    url: str
    body: str | None = None
    headers: dict[str, str] | None = None
    timeout: float | None = None  # Seconds; dispatcher default when None
    require_clearance: bool = False  # Success also needs a clearance cookie
    allow_escalation: bool = True
    id: str = field(default_factory=_new_id)
    nonce: str = field(default_factory=lambda: secrets.token_urlsafe(8))
    origin_ready: bool = False  # scripted_post: context already on the origin
    deadline: float | None = None  # Event-loop time, set on enqueue
    future: asyncio.Future[str] | None = None
    timer: asyncio.TimerHandle | None = None

    @classmethod
    def navigate(cls, url: str, **kwargs) -> FetchRequest:
        return cls(RequestKind.NAVIGATE, url, **kwargs)

    @classmethod
    def scripted_post(
        cls,
        url: str,
        body: str | None = None,
        headers: dict[str, str] | None = None,
        **kwargs,
    ) -> FetchRequest:
        return cls(RequestKind.SCRIPTED_POST, url, body=body, headers=headers, **kwargs)

    @property
    def origin(self) -> str:
        return origin_of(self.url)

    @property
    def host(self) -> str:
        return host_of(self.url)

    @property
    def done(self) -> bool:
        return self.future is not None and self.future.done()

    def remaining(self, loop: asyncio.AbstractEventLoop) -> float:
        """Seconds left before the deadline (never negative)."""
        if self.deadline is None:
            return float("inf")
        return max(0.0, self.deadline - loop.time())


@dataclass
class RenderingContextState:
    """Dispatcher-owned view of the rendering context.

    ``active_request`` is set iff an operation is outstanding against the
    context.
    """

    current_origin: str = ""
    active_request: FetchRequest | None = None
    queue: deque[FetchRequest] = field(default_factory=deque)
