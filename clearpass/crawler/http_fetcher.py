"""Direct HTTP client for domains that do not need the rendering context."""

from typing import Any

import httpx

from clearpass.crawler.challenge_detector import detect_challenge_type, is_challenge_response
from clearpass.utils.config import HttpConfig, get_settings
from clearpass.utils.errors import NetworkError
from clearpass.utils.logging import get_logger

logger = get_logger(__name__)


class HttpResponse:
    """Response of a direct request."""

    def __init__(
        self,
        url: str,
        status: int,
        text: str,
        *,
        headers: dict[str, str] | None = None,
        final_url: str | None = None,
        challenge_type: str | None = None,
    ):
        self.url = url
        self.status = status
        self.text = text
        self.headers = headers or {}
        self.final_url = final_url or url
        self.challenge_type = challenge_type

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def is_challenge(self) -> bool:
        return self.challenge_type is not None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "ok": self.ok,
            "url": self.url,
            "final_url": self.final_url,
            "status": self.status,
            "content_length": len(self.text),
            "challenge_type": self.challenge_type,
        }


class HTTPFetcher:
    """HTTP client fetcher using httpx.

    Features:
    - Browser-like default headers (User-Agent, Accept, Accept-Language)
    - Cookie header supplied by the caller (from the cookie store)
    - Challenge recognition on 403/503 responses
    """

    def __init__(
        self,
        config: HttpConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize fetcher.

        Args:
            config: HTTP configuration. Uses settings if None.
            transport: Custom httpx transport (e.g. httpx.MockTransport in tests).
        """
        self._config = config or get_settings().http
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def default_headers(self) -> dict[str, str]:
        return {
            "User-Agent": self._config.user_agent,
            "Accept": self._config.accept,
            "Accept-Language": self._config.accept_language,
        }

    async def _get_client(self) -> httpx.AsyncClient:
        """Get HTTP client (lazy initialization)."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._config.timeout,
                headers=self.default_headers(),
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def fetch(
        self,
        url: str,
        *,
        method: str = "GET",
        body: str | None = None,
        cookie: str | None = None,
        referer: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> HttpResponse:
        """Send a request.

        Args:
            url: Absolute URL.
            method: HTTP method.
            body: Request body (form-encoded string for POST).
            cookie: Cookie header value.
            referer: Referer header.
            headers: Additional headers (override defaults).

        Returns:
            HttpResponse for any status code.

        Raises:
            NetworkError: Transport-level failure.
        """
        req_headers: dict[str, str] = {}
        if referer:
            req_headers["Referer"] = referer
        if cookie:
            req_headers["Cookie"] = cookie
        if method.upper() == "POST" and body is not None:
            req_headers["Content-Type"] = "application/x-www-form-urlencoded"
        if headers:
            req_headers.update(headers)

        client = await self._get_client()
        try:
            response = await client.request(
                method,
                url,
                headers=req_headers,
                content=body.encode("utf-8") if body is not None else None,
            )
        except httpx.TimeoutException as e:
            logger.info("HTTP request timed out", url=url[:80])
            raise NetworkError(
                f"Request timed out after {self._config.timeout}s", url=url
            ) from e
        except httpx.HTTPError as e:
            logger.info("HTTP request failed", url=url[:80], error=str(e))
            raise NetworkError(f"Request failed: {e}", url=url) from e

        text = response.text
        resp_headers = dict(response.headers)
        challenge_type = None
        if is_challenge_response(response.status_code, text, resp_headers):
            challenge_type = detect_challenge_type(text)
            logger.info(
                "Challenge detected on direct request",
                url=url[:80],
                status=response.status_code,
                challenge_type=challenge_type,
            )
        else:
            logger.debug(
                "HTTP fetch complete",
                url=url[:80],
                status=response.status_code,
                content_length=len(text),
            )

        return HttpResponse(
            url,
            response.status_code,
            text,
            headers=resp_headers,
            final_url=str(response.url),
            challenge_type=challenge_type,
        )

    async def close(self) -> None:
        """Close the client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
