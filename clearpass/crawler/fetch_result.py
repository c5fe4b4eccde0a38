"""Message data classes returned by the in-page scripts."""

from typing import Any

from clearpass.utils.errors import ScriptError


class PageSnapshot:
    """Serialized document produced by the extraction script."""

    def __init__(
        self,
        html: str,
        *,
        title: str = "",
        url: str = "",
        origin: str = "",
    ):
        self.html = html
        self.title = title
        self.url = url
        self.origin = origin

    @classmethod
    def from_message(cls, message: Any, request_url: str) -> "PageSnapshot":
        """Build from an extraction message.

        Args:
            message: Value returned by EXTRACT_PAGE_JS.
            request_url: URL of the request, for error reporting.

        Returns:
            PageSnapshot.

        Raises:
            ScriptError: On an error message or a malformed one.
        """
        if not isinstance(message, dict):
            raise ScriptError("Malformed extraction message", url=request_url)
        kind = message.get("type")
        if kind == "error":
            raise ScriptError(
                f"Extraction failed: {message.get('error', 'unknown error')}",
                url=request_url,
            )
        if kind != "html":
            raise ScriptError(f"Unexpected message type: {kind!r}", url=request_url)
        return cls(
            message.get("html") or "",
            title=message.get("title") or "",
            url=message.get("url") or "",
            origin=message.get("origin") or "",
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "url": self.url,
            "origin": self.origin,
            "title": self.title,
            "content_length": len(self.html),
        }


class PostResult:
    """Outcome of a scripted POST."""

    def __init__(self, status: int, body: str, *, url: str = ""):
        self.status = status
        self.body = body
        self.url = url

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @classmethod
    def from_message(cls, message: Any, request_url: str) -> "PostResult":
        """Build from a scripted POST message.

        Raises:
            ScriptError: On a postError message or a malformed one.
        """
        if not isinstance(message, dict):
            raise ScriptError("Malformed post message", url=request_url)
        kind = message.get("type")
        if kind == "postError":
            raise ScriptError(
                f"Scripted POST failed: {message.get('error', 'unknown error')}",
                url=request_url,
            )
        if kind != "postResponse":
            raise ScriptError(f"Unexpected message type: {kind!r}", url=request_url)
        return cls(
            int(message.get("status") or 0),
            message.get("html") or "",
            url=message.get("url") or request_url,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "ok": self.ok,
            "url": self.url,
            "status": self.status,
            "content_length": len(self.body),
        }
