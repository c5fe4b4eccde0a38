"""
Rendering context boundary for clearpass.

A rendering context is one live, stateful browser page: it loads URLs,
executes scripts against the loaded document and holds the cookies the
site handed out. Only the dispatcher's worker talks to it.
"""

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class RenderingContext(Protocol):
    """
    Protocol for the shared rendering context.

    Uses Python's Protocol for structural subtyping, so tests can supply
    a scripted fake and production code a Playwright page.

    Example implementation:
        class MyContext:
            @property
            def current_url(self) -> str:
                return self._url

            async def navigate(self, url: str, timeout: float) -> str:
                ...

            async def evaluate(self, script: str, arg: Any = None) -> Any:
                ...

            async def cookies(self, url: str) -> list[dict[str, Any]]:
                ...
    """

    @property
    def current_url(self) -> str:
        """URL of the currently loaded document."""
        ...

    async def navigate(self, url: str, timeout: float) -> str:
        """
        Load a URL and wait for the load event.

        Args:
            url: URL to load.
            timeout: Load timeout in seconds.

        Returns:
            URL the context landed on (after redirects).
        """
        ...

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        """
        Execute a script against the loaded document.

        Args:
            script: JavaScript function source.
            arg: JSON-serializable argument passed to the function.

        Returns:
            The script's message (JSON-decoded result).
        """
        ...

    async def cookies(self, url: str) -> list[dict[str, Any]]:
        """
        Read cookies applicable to a URL, HTTP-only included.

        Args:
            url: URL to filter cookies by.

        Returns:
            Cookies in Playwright's dictionary format.
        """
        ...
