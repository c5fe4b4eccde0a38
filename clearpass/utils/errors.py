"""
Fetch error definitions for clearpass.

Every failure surfaced by the pipeline is a FetchError subclass carrying a
stable error code, so consumers can branch on the kind of failure without
string matching.

Error codes follow the pattern:
- *_TIMEOUT: A deadline elapsed
- *_ERROR: Script, transport or protocol failures
- *_MISMATCH: The rendering context answered for a different navigation
- *_UNAVAILABLE / *_UNRESOLVED: The source cannot be reached right now
"""

from enum import Enum
from typing import Any


class FetchErrorCode(str, Enum):
    """Fetch error codes."""

    TIMEOUT = "TIMEOUT"
    """Request deadline elapsed while queued or active.
    Action: Transient. Retry later."""

    SCRIPT_ERROR = "SCRIPT_ERROR"
    """An in-page script reported an error or returned a malformed message.
    Action: Transient. Retry later."""

    STALE_RESPONSE = "STALE_RESPONSE"
    """Extracted page does not belong to the requested navigation.
    Action: Transient. Retry later."""

    NETWORK_ERROR = "NETWORK_ERROR"
    """Direct HTTP request failed or returned a non-2xx status.
    Action: Transient unless the status says otherwise."""

    SOURCE_UNAVAILABLE = "SOURCE_UNAVAILABLE"
    """The source cannot be fetched at the moment."""

    CHALLENGE_UNRESOLVED = "CHALLENGE_UNRESOLVED"
    """A bot-verification challenge persisted and manual solving failed.
    Action: Show to the user. Open the source in the browser to verify."""

    CHALLENGE_PERSISTED = "CHALLENGE_PERSISTED"
    """Internal signal: automatic attempts exhausted, escalate."""


class FetchError(Exception):
    """
    Base exception for fetch pipeline errors.

    Provides a structured representation for logging and UI display.
    """

    code: FetchErrorCode = FetchErrorCode.SOURCE_UNAVAILABLE

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        """
        Initialize fetch error.

        Args:
            message: Human-readable error message.
            url: URL the failing request targeted.
            details: Optional additional error details.
        """
        super().__init__(message)
        self.message = message
        self.url = url
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """
        Convert error to a structured dictionary.

        Returns:
            Dictionary suitable for logging or UI display.
        """
        result: dict[str, Any] = {
            "ok": False,
            "error_code": self.code.value,
            "error": self.message,
        }

        if self.url:
            result["url"] = self.url

        if self.details:
            result["details"] = self.details

        return result


class FetchTimeoutError(FetchError, TimeoutError):
    """Raised when a request's deadline elapses."""

    code = FetchErrorCode.TIMEOUT

    def __init__(self, url: str | None = None, *, timeout: float | None = None):
        details = {"timeout_seconds": timeout} if timeout is not None else None
        message = f"Request timed out after {timeout}s" if timeout is not None else "Request timed out"
        super().__init__(message, url=url, details=details)
        self.timeout = timeout


class ScriptError(FetchError):
    """Raised when an in-page script fails."""

    code = FetchErrorCode.SCRIPT_ERROR


class StaleResponseMismatch(FetchError):
    """Raised when the extracted page belongs to a different navigation."""

    code = FetchErrorCode.STALE_RESPONSE

    def __init__(self, url: str, *, extracted_url: str | None = None):
        super().__init__(
            f"Extracted page does not match navigation: {extracted_url!r}",
            url=url,
            details={"extracted_url": extracted_url} if extracted_url else None,
        )
        self.extracted_url = extracted_url


class NetworkError(FetchError):
    """Raised when a direct HTTP request fails or returns a non-2xx status."""

    code = FetchErrorCode.NETWORK_ERROR

    def __init__(self, message: str, *, url: str | None = None, status: int | None = None):
        super().__init__(
            message,
            url=url,
            details={"status": status} if status is not None else None,
        )
        self.status = status


class SourceUnavailable(FetchError):
    """Raised when a source cannot be fetched at the moment."""

    code = FetchErrorCode.SOURCE_UNAVAILABLE


class ChallengeUnresolved(SourceUnavailable):
    """Raised when a bot-verification challenge could not be cleared."""

    code = FetchErrorCode.CHALLENGE_UNRESOLVED

    def __init__(self, url: str | None = None, *, origin: str | None = None):
        super().__init__(
            "Bot verification required. Open the source in the browser to verify.",
            url=url,
            details={"origin": origin} if origin else None,
        )
        self.origin = origin


class ChallengePersisted(FetchError):
    """Internal signal raised when automatic challenge attempts are exhausted.

    The dispatcher converts it into a manual escalation; it never reaches
    facade callers.
    """

    code = FetchErrorCode.CHALLENGE_PERSISTED

    def __init__(self, url: str, *, attempts: int, challenge_type: str | None = None):
        super().__init__(
            f"Challenge persisted after {attempts} attempts",
            url=url,
            details={"attempts": attempts, "challenge_type": challenge_type},
        )
        self.attempts = attempts
        self.challenge_type = challenge_type


def is_actionable(error: BaseException) -> bool:
    """Return True if the error should be shown to the user.

    Only unresolved challenges need user action; everything else is
    transient and only logged.
    """
    return isinstance(error, ChallengeUnresolved)
