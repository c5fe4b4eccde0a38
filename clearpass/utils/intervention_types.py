"""Manual challenge types and result classes.

Defines enums and data classes for manual challenge escalation, plus the
presenter protocol the UI implements.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable


class InterventionState(Enum):
    """Visible state of the manual challenge flow."""

    IDLE = "idle"
    AWAITING_USER = "awaiting_user"


class InterventionStatus(Enum):
    """Outcome of a manual challenge."""

    SUCCESS = "success"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    FAILED = "failed"  # User pressed "Done" but the page is still a challenge
    COOLDOWN = "cooldown"  # Origin recently failed; user not prompted
    UNAVAILABLE = "unavailable"  # No rendering context to solve in


class UserAction(Enum):
    """Answer given by the UI."""

    COMPLETE = "complete"
    CANCEL = "cancel"


@dataclass(eq=False)
class ManualChallenge:
    """A challenge waiting for the user to solve it in the live context."""

    url: str
    origin: str
    challenge_type: str = "cloudflare"
    require_clearance: bool = False
    title: str = ""
    message: str = ""
    started_at: float = field(default_factory=time.time)
    shown: bool = False
    action: "asyncio.Future[UserAction] | None" = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "url": self.url,
            "origin": self.origin,
            "challenge_type": self.challenge_type,
            "require_clearance": self.require_clearance,
            "title": self.title,
            "started_at": self.started_at,
        }


@runtime_checkable
class ChallengePresenter(Protocol):
    """UI collaborator that shows the live context to the user.

    show() receives the challenge with its popup title and message filled
    in. The UI answers through ManualChallengeCoordinator.complete() ("Done")
    or cancel() ("Cancel").
    """

    async def show(self, challenge: ManualChallenge) -> None: ...

    async def hide(self, challenge: ManualChallenge) -> None: ...


# =============================================================================
# User-facing messages
# =============================================================================


@dataclass(frozen=True)
class ChallengeMessage:
    """Message shown while a challenge waits for the user."""

    title: str
    description: str
    action_resolve: str
    action_skip: str

    def format_popup(self, origin: str) -> tuple[str, str]:
        """Format message for a popup.

        Returns:
            Tuple of (title, body).
        """
        body_lines = [
            f"Site: {origin}",
            self.description,
            "",
            f"• Done: {self.action_resolve}",
            f"• Cancel: {self.action_skip}",
        ]
        return self.title, "\n".join(body_lines)


CHALLENGE_MESSAGES: dict[str, ChallengeMessage] = {
    "clearance": ChallengeMessage(
        title="Verification Required",
        description="The site loaded, but it has not issued a verified session yet.",
        action_resolve="Complete any check shown in the page, then press Done",
        action_skip="Press Cancel to skip this source for now",
    ),
    "turnstile": ChallengeMessage(
        title="Verification Required",
        description="The site asks you to confirm you are human.",
        action_resolve="Tick the checkbox, then press Done",
        action_skip="Press Cancel to skip this source for now",
    ),
    "js_challenge": ChallengeMessage(
        title="Verification Required",
        description="Browser verification is in progress.",
        action_resolve="Wait for the page to load, then press Done",
        action_skip="Press Cancel to skip this source for now",
    ),
}

DEFAULT_CHALLENGE_MESSAGE = ChallengeMessage(
    title="Verification Required",
    description="A verification challenge is blocking access.",
    action_resolve="Complete verification in the page, then press Done",
    action_skip="Press Cancel to skip this source for now",
)


def get_challenge_message(challenge_type: str) -> ChallengeMessage:
    """Get the user-facing message for a challenge type."""
    return CHALLENGE_MESSAGES.get(challenge_type, DEFAULT_CHALLENGE_MESSAGE)


class InterventionResult:
    """Result of a manual challenge."""

    def __init__(
        self,
        success: bool,
        *,
        cookies: str | None = None,
        status: InterventionStatus | None = None,
        elapsed_seconds: float = 0.0,
        cooldown_until: float | None = None,  # Unix timestamp
    ):
        self.success = success
        self.cookies = cookies
        self.status = status or (
            InterventionStatus.SUCCESS if success else InterventionStatus.FAILED
        )
        self.elapsed_seconds = elapsed_seconds
        self.cooldown_until = cooldown_until

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "success": self.success,
            "status": self.status.value,
            "has_cookies": bool(self.cookies),
            "elapsed_seconds": self.elapsed_seconds,
            "cooldown_until": self.cooldown_until,
        }
