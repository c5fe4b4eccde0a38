"""
Cookie store for clearpass.

Keeps the cookies obtained by the rendering context per domain and hands
them to the direct HTTP client:
- Browser -> HTTP client cookie migration (HTTP-only cookies included)
- One record per (domain, name): a sync replaces, it never appends
- Expired records are skipped and pruned on read
- Persistence through a key-value collaborator under a single key
"""

import json
import time
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from clearpass.utils.config import get_settings
from clearpass.utils.logging import get_logger

if TYPE_CHECKING:
    from clearpass.crawler.rendering_context import RenderingContext
    from clearpass.storage.kv_store import KeyValueStore

logger = get_logger(__name__)


# =============================================================================
# Pydantic Models
# =============================================================================


class CookieRecord(BaseModel):
    """A single cookie captured from the rendering context."""

    model_config = ConfigDict(frozen=False)

    domain: str = Field(..., description="Domain the cookie was captured for")
    name: str = Field(..., description="Cookie name")
    value: str = Field(..., description="Cookie value")
    expires: float | None = Field(default=None, description="Expiration as Unix timestamp")
    path: str = Field(default="/", description="Cookie path")
    secure: bool = Field(default=True, description="Secure flag")
    http_only: bool = Field(default=False, description="HttpOnly flag")
    same_site: str = Field(default="Lax", description="SameSite attribute")
    stored_at: float = Field(default_factory=time.time, description="Capture timestamp")

    def expiry(self, default_ttl_seconds: float) -> float:
        """Effective expiry: explicit expiry, or stored_at plus the default TTL."""
        if self.expires is None:
            return self.stored_at + default_ttl_seconds
        return self.expires

    def is_expired(self, default_ttl_seconds: float, now: float | None = None) -> bool:
        """Check if cookie has expired.

        Args:
            default_ttl_seconds: Validity of cookies without an explicit expiry.
            now: Reference time (defaults to the current time).

        Returns:
            True if cookie has expired.
        """
        if now is None:
            now = time.time()
        return now >= self.expiry(default_ttl_seconds)

    def to_header_value(self) -> str:
        """Convert to HTTP Cookie header format."""
        return f"{self.name}={self.value}"

    @classmethod
    def from_playwright_cookie(cls, domain: str, cookie: dict[str, Any]) -> "CookieRecord":
        """Create from Playwright cookie format.

        Playwright reports session cookies with ``expires == -1``.

        Args:
            domain: Domain the cookie is stored under.
            cookie: Playwright cookie dictionary.

        Returns:
            CookieRecord instance.
        """
        expires = cookie.get("expires")
        if expires is not None and expires < 0:
            expires = None
        return cls(
            domain=domain,
            name=cookie.get("name", ""),
            value=cookie.get("value", ""),
            expires=expires,
            path=cookie.get("path", "/"),
            secure=cookie.get("secure", True),
            http_only=cookie.get("httpOnly", False),
            same_site=cookie.get("sameSite", "Lax"),
        )


# =============================================================================
# Cookie Store
# =============================================================================


class CookieStore:
    """Per-domain cookie jar shared by the rendering context and the HTTP client."""

    def __init__(
        self,
        context: "RenderingContext | None" = None,
        kv_store: "KeyValueStore | None" = None,
        *,
        storage_key: str | None = None,
        default_expiry_hours: float | None = None,
        clearance_cookie: str | None = None,
    ):
        """Initialize cookie store.

        Args:
            context: Rendering context to read cookies from.
            kv_store: Persistence collaborator. None keeps cookies in memory only.
            storage_key: Key the jar is persisted under.
            default_expiry_hours: Validity of cookies without an explicit expiry.
            clearance_cookie: Name of the cookie proving a passed challenge.
        """
        settings = get_settings()
        self._context = context
        self._kv_store = kv_store
        self._storage_key = storage_key or settings.cookies.storage_key
        hours = (
            default_expiry_hours
            if default_expiry_hours is not None
            else settings.cookies.default_expiry_hours
        )
        self._default_ttl = hours * 3600.0
        self._clearance_cookie = clearance_cookie or settings.challenge.clearance_cookie
        self._records: dict[str, dict[str, CookieRecord]] = {}
        self._loaded = False

    def attach(self, context: "RenderingContext") -> None:
        """Attach the rendering context cookies are read from."""
        self._context = context

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    async def load(self) -> None:
        """Load the jar from the key-value collaborator.

        Records already expired are dropped on load. A corrupt blob is
        logged and discarded.
        """
        self._loaded = True
        if self._kv_store is None:
            return

        raw = await self._kv_store.get(self._storage_key)
        if not raw:
            return

        try:
            data = json.loads(raw)
            records: dict[str, dict[str, CookieRecord]] = {}
            for domain, cookies in data.items():
                records[domain] = {
                    c["name"]: CookieRecord.model_validate(c) for c in cookies
                }
        except (ValueError, TypeError, KeyError) as e:
            logger.warning("Discarding unreadable cookie jar", error=str(e))
            return

        self._records = records
        removed = self._prune_expired()
        if removed:
            await self.save()
        logger.info(
            "Cookies loaded",
            domains=len(self._records),
            expired_dropped=removed,
        )

    async def save(self) -> None:
        """Persist the jar through the key-value collaborator."""
        if self._kv_store is None:
            return
        payload = {
            domain: [r.model_dump() for r in records.values()]
            for domain, records in self._records.items()
        }
        await self._kv_store.set(self._storage_key, json.dumps(payload))
        logger.debug("Cookies saved", domains=len(self._records))

    async def _ensure_loaded(self) -> None:
        if not self._loaded:
            await self.load()

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def sync(self, domain: str) -> int:
        """Read the context's cookies for a domain and merge them into the jar.

        Args:
            domain: Host name (e.g. "example.com").

        Returns:
            Number of cookies read from the context.
        """
        if self._context is None:
            raise RuntimeError("No rendering context attached to cookie store")

        await self._ensure_loaded()

        raw_cookies = await self._context.cookies(f"https://{domain}/")
        records = self._records.setdefault(domain, {})
        for cookie in raw_cookies:
            record = CookieRecord.from_playwright_cookie(domain, cookie)
            if not record.name:
                continue
            records[record.name] = record

        if not records:
            del self._records[domain]

        await self.save()

        logger.info(
            "Cookies synced from rendering context",
            domain=domain,
            cookie_count=len(raw_cookies),
            stored=len(records),
        )
        return len(raw_cookies)

    async def get(self, domain: str) -> str | None:
        """Compose a Cookie header value for a domain.

        Expired records are skipped and pruned.

        Args:
            domain: Host name.

        Returns:
            Header value, or None when no valid cookie exists.
        """
        await self._ensure_loaded()

        records = self._records.get(domain)
        if not records:
            return None

        now = time.time()
        expired = [name for name, r in records.items() if r.is_expired(self._default_ttl, now)]
        for name in expired:
            del records[name]
        if expired:
            logger.debug("Expired cookies pruned", domain=domain, count=len(expired))
            if not records:
                del self._records[domain]
            await self.save()

        if not records:
            return None
        return "; ".join(r.to_header_value() for r in records.values())

    def records(self, domain: str) -> list[CookieRecord]:
        """Return the stored records for a domain (expired included)."""
        return list(self._records.get(domain, {}).values())

    async def has_clearance(self, domain: str) -> bool:
        """Check whether a valid clearance cookie is stored for a domain."""
        await self._ensure_loaded()
        record = self._records.get(domain, {}).get(self._clearance_cookie)
        return record is not None and not record.is_expired(self._default_ttl)

    async def invalidate(self, domain: str) -> None:
        """Clear all cookies of a domain."""
        await self._ensure_loaded()
        if self._records.pop(domain, None) is not None:
            await self.save()
        logger.info("Cookies invalidated", domain=domain)

    async def clean_expired(self) -> int:
        """Remove expired records from every domain.

        Returns:
            Number of records removed.
        """
        await self._ensure_loaded()
        removed = self._prune_expired()
        if removed:
            await self.save()
            logger.info("Expired cookies cleaned", removed=removed)
        return removed

    async def clear_all(self) -> None:
        """Drop every stored cookie, including the persisted jar."""
        self._records.clear()
        self._loaded = True
        if self._kv_store is not None:
            await self._kv_store.delete(self._storage_key)
        logger.info("All cookies cleared")

    def stored_domains(self) -> list[str]:
        """Return the domains that currently hold cookies."""
        return list(self._records.keys())

    def _prune_expired(self) -> int:
        now = time.time()
        removed = 0
        for domain in list(self._records.keys()):
            records = self._records[domain]
            for name in [n for n, r in records.items() if r.is_expired(self._default_ttl, now)]:
                del records[name]
                removed += 1
            if not records:
                del self._records[domain]
        return removed
