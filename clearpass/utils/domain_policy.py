"""
Site Policy Manager - per-site fetch policy.

This module provides:
- Loading of site policies from config/sites.yaml
- Explicit registration of sites at runtime (takes precedence over YAML)
- Pattern matching for challenge-protected domains
- Hot-reload support for configuration changes

The bypass flag is declared, never inferred: a domain goes through the
rendering context only when its site entry or a challenge-domain pattern
says so.
"""

from __future__ import annotations

import re
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import urljoin, urlsplit

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from clearpass.utils.config import get_config_dir
from clearpass.utils.logging import get_logger

logger = get_logger(__name__)


# =============================================================================
# Pydantic Schema Models
# =============================================================================


class DefaultSitePolicySchema(BaseModel):
    """Schema for the default policy (config/sites.yaml: default_policy)."""

    needs_bypass: bool = Field(default=False, description="Route through the rendering context")
    require_strong_clearance: bool = Field(
        default=False, description="Warmup must obtain a clearance cookie"
    )


class SiteEntrySchema(BaseModel):
    """Schema for a site entry."""

    id: str = Field(..., description="Site identifier used by adapters")
    base_url: str = Field(..., description="Site root, e.g. https://example.com")
    needs_bypass: bool = Field(default=False)
    require_strong_clearance: bool = Field(default=False)
    referer: str | None = Field(default=None, description="Referer for direct requests")
    headers: dict[str, str] = Field(default_factory=dict, description="Extra direct headers")

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Validate base URL is absolute http(s)."""
        v = v.strip()
        parts = urlsplit(v)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValueError("base_url must be an absolute http(s) URL")
        return v.rstrip("/")


class ChallengeDomainSchema(BaseModel):
    """Schema for known challenge-protected domains (pattern-based)."""

    domain_pattern: str = Field(..., description="Domain pattern (supports glob wildcards)")
    require_strong_clearance: bool = Field(default=False)

    @field_validator("domain_pattern")
    @classmethod
    def validate_pattern(cls, v: str) -> str:
        """Validate domain pattern format."""
        if not v or len(v) < 2:
            raise ValueError("Pattern must be at least 2 characters")
        return v.lower().strip()


class SitePolicyConfigSchema(BaseModel):
    """Root schema for sites.yaml configuration file."""

    default_policy: DefaultSitePolicySchema = Field(default_factory=DefaultSitePolicySchema)
    sites: list[SiteEntrySchema] = Field(default_factory=list)
    challenge_domains: list[ChallengeDomainSchema] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_config(self) -> SitePolicyConfigSchema:
        """Validate configuration consistency."""
        ids = [s.id for s in self.sites]
        if len(ids) != len(set(ids)):
            logger.warning("Duplicate site ids found in sites config")
        return self


# =============================================================================
# Resolved policy
# =============================================================================


@dataclass
class SitePolicy:
    """Resolved fetch policy for a domain."""

    domain: str
    needs_bypass: bool = False
    require_strong_clearance: bool = False
    site_id: str | None = None
    base_url: str | None = None
    referer: str | None = None
    headers: dict[str, str] | None = None

    # "registered", "site", "challenge_domain", "default"
    source: str = "default"

    @property
    def origin(self) -> str:
        if self.base_url:
            parts = urlsplit(self.base_url)
            return f"{parts.scheme}://{parts.netloc}"
        return f"https://{self.domain}"

    def resolve_url(self, url: str) -> str:
        """Resolve a possibly relative URL against the site base URL."""
        if urlsplit(url).scheme:
            return url
        if not self.base_url:
            raise ValueError(f"Relative URL without a site base URL: {url!r}")
        return urljoin(self.base_url + "/", url)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "domain": self.domain,
            "needs_bypass": self.needs_bypass,
            "require_strong_clearance": self.require_strong_clearance,
            "site_id": self.site_id,
            "base_url": self.base_url,
            "referer": self.referer,
            "source": self.source,
        }


# =============================================================================
# Manager
# =============================================================================


class SitePolicyManager:
    """
    Centralized manager for site policies.

    Usage:
        manager = get_site_policy_manager()
        policy = manager.get_policy("example.com")
        if policy.needs_bypass:
            ...

        # Explicit registration by an adapter
        manager.register_site("example", "https://example.com", needs_bypass=True)
    """

    def __init__(
        self,
        config_path: Path | str | None = None,
        watch_interval: float = 30.0,
        enable_hot_reload: bool = True,
    ):
        """
        Initialize site policy manager.

        Args:
            config_path: Path to sites.yaml. Defaults to <config dir>/sites.yaml.
            watch_interval: Interval (seconds) for checking file changes.
            enable_hot_reload: Whether to enable automatic hot-reload.
        """
        if config_path is None:
            config_path = get_config_dir() / "sites.yaml"
        self._config_path = Path(config_path)
        self._watch_interval = watch_interval
        self._enable_hot_reload = enable_hot_reload

        self._config: SitePolicyConfigSchema | None = None
        self._last_mtime: float = 0.0
        self._last_check: float = 0.0
        self._registered: dict[str, SiteEntrySchema] = {}
        self._policy_cache: dict[str, SitePolicy] = {}
        self._cache_lock = threading.RLock()

        self._load_config()

    def _load_config(self) -> None:
        """Load configuration from YAML file."""
        if not self._config_path.exists():
            logger.info(
                "Site policy config not found, using defaults",
                path=str(self._config_path),
            )
            self._config = SitePolicyConfigSchema()
            return

        try:
            with open(self._config_path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}

            self._config = SitePolicyConfigSchema(**data)
            self._last_mtime = self._config_path.stat().st_mtime

            with self._cache_lock:
                self._policy_cache.clear()

            logger.info(
                "Site policy config loaded",
                path=str(self._config_path),
                site_count=len(self._config.sites),
                challenge_domain_count=len(self._config.challenge_domains),
            )
        except yaml.YAMLError as e:
            logger.error(
                "Failed to parse site policy YAML",
                error=str(e),
                path=str(self._config_path),
            )
            if self._config is None:
                self._config = SitePolicyConfigSchema()
        except ValueError as e:
            logger.error(
                "Invalid site policy config",
                error=str(e),
                path=str(self._config_path),
            )
            if self._config is None:
                self._config = SitePolicyConfigSchema()

    def _check_reload(self) -> None:
        """Check if config file has changed and reload if needed."""
        if not self._enable_hot_reload:
            return

        now = time.time()
        if now - self._last_check < self._watch_interval:
            return
        self._last_check = now

        if not self._config_path.exists():
            return

        try:
            current_mtime = self._config_path.stat().st_mtime
            if current_mtime > self._last_mtime:
                logger.info("Site policy config changed, reloading...")
                self._load_config()
        except OSError as e:
            logger.warning("Failed to check config file mtime", error=str(e))

    def reload(self) -> None:
        """Force reload configuration."""
        self._load_config()

    @property
    def config(self) -> SitePolicyConfigSchema:
        """Get current configuration (with hot-reload check)."""
        self._check_reload()
        if self._config is None:
            self._load_config()
        assert self._config is not None
        return self._config

    def register_site(
        self,
        site_id: str,
        base_url: str,
        *,
        needs_bypass: bool = False,
        require_strong_clearance: bool = False,
        referer: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> SitePolicy:
        """Register a site explicitly. Overrides any YAML entry for its domain.

        Returns:
            The resolved policy for the site's domain.
        """
        entry = SiteEntrySchema(
            id=site_id,
            base_url=base_url,
            needs_bypass=needs_bypass,
            require_strong_clearance=require_strong_clearance,
            referer=referer,
            headers=headers or {},
        )
        domain = self._normalize_domain(urlsplit(entry.base_url).hostname or "")
        with self._cache_lock:
            self._registered[domain] = entry
            self._policy_cache.clear()
        logger.info(
            "Site registered",
            site_id=site_id,
            domain=domain,
            needs_bypass=needs_bypass,
        )
        return self.get_policy(domain)

    def unregister_site(self, site_id: str) -> None:
        with self._cache_lock:
            for domain, entry in list(self._registered.items()):
                if entry.id == site_id:
                    del self._registered[domain]
            self._policy_cache.clear()

    def _normalize_domain(self, domain: str) -> str:
        """Normalize domain name for matching."""
        domain = domain.lower().strip()
        if domain.startswith("www."):
            domain = domain[4:]
        return domain

    def _match_pattern(self, domain: str, pattern: str) -> bool:
        """
        Check if domain matches pattern.

        Supports:
        - Exact match: "example.com"
        - Glob wildcards: "*.example.com"
        - Suffix match: ".example.com" matches "sub.example.com"
        """
        domain = self._normalize_domain(domain)
        pattern = pattern.lower().strip()

        if domain == pattern:
            return True

        if "*" in pattern:
            if pattern.startswith("*."):
                base_domain = pattern[2:]
                if domain == base_domain or domain.endswith("." + base_domain):
                    return True
            regex_pattern = pattern.replace(".", r"\.").replace("*", r"[^.]*")
            return bool(re.match(f"^{regex_pattern}$", domain))

        if pattern.startswith("."):
            return domain.endswith(pattern) or domain == pattern[1:]

        return domain.endswith("." + pattern)

    def get_policy(self, domain: str) -> SitePolicy:
        """
        Get resolved policy for a domain.

        Resolution order:
        1. Explicit registration
        2. Site entries in sites.yaml (domain of base_url)
        3. Challenge-domain patterns (needs_bypass=True)
        4. Default policy

        Args:
            domain: Domain name (or a URL) to look up.

        Returns:
            SitePolicy with resolved values.
        """
        self._check_reload()
        if "://" in domain:
            domain = urlsplit(domain).hostname or ""
        domain = self._normalize_domain(domain)

        with self._cache_lock:
            cached = self._policy_cache.get(domain)
            if cached is not None:
                return cached

            policy = self._resolve(domain)
            self._policy_cache[domain] = policy
            return policy

    def _resolve(self, domain: str) -> SitePolicy:
        config = self.config

        entry = self._registered.get(domain)
        source = "registered"
        if entry is None:
            source = "site"
            for site in config.sites:
                site_domain = self._normalize_domain(urlsplit(site.base_url).hostname or "")
                if site_domain == domain:
                    entry = site
                    break

        if entry is not None:
            return SitePolicy(
                domain=domain,
                needs_bypass=entry.needs_bypass,
                require_strong_clearance=entry.require_strong_clearance,
                site_id=entry.id,
                base_url=entry.base_url,
                referer=entry.referer or entry.base_url + "/",
                headers=dict(entry.headers),
                source=source,
            )

        for cd in config.challenge_domains:
            if self._match_pattern(domain, cd.domain_pattern):
                return SitePolicy(
                    domain=domain,
                    needs_bypass=True,
                    require_strong_clearance=cd.require_strong_clearance,
                    source="challenge_domain",
                )

        return SitePolicy(
            domain=domain,
            needs_bypass=config.default_policy.needs_bypass,
            require_strong_clearance=config.default_policy.require_strong_clearance,
            source="default",
        )

    def get_site(self, site_id: str) -> SitePolicy | None:
        """Get the policy of a site by its identifier."""
        for entry in list(self._registered.values()) + list(self.config.sites):
            if entry.id == site_id:
                return self.get_policy(urlsplit(entry.base_url).hostname or "")
        return None

    def needs_bypass(self, domain: str) -> bool:
        """Check whether a domain is fetched through the rendering context."""
        return self.get_policy(domain).needs_bypass

    def get_bypass_origins(self) -> list[str]:
        """Origins of all configured sites that need the rendering context."""
        origins = []
        seen = set()
        for entry in list(self._registered.values()) + list(self.config.sites):
            if not entry.needs_bypass:
                continue
            parts = urlsplit(entry.base_url)
            origin = f"{parts.scheme}://{parts.netloc}"
            if origin not in seen:
                seen.add(origin)
                origins.append(origin)
        return origins

    def clear_cache(self) -> None:
        """Clear the policy cache."""
        with self._cache_lock:
            self._policy_cache.clear()


# =============================================================================
# Singleton
# =============================================================================

_manager_instance: SitePolicyManager | None = None
_manager_lock = threading.Lock()


def get_site_policy_manager(**kwargs: Any) -> SitePolicyManager:
    """Get the singleton SitePolicyManager instance."""
    global _manager_instance

    if _manager_instance is None:
        with _manager_lock:
            if _manager_instance is None:
                _manager_instance = SitePolicyManager(**kwargs)

    return _manager_instance


def reset_site_policy_manager() -> None:
    """Reset the singleton instance (for testing)."""
    global _manager_instance

    with _manager_lock:
        _manager_instance = None
