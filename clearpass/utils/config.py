"""
Configuration management for clearpass.
Loads and validates settings from YAML files and environment variables.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field


class GeneralConfig(BaseModel):
    """General configuration."""

    project_name: str = "clearpass"
    version: str = "0.1.0"
    log_level: str = "INFO"
    log_json: bool = True
    data_dir: str = "data"
    logs_dir: str = "logs"
    # Write a dated log file under logs_dir in addition to stderr
    log_to_file: bool = False


class DispatcherConfig(BaseModel):
    """Rendering context dispatcher configuration."""

    model_config = ConfigDict(extra="forbid")

    request_timeout: float = 30.0  # Default deadline per request (seconds)
    post_timeout: float = 30.0
    load_settle_delay: float = 0.5  # Wait after load before running scripts
    max_stale_retries: int = 3  # Extraction attempts when the URL does not match
    stale_retry_delay: float = 0.5
    cache_bust_param: str = "_cpn"  # Query parameter carrying the navigation nonce


class ChallengeConfig(BaseModel):
    """Challenge retry / escalation configuration."""

    model_config = ConfigDict(extra="forbid")

    max_attempts: int = 3  # Classifications before escalating to manual handling
    retry_delay: float = 2.0  # Challenge pages usually self-resolve within seconds
    escalate_to_manual: bool = True
    clearance_cookie: str = "cf_clearance"


class WarmupConfig(BaseModel):
    """Session warmup configuration."""

    model_config = ConfigDict(extra="forbid")

    timeout: float = 8.0
    clearance_timeout: float = 20.0  # Used when strong clearance is required
    wait_for_warmup_on_fetch: float = 20.0  # Facade wait for an in-flight warmup


class ManualChallengeConfig(BaseModel):
    """Manual (human-in-the-loop) challenge configuration."""

    model_config = ConfigDict(extra="forbid")

    check_interval: float = 2.0
    initial_check_delay: float = 1.0
    max_wait_seconds: float = 120.0
    cooldown_seconds: float = 300.0  # Per-origin quiet period after a failed escalation


class CookieConfig(BaseModel):
    """Cookie store configuration."""

    model_config = ConfigDict(extra="forbid")

    storage_key: str = "cf_cookies_v1"
    default_expiry_hours: float = 24.0  # Validity of cookies without an explicit expiry


class HttpConfig(BaseModel):
    """Direct HTTP client configuration."""

    model_config = ConfigDict(extra="forbid")

    timeout: float = 30.0
    user_agent: str = (
        "Mozilla/5.0 (Linux; Android 13; Pixel 7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Mobile Safari/537.36"
    )
    accept: str = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
    accept_language: str = "en-US,en;q=0.9"
    challenge_strikes_before_invalidate: int = 2


class BrowserConfig(BaseModel):
    """Playwright browser configuration."""

    headless: bool = True
    browser_type: str = "chromium"
    cdp_url: str | None = None  # Attach to a running Chrome instead of launching one
    viewport_width: int = 412
    viewport_height: int = 915
    navigation_timeout: float = 30.0


class StorageConfig(BaseModel):
    """Storage configuration."""

    database_path: str = "data/clearpass.db"


class Settings(BaseModel):
    """Main settings container."""

    general: GeneralConfig = Field(default_factory=GeneralConfig)
    dispatcher: DispatcherConfig = Field(default_factory=DispatcherConfig)
    challenge: ChallengeConfig = Field(default_factory=ChallengeConfig)
    warmup: WarmupConfig = Field(default_factory=WarmupConfig)
    manual: ManualChallengeConfig = Field(default_factory=ManualChallengeConfig)
    cookies: CookieConfig = Field(default_factory=CookieConfig)
    http: HttpConfig = Field(default_factory=HttpConfig)
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dictionaries.

    Args:
        base: Base dictionary.
        override: Override dictionary.

    Returns:
        Merged dictionary.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML mapping, returning an empty dict when the file is absent."""
    if not path.exists():
        return {}
    with open(path, encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _load_yaml_config(config_dir: Path) -> dict[str, Any]:
    """Load settings.yaml with local.yaml overrides.

    local.yaml mirrors the layout of settings.yaml under a top-level
    ``settings`` key so one file can hold overrides for every config file:

        settings:
          challenge:
            max_attempts: 5

    Args:
        config_dir: Configuration directory path.

    Returns:
        Merged configuration dictionary.
    """
    config = _load_yaml_file(config_dir / "settings.yaml")
    local = _load_yaml_file(config_dir / "local.yaml")
    if isinstance(local.get("settings"), dict):
        config = _deep_merge(config, local["settings"])
    return config


def _apply_env_overrides(config: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides.

    Environment variables should be prefixed with CLEARPASS_ and use
    double underscores for nested keys.

    Example:
        CLEARPASS_GENERAL__LOG_LEVEL=DEBUG

    Args:
        config: Configuration dictionary.

    Returns:
        Configuration with environment overrides.
    """
    prefix = "CLEARPASS_"

    for key, value in os.environ.items():
        if not key.startswith(prefix) or key == "CLEARPASS_CONFIG_DIR":
            continue

        key_path = key[len(prefix) :].lower().split("__")
        if len(key_path) < 2:
            continue

        current = config
        for part in key_path[:-1]:
            if not isinstance(current.get(part), dict):
                current[part] = {}
            current = current[part]

        final_key = key_path[-1]
        try:
            if value.lower() in ("true", "false"):
                current[final_key] = value.lower() == "true"
            elif "." in value:
                current[final_key] = float(value)
            else:
                current[final_key] = int(value)
        except ValueError:
            current[final_key] = value

    return config


def get_config_dir() -> Path:
    """Get the configuration directory (CLEARPASS_CONFIG_DIR or ./config)."""
    return Path(os.environ.get("CLEARPASS_CONFIG_DIR", "config"))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get application settings.

    Settings are loaded from:
    1. Default values
    2. YAML configuration files
    3. Environment variables (highest priority)

    Returns:
        Settings instance.
    """
    config = _load_yaml_config(get_config_dir())
    config = _apply_env_overrides(config)
    return Settings(**config)


def get_project_root() -> Path:
    """Get the project root directory.

    Returns:
        Project root path.
    """
    return Path(__file__).parent.parent.parent
