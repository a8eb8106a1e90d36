"""
Configuration management for the ad script service.

Loads settings from environment variables once and caches them. The n8n
client validates its own settings at construction; this module only parses.
"""

import logging
import os
from dataclasses import dataclass, field

from ad_refactor.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_RETRY_DELAYS_MS = [1000, 2000, 3000]
DEFAULT_DISPATCH_BACKOFF_SECONDS = [10, 30, 60]


@dataclass
class Settings:
    """Service configuration.

    Attributes:
        database_url: SQLAlchemy URL of the task store
        log_level: Root log level
        n8n_webhook_url: n8n trigger webhook URL
        n8n_auth_header_key: Header name n8n checks on trigger requests
        n8n_auth_header_value: Header value n8n checks on trigger requests
        n8n_timeout: Per-request timeout in seconds
        n8n_retry_attempts: Transport attempts per trigger call
        n8n_retry_delays: Delay before each transport retry, in milliseconds
        callback_hmac_secret: Shared secret for callback signatures
        dispatch_max_tries: Job-level attempts per dispatch
        dispatch_backoff: Delay before each job retry, in seconds
    """

    database_url: str = "sqlite:///./ad_refactor.db"
    log_level: str = "INFO"
    n8n_webhook_url: str = ""
    n8n_auth_header_key: str = "X-Trigger-Auth"
    n8n_auth_header_value: str = ""
    n8n_timeout: float = 30.0
    n8n_retry_attempts: int = 3
    n8n_retry_delays: list[int] = field(default_factory=lambda: list(DEFAULT_RETRY_DELAYS_MS))
    callback_hmac_secret: str = ""
    dispatch_max_tries: int = 3
    dispatch_backoff: list[int] = field(
        default_factory=lambda: list(DEFAULT_DISPATCH_BACKOFF_SECONDS)
    )


_settings: Settings | None = None


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


def _int_list_env(name: str, default: list[int]) -> list[int]:
    """Parse a comma separated list of integers, e.g. ``"1000,2000,3000"``."""
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return list(default)
    try:
        return [int(part) for part in raw.split(",") if part.strip()]
    except ValueError as e:
        raise ConfigurationError(
            f"{name} must be a comma separated list of integers, got {raw!r}"
        ) from e


def load_settings() -> Settings:
    """
    Build settings from the current environment.

    Returns:
        Settings populated from environment variables and defaults.

    Raises:
        ConfigurationError: If a numeric variable cannot be parsed.
    """
    settings = Settings(
        database_url=os.environ.get("DATABASE_URL", Settings.database_url),
        log_level=os.environ.get("LOG_LEVEL", Settings.log_level),
        n8n_webhook_url=os.environ.get("N8N_TRIGGER_WEBHOOK_URL", ""),
        n8n_auth_header_key=os.environ.get("N8N_AUTH_HEADER_KEY", Settings.n8n_auth_header_key),
        n8n_auth_header_value=os.environ.get("N8N_AUTH_HEADER_VALUE", ""),
        n8n_timeout=_float_env("N8N_TIMEOUT", Settings.n8n_timeout),
        n8n_retry_attempts=_int_env("N8N_RETRY_ATTEMPTS", Settings.n8n_retry_attempts),
        n8n_retry_delays=_int_list_env("N8N_RETRY_DELAYS", DEFAULT_RETRY_DELAYS_MS),
        callback_hmac_secret=os.environ.get("N8N_CALLBACK_HMAC_SECRET", ""),
        dispatch_max_tries=_int_env("DISPATCH_MAX_TRIES", Settings.dispatch_max_tries),
        dispatch_backoff=_int_list_env("DISPATCH_BACKOFF", DEFAULT_DISPATCH_BACKOFF_SECONDS),
    )

    if not settings.n8n_webhook_url:
        logger.warning("N8N_TRIGGER_WEBHOOK_URL is not set; dispatch will fail to start")
    if not settings.callback_hmac_secret:
        logger.warning("N8N_CALLBACK_HMAC_SECRET is not set; callbacks will be rejected")

    return settings


def get_settings() -> Settings:
    """
    Return the cached settings, loading them on first use.

    Returns:
        Settings instance shared by the process.
    """
    global _settings

    if _settings is None:
        _settings = load_settings()

    return _settings


def clear_settings() -> None:
    """Clear cached settings (for testing)."""
    global _settings
    _settings = None
