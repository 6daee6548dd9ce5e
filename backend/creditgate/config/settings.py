"""
Runtime settings loaded from environment variables.

All tunables (store URL, provider secrets, cache TTLs) are read here once
and shared via get_settings(). Tests call reset_settings() after
changing the environment.
"""

import os
import logging
from threading import Lock
from typing import List, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer setting, using default", extra={"setting": name, "value": raw})
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid float setting, using default", extra={"setting": name, "value": raw})
        return default


def _env_list(name: str) -> List[str]:
    raw = os.getenv(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


class Settings(BaseModel):
    """Service configuration."""

    env: str = "development"
    database_url: Optional[str] = None

    stripe_api_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_webhook_tolerance: int = 300

    session_jwt_secret: Optional[str] = None
    session_jwt_algorithm: str = "HS256"

    default_product: str = "alttext-ai"
    plans_config_path: Optional[str] = None

    usage_cache_ttl_seconds: float = 1.0
    subscription_cache_ttl_seconds: float = 30.0
    dashboard_cache_ttl_seconds: float = 30.0

    skip_quota_site_hashes: List[str] = Field(default_factory=list)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            env=os.getenv("ENV", "development"),
            database_url=os.getenv("DATABASE_URL") or None,
            stripe_api_key=os.getenv("STRIPE_API_KEY") or None,
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET") or None,
            stripe_webhook_tolerance=_env_int("STRIPE_WEBHOOK_TOLERANCE", 300),
            session_jwt_secret=os.getenv("SESSION_JWT_SECRET") or None,
            session_jwt_algorithm=os.getenv("SESSION_JWT_ALGORITHM", "HS256"),
            default_product=os.getenv("DEFAULT_PRODUCT", "alttext-ai"),
            plans_config_path=os.getenv("PLANS_CONFIG_PATH") or None,
            usage_cache_ttl_seconds=_env_float("USAGE_CACHE_TTL_SECONDS", 1.0),
            subscription_cache_ttl_seconds=_env_float("SUBSCRIPTION_CACHE_TTL_SECONDS", 30.0),
            dashboard_cache_ttl_seconds=_env_float("DASHBOARD_CACHE_TTL_SECONDS", 30.0),
            skip_quota_site_hashes=_env_list("SKIP_QUOTA_SITE_HASHES"),
        )


_settings: Optional[Settings] = None
_settings_lock = Lock()


def get_settings() -> Settings:
    """Get the process-wide Settings instance."""
    global _settings
    if _settings is None:
        with _settings_lock:
            if _settings is None:
                _settings = Settings.from_env()
    return _settings


def reset_settings() -> None:
    """
    Drop the cached settings (for testing).

    WARNING: Only use in tests!
    """
    global _settings
    _settings = None
