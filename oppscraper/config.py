"""
Runtime configuration loaded from environment variables
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional


logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = 'Mozilla/5.0 (compatible; OpportunityBot/1.0; +https://opportunitiesforyouth.org/bot)'


def get_env_var(name: str, default: Optional[str] = None) -> Optional[str]:
    """Read an environment variable, treating blank values as unset"""
    value = os.environ.get(name, "").strip()
    return value or default


def _env_int(name: str, default: int) -> int:
    raw = get_env_var(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid integer for {name}: {raw!r}, using {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = get_env_var(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid number for {name}: {raw!r}, using {default}")
        return default


@dataclass
class Settings:
    database_url: str = "sqlite:///oppscraper.db"
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.0-flash"
    user_agent: str = DEFAULT_USER_AGENT
    fetch_timeout: float = 15.0
    drain_batch_size: int = 10
    max_workers: int = 5
    domain_min_interval: float = 1.0
    confidence_threshold: float = 0.1
    stale_run_timeout: float = 3600.0
    scheduler_poll_interval: float = 60.0
    port: int = 8080
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        api_key = None
        # Skip placeholder values like "your_api_key_here"
        for env_var in ("GOOGLE_API_KEY", "GEMINI_API_KEY"):
            key = get_env_var(env_var)
            if key and not key.startswith("your_"):
                api_key = key
                break

        return cls(
            database_url=get_env_var("DATABASE_URL", cls.database_url),
            gemini_api_key=api_key,
            gemini_model=get_env_var("GEMINI_MODEL", cls.gemini_model),
            user_agent=get_env_var("SCRAPER_USER_AGENT", DEFAULT_USER_AGENT),
            fetch_timeout=_env_float("FETCH_TIMEOUT", cls.fetch_timeout),
            drain_batch_size=_env_int("DRAIN_BATCH_SIZE", cls.drain_batch_size),
            max_workers=_env_int("MAX_WORKERS", cls.max_workers),
            domain_min_interval=_env_float("DOMAIN_MIN_INTERVAL", cls.domain_min_interval),
            confidence_threshold=_env_float("CONFIDENCE_THRESHOLD", cls.confidence_threshold),
            stale_run_timeout=_env_float("STALE_RUN_TIMEOUT", cls.stale_run_timeout),
            scheduler_poll_interval=_env_float("SCHEDULER_POLL_INTERVAL", cls.scheduler_poll_interval),
            port=_env_int("PORT", cls.port),
            log_level=get_env_var("LOG_LEVEL", cls.log_level).upper(),
        )
