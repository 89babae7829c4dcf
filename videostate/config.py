"""
Engine configuration.

Values come from the environment (optionally seeded from .env.local).
"""

import logging
import os
from dataclasses import dataclass

import sentry_sdk
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "http://localhost:3000/api/v1"


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r, using %s", name, raw, default)
        return default


def _int_env(name: str) -> int | None:
    raw = os.environ.get(name)
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, raw)
        return None


@dataclass(frozen=True)
class EngineSettings:
    api_url: str = DEFAULT_API_URL
    api_token: str | None = None
    request_timeout: float = 30.0

    # Progress sync
    sync_interval: float = 5.0  # seconds between scheduler ticks
    position_threshold: float = 1.0  # seconds of movement that justify a sync
    max_sync_age: float = 30.0  # sync anyway once this much time has passed

    # Milestone detection window, +/- seconds around the timestamp
    milestone_tolerance: float = 1.0

    max_cached_videos: int | None = None  # None means unbounded

    sentry_dsn: str | None = None
    environment: str = "development"

    @classmethod
    def from_env(cls, env_file: str | None = ".env.local") -> "EngineSettings":
        """Build settings from environment variables."""
        if env_file:
            load_dotenv(env_file)

        return cls(
            api_url=os.environ.get("VIDEO_API_URL") or DEFAULT_API_URL,
            api_token=os.environ.get("VIDEO_API_TOKEN") or None,
            request_timeout=_float_env("VIDEO_API_TIMEOUT", 30.0),
            sync_interval=_float_env("PROGRESS_SYNC_INTERVAL", 5.0),
            position_threshold=_float_env("PROGRESS_POSITION_THRESHOLD", 1.0),
            max_sync_age=_float_env("PROGRESS_MAX_SYNC_AGE", 30.0),
            milestone_tolerance=_float_env("MILESTONE_TOLERANCE", 1.0),
            max_cached_videos=_int_env("MAX_CACHED_VIDEOS"),
            sentry_dsn=os.environ.get("SENTRY_DSN") or None,
            environment=os.environ.get("ENVIRONMENT", "development"),
        )


def init_sentry(settings: EngineSettings) -> bool:
    """Initialize Sentry when a DSN is configured. Returns True if enabled."""
    if not settings.sentry_dsn:
        return False
    sentry_sdk.init(dsn=settings.sentry_dsn, environment=settings.environment)
    logger.info("Sentry error reporting enabled (%s)", settings.environment)
    return True
