from __future__ import annotations

from pathlib import Path
import logging
import os

try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    # python-dotenv is optional; ignore if not installed
    pass

# Repository root
REPO_ROOT = Path(__file__).resolve().parent.parent
# Default database location
DB_FILE = REPO_ROOT / "matchstakes.db"


class BaseConfig:
    """Base settings shared across environments."""

    DB_USER = os.getenv("DB_USER", "matchstakes")
    DB_PASSWORD = os.getenv("DB_PASSWORD", "")
    DB_HOST = os.getenv("DB_HOST", "localhost")


class ProductionConfig(BaseConfig):
    DB_NAME = "matchstakes_prod"


class TrialConfig(BaseConfig):
    DB_NAME = "matchstakes_trial"


class DevelopmentConfig(BaseConfig):
    DB_NAME = "matchstakes_dev"


_CONFIGS = {
    "production": ProductionConfig,
    "trial": TrialConfig,
    "development": DevelopmentConfig,
}

# Current active configuration determined by the ``APP_ENV`` environment
# variable. Defaults to development.
APP_ENV = os.getenv("APP_ENV", "development")
ActiveConfig = _CONFIGS.get(APP_ENV, DevelopmentConfig)


def get_database_url() -> str:
    """Return the configured database connection string.

    ``DATABASE_URL`` wins when set. Production and trial environments fall
    back to PostgreSQL built from ``ActiveConfig``; development uses the
    SQLite file at :data:`DB_FILE`.
    """
    url = os.getenv("DATABASE_URL")
    if url:
        return url
    if ActiveConfig is DevelopmentConfig:
        return ""
    return (
        f"postgresql://{ActiveConfig.DB_USER}:{ActiveConfig.DB_PASSWORD}"
        f"@{ActiveConfig.DB_HOST}/{ActiveConfig.DB_NAME}"
    )


def get_redis_url() -> str | None:
    """Return the Redis connection string if set."""
    return os.getenv("REDIS_URL")


def get_cache_ttl() -> int:
    """Return the cache TTL in seconds."""
    return int(os.getenv("CACHE_TTL", "300"))


def get_invitation_ttl_hours() -> int:
    """Return how long a new invitation stays open."""
    return int(os.getenv("INVITATION_TTL_HOURS", "48"))


def get_notification_channel() -> str:
    return os.getenv("NOTIFICATION_CHANNEL", "matchstakes:events")


def configure_logging(level: str | None = None) -> None:
    """Install a basic log handler at ``LOG_LEVEL`` (default INFO)."""
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


__all__ = [
    "DB_FILE",
    "get_database_url",
    "get_redis_url",
    "get_cache_ttl",
    "get_invitation_ttl_hours",
    "get_notification_channel",
    "configure_logging",
]
