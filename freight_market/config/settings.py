"""Application configuration powered by Pydantic settings."""

import logging
import os
from typing import Optional
from urllib.parse import urlparse, urlunparse

from pydantic_settings import BaseSettings, SettingsConfigDict


logger = logging.getLogger(__name__)


_ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower()
_ENV_FILE = ".env" if _ENVIRONMENT not in {"production", "prod"} else None


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    model_config = SettingsConfigDict(env_file=_ENV_FILE, case_sensitive=True, extra="ignore")

    # --- General API Configuration ---
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    SERVICE_NAME: str = "freight-market-realtime"

    API_HOST: str = "127.0.0.1"
    API_PORT: int = 8000
    DEBUG: bool = False
    TESTING: bool = False
    CORS_ALLOWED_ORIGINS: str = "http://localhost:3000,http://127.0.0.1:3000"

    # --- Data Store ---
    DATABASE_URL: Optional[str] = None
    DB_POOL_MIN_CONNECTIONS: int = 1
    DB_POOL_MAX_CONNECTIONS: int = 10

    # --- Redis (realtime transport) ---
    REDIS_URL: Optional[str] = None  # Will be set from environment

    # --- Realtime Channels ---
    REALTIME_CHANNEL_PREFIX: str = "realtime"
    # None waits for the transport indefinitely
    REALTIME_SUBSCRIBE_TIMEOUT_SECONDS: Optional[float] = None
    REALTIME_READ_TIMEOUT_SECONDS: float = 1.0
    REALTIME_ERROR_BACKOFF_SECONDS: float = 1.0
    # Presence entries not refreshed within the TTL are treated as gone
    REALTIME_PRESENCE_TTL_SECONDS: float = 30.0
    REALTIME_PRESENCE_HEARTBEAT_SECONDS: float = 10.0
    ONLINE_USERS_CHANNEL: str = "online-users"

    # --- Chat ---
    TYPING_TIMEOUT_SECONDS: float = 3.0

    # --- Notifications ---
    NOTIFICATION_SOUND_URL: str = "/notification.mp3"
    UNKNOWN_ACTOR_NAME: str = "Nieznany"
    DEFAULT_USERNAME: str = "Użytkownik"


def _rewrite_url_with_overrides(url: str, host: Optional[str], port: Optional[str]) -> str:
    """Rewrite a URL's host/port components while preserving credentials and paths."""

    parsed = urlparse(url)
    userinfo, at, hostport = parsed.netloc.rpartition("@")
    current_host, _, current_port = hostport.partition(":")

    new_host = host or current_host
    new_port = port or current_port

    host_segment = new_host or current_host
    if new_port:
        host_segment = f"{host_segment}:{new_port}"

    if at:
        netloc = f"{userinfo}{at}{host_segment}"
    else:
        netloc = host_segment

    return urlunparse(parsed._replace(netloc=netloc))


def _base_redis_url() -> Optional[str]:
    """Determine the baseline Redis URL before any test overrides are applied."""

    if settings.REDIS_URL:
        return settings.REDIS_URL

    env_url = os.getenv("REDIS_URL")
    if env_url:
        return env_url

    host = os.getenv("REDIS_HOST")
    port = os.getenv("REDIS_PORT")
    if host or port:
        host = host or "localhost"
        port = port or "6379"
        return f"redis://{host}:{port}/0"

    return None


def get_effective_redis_url() -> Optional[str]:
    """Return the Redis URL after applying any runtime test overrides."""

    redis_host = os.getenv("TEST_REDIS_HOST")
    redis_port = os.getenv("TEST_REDIS_PORT")

    base_url = _base_redis_url()

    if redis_host or redis_port:
        if base_url:
            return _rewrite_url_with_overrides(base_url, redis_host, redis_port)

        host = redis_host or "localhost"
        port = redis_port or "6379"
        return f"redis://{host}:{port}/0"

    return base_url


def get_effective_database_url() -> Optional[str]:
    """Return the database URL honoring TEST_DB_HOST/TEST_DB_PORT overrides."""

    database_url = settings.DATABASE_URL or os.getenv("DATABASE_URL")
    if not database_url:
        return None

    override_host = os.getenv("TEST_DB_HOST")
    override_port = os.getenv("TEST_DB_PORT")
    if override_host or override_port:
        return _rewrite_url_with_overrides(database_url, override_host, override_port)
    return database_url


# Global settings instance
settings = Settings()
