"""
Shared API Dependencies
"""

import logging
from typing import Optional

from freight_market.services.cache_service import get_redis_client
from freight_market.services.database_service import DataStore, get_data_store
from freight_market.services.notification_presenter import NotificationPresenter
from freight_market.services.realtime_session import RealtimeSession
from freight_market.services.redis_transport import RedisTransport

logger = logging.getLogger(__name__)


# --- Service Singletons ---
_data_store: Optional[DataStore] = None


def get_session_data_store() -> DataStore:
    """Dependency to get the data store shared by every realtime session."""
    global _data_store
    if _data_store is None:
        _data_store = get_data_store()
    return _data_store


def set_session_data_store(data_store: Optional[DataStore]) -> None:
    """Override the shared data store (used by tests and embedding apps)."""
    global _data_store
    _data_store = data_store


async def create_transport() -> RedisTransport:
    """A transport with its own client id over the shared Redis client.

    Each session needs a distinct client id so its broadcasts reach the
    other sessions served by this process.
    """
    client = await get_redis_client()
    if client is None:
        logger.warning("Redis is not configured; realtime channels will report CHANNEL_ERROR")
    return RedisTransport(client)


async def create_session(presenter: Optional[NotificationPresenter] = None, **kwargs) -> RealtimeSession:
    transport = await create_transport()
    return RealtimeSession(transport, get_session_data_store(), presenter, **kwargs)
