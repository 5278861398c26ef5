import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Hashable, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from freight_market.config.settings import get_effective_redis_url

logger = logging.getLogger(__name__)

CacheKey = Tuple[Hashable, ...]
CacheListener = Callable[[CacheKey, Any], None]
_MISSING = object()


class QueryCache:
    """In-process request cache keyed by tuples such as ``("messages", cid)``.

    ``fetch`` deduplicates concurrent loads of one key. ``cancel`` aborts an
    in-flight load so its stale result cannot overwrite an optimistic update.
    """

    def __init__(self) -> None:
        self._data: Dict[CacheKey, Any] = {}
        self._stale: set = set()
        self._inflight: Dict[CacheKey, asyncio.Task] = {}
        self._listeners: List[CacheListener] = []

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def get_data(self, key: CacheKey, default: Any = None) -> Any:
        value = self._data.get(key, _MISSING)
        if value is _MISSING:
            logger.debug(f"Cache MISS for key: {key}")
            return default
        logger.debug(f"Cache HIT for key: {key}")
        return value

    def set_data(self, key: CacheKey, value_or_updater: Any) -> Any:
        """Store a value, or apply ``updater(previous)`` when given a callable."""
        if callable(value_or_updater):
            value = value_or_updater(self._data.get(key))
        else:
            value = value_or_updater
        self._data[key] = value
        self._stale.discard(key)
        logger.debug(f"Cache SET for key: {key}")
        self._notify(key, value)
        return value

    def invalidate(self, key: CacheKey) -> None:
        """Mark an entry stale; the next ``fetch`` reloads it."""
        self._stale.add(key)
        logger.debug(f"Cache INVALIDATE for key: {key}")

    def is_stale(self, key: CacheKey) -> bool:
        return key in self._stale or key not in self._data

    def remove(self, key: CacheKey) -> None:
        self._data.pop(key, None)
        self._stale.discard(key)

    async def cancel(self, key: CacheKey) -> None:
        task = self._inflight.pop(key, None)
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"Cancelled load for key {key} failed: {e}")
        logger.debug(f"Cache load CANCELLED for key: {key}")

    async def fetch(self, key: CacheKey, fetcher: Callable[[], Awaitable[Any]], force: bool = False) -> Any:
        """Return the cached value, loading it with ``fetcher`` when missing or stale."""
        if not force and not self.is_stale(key):
            return self.get_data(key)

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(fetcher())
            self._inflight[key] = task
            task.add_done_callback(lambda done, key=key: self._on_loaded(key, done))
        return await asyncio.shield(task)

    def _on_loaded(self, key: CacheKey, task: asyncio.Future) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        else:
            # cancelled or superseded
            return
        if task.cancelled() or task.exception() is not None:
            return
        self.set_data(key, task.result())

    def add_listener(self, listener: CacheListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _notify(self, key: CacheKey, value: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(key, value)
            except Exception as e:
                logger.error(f"Cache listener failed for key {key}: {e}", exc_info=True)

    def clear(self) -> None:
        for task in self._inflight.values():
            task.cancel()
        self._inflight.clear()
        self._data.clear()
        self._stale.clear()


_redis_client: Optional[redis.Redis] = None
_redis_url_signature: Optional[str] = None


async def get_redis_client() -> Optional[redis.Redis]:
    """Get a singleton Redis client instance."""
    global _redis_client, _redis_url_signature

    redis_url = get_effective_redis_url()
    if not redis_url:
        _redis_client = None
        _redis_url_signature = None
        return None

    if _redis_client is None or _redis_url_signature != redis_url:
        if _redis_client is not None:
            try:
                await _redis_client.close()
            except RedisError as exc:
                logger.debug("Closing stale Redis client failed: %s", exc)
        try:
            _redis_client = redis.from_url(redis_url, encoding="utf-8", decode_responses=True)
            _redis_url_signature = redis_url
        except RedisError as exc:
            logger.error("Failed to create Redis client at %s: %s", redis_url, exc)
            _redis_client = None
            _redis_url_signature = None

    return _redis_client
