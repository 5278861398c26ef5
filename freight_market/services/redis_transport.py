"""Realtime channel transport on top of Redis Pub/Sub.

Topic layout (``<prefix>`` is ``REALTIME_CHANNEL_PREFIX``):

* ``<prefix>:<channel>`` carries broadcast and presence envelopes
* ``<prefix>:db:<schema>:<table>`` carries row change envelopes published by
  the database bridge through :meth:`RedisTransport.publish_change`
* ``<prefix>:presence:<channel>`` is a hash with one field per tracking
  connection, ``<key>|<client_id>``, holding ``{"meta": ..., "expires_at": ...}``

Each connection refreshes its own field from the reader loop every
``REALTIME_PRESENCE_HEARTBEAT_SECONDS``; fields not refreshed within
``REALTIME_PRESENCE_TTL_SECONDS`` are dropped on the next load.
"""
import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from freight_market.config.settings import get_effective_redis_url, settings
from freight_market.core.errors import TransportConnectionError
from freight_market.core.transport import (
    BroadcastSpec,
    ChangeSpec,
    ListenerCallback,
    ListenerSpec,
    PresenceEvent,
    PresenceSpec,
    PresenceState,
    StatusCallback,
    SubscribeStatus,
)
from freight_market.utils.helpers import generate_id, utc_now_iso

logger = logging.getLogger(__name__)

FIELD_SEPARATOR = "|"


def presence_field(key: str, client_id: str) -> str:
    return f"{key}{FIELD_SEPARATOR}{client_id}"


def split_presence_field(field: str) -> Tuple[str, Optional[str]]:
    key, separator, ref = field.rpartition(FIELD_SEPARATOR)
    if not separator:
        return field, None
    return key, ref


class RedisChannel:
    def __init__(self, transport: "RedisTransport", name: str) -> None:
        self.name = name
        self._transport = transport
        self._listeners: List[Tuple[ListenerSpec, ListenerCallback]] = []
        # participant key -> connection ref -> meta
        self._presence: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._tracked_key: Optional[str] = None
        self._tracked_meta: Optional[Dict[str, Any]] = None
        self._next_heartbeat = 0.0
        self._pubsub = None
        self._reader_task: Optional[asyncio.Task] = None
        self._on_status: Optional[StatusCallback] = None
        self._closed = False

    @property
    def topic(self) -> str:
        return f"{self._transport.prefix}:{self.name}"

    @property
    def presence_key(self) -> str:
        return f"{self._transport.prefix}:presence:{self.name}"

    def on(self, spec: ListenerSpec, callback: ListenerCallback) -> None:
        self._listeners.append((spec, callback))

    def off(self, spec: ListenerSpec, callback: ListenerCallback) -> None:
        for index, (existing_spec, existing_callback) in enumerate(self._listeners):
            if existing_spec == spec and existing_callback == callback:
                del self._listeners[index]
                return

    def presence_state(self) -> PresenceState:
        return {key: list(refs.values()) for key, refs in self._presence.items() if refs}

    async def subscribe(self, on_status: StatusCallback) -> None:
        self._on_status = on_status
        client = await self._transport.get_client()
        if client is None:
            on_status(SubscribeStatus.CHANNEL_ERROR, TransportConnectionError(self.name, "UNAVAILABLE"))
            return

        pubsub = client.pubsub()
        try:
            await pubsub.subscribe(self.topic)
            await pubsub.psubscribe(self._transport.change_pattern)
        except RedisError as exc:
            logger.warning("Redis subscribe for %s failed: %s", self.name, exc)
            on_status(SubscribeStatus.CHANNEL_ERROR, exc)
            return

        if self._closed:
            await self._close_pubsub(pubsub)
            return

        self._pubsub = pubsub
        on_status(SubscribeStatus.SUBSCRIBED, None)
        await self._load_presence()
        self._next_heartbeat = time.monotonic() + settings.REALTIME_PRESENCE_HEARTBEAT_SECONDS
        self._reader_task = asyncio.create_task(self._reader(), name=f"redis-reader:{self.name}")

    async def _reader(self) -> None:
        degraded = False
        while not self._closed:
            try:
                if time.monotonic() >= self._next_heartbeat:
                    await self._heartbeat()
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=settings.REALTIME_READ_TIMEOUT_SECONDS
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if not degraded:
                    degraded = True
                    logger.error("Error while reading Redis channel %s: %s", self.name, exc, exc_info=True)
                    self._report(SubscribeStatus.CHANNEL_ERROR, exc)
                await asyncio.sleep(settings.REALTIME_ERROR_BACKOFF_SECONDS)
                continue

            if degraded:
                degraded = False
                logger.info("Redis channel %s recovered", self.name)
                self._report(SubscribeStatus.SUBSCRIBED, None)
                await self._load_presence()

            if message is None:
                continue
            self._dispatch(message.get("data"))

    def _report(self, status: SubscribeStatus, error: Optional[BaseException]) -> None:
        if self._on_status is not None:
            self._on_status(status, error)

    def _dispatch(self, data: Any) -> None:
        try:
            envelope = json.loads(data)
        except (TypeError, ValueError):
            logger.warning("Dropping malformed envelope on %s: %r", self.name, str(data)[:100])
            return

        kind = envelope.get("type")
        if kind == "postgres_changes":
            change = envelope.get("payload") or {}
            for spec, callback in list(self._listeners):
                if isinstance(spec, ChangeSpec) and spec.matches(change):
                    self._call(callback, change)
        elif kind == "broadcast":
            if envelope.get("sender") == self._transport.client_id:
                return
            event = envelope.get("event")
            for spec, callback in list(self._listeners):
                if isinstance(spec, BroadcastSpec) and spec.event == event:
                    self._call(callback, envelope.get("payload"))
        elif kind == "presence":
            self._apply_presence(envelope)

    def _apply_presence(self, envelope: Dict[str, Any]) -> None:
        key = envelope.get("key")
        if not key:
            return
        payloads = envelope.get("payload") or []
        ref = envelope.get("ref") or key
        event = envelope.get("event")
        if event == PresenceEvent.JOIN.value:
            refs = self._presence.setdefault(key, {})
            for meta in payloads:
                refs[ref] = meta
            self._emit(PresenceEvent.JOIN, key, payloads)
        elif event == PresenceEvent.LEAVE.value:
            refs = self._presence.get(key)
            if refs is None:
                return
            left = refs.pop(ref, None)
            if left is None:
                return
            # the participant stays while another connection still tracks it
            if not refs:
                del self._presence[key]
                self._emit(PresenceEvent.LEAVE, key, [left])
        else:
            return
        self._emit(PresenceEvent.SYNC)

    def _emit(self, event: PresenceEvent, *args: Any) -> None:
        for spec, callback in list(self._listeners):
            if isinstance(spec, PresenceSpec) and spec.event is event:
                self._call(callback, *args)

    def _call(self, callback: Callable[..., Any], *args: Any) -> None:
        try:
            callback(*args)
        except Exception as exc:
            logger.error("Listener on %s failed: %s", self.name, exc, exc_info=True)

    async def _load_presence(self, refresh: bool = False) -> None:
        """Replace the local set with the hash contents, dropping expired fields.

        On a periodic ``refresh`` SYNC is only emitted when the set changed, and
        participants that vanished are announced with LEAVE first.
        """
        client = await self._transport.get_client()
        if client is None:
            return
        try:
            raw = await client.hgetall(self.presence_key)
        except RedisError as exc:
            logger.warning("Loading presence for %s failed: %s", self.name, exc)
            return

        now = time.time()
        state: Dict[str, Dict[str, Dict[str, Any]]] = {}
        expired: List[str] = []
        for field, value in raw.items():
            key, ref = split_presence_field(field)
            try:
                entry = json.loads(value)
                meta = entry["meta"]
                expires_at = float(entry["expires_at"])
            except (TypeError, ValueError, KeyError):
                logger.debug("Skipping malformed presence entry %s on %s", field, self.name)
                continue
            if ref is None:
                continue
            if expires_at <= now:
                expired.append(field)
                continue
            state.setdefault(key, {})[ref] = meta

        if expired:
            logger.info("Dropping %d expired presence entries on %s", len(expired), self.name)
            try:
                await client.hdel(self.presence_key, *expired)
            except RedisError as exc:
                logger.warning("Removing expired presence on %s failed: %s", self.name, exc)

        previous = self._presence
        self._presence = state
        if not refresh:
            self._emit(PresenceEvent.SYNC)
            return
        if state == previous:
            return
        for key, refs in previous.items():
            if key not in state:
                self._emit(PresenceEvent.LEAVE, key, list(refs.values()))
        self._emit(PresenceEvent.SYNC)

    def _has_presence_listeners(self) -> bool:
        return any(isinstance(spec, PresenceSpec) for spec, _ in self._listeners)

    async def _heartbeat(self) -> None:
        self._next_heartbeat = time.monotonic() + settings.REALTIME_PRESENCE_HEARTBEAT_SECONDS
        if self._tracked_key is not None and self._tracked_meta is not None:
            client = await self._transport.get_client()
            if client is not None:
                try:
                    await self._store_presence(client, self._tracked_key, self._tracked_meta)
                except RedisError as exc:
                    logger.warning("Refreshing presence on %s failed: %s", self.name, exc)
        if self._tracked_key is not None or self._has_presence_listeners():
            await self._load_presence(refresh=True)

    async def _store_presence(self, client, key: str, meta: Dict[str, Any]) -> None:
        entry = {"meta": meta, "expires_at": time.time() + settings.REALTIME_PRESENCE_TTL_SECONDS}
        await client.hset(self.presence_key, presence_field(key, self._transport.client_id), json.dumps(entry))

    async def _client_or_raise(self):
        client = await self._transport.get_client()
        if client is None:
            raise TransportConnectionError(self.name, "UNAVAILABLE")
        return client

    async def track(self, payload: Dict[str, Any], key: Optional[str] = None) -> None:
        key = key or self._transport.client_id
        client = await self._client_or_raise()
        if self._tracked_key and self._tracked_key != key:
            await self.untrack()
        meta = dict(payload)
        meta.setdefault("presence_ref", generate_id("ref"))
        await self._store_presence(client, key, meta)
        self._tracked_key = key
        self._tracked_meta = meta
        await self._publish(client, self._presence_envelope(PresenceEvent.JOIN, key, meta))

    async def untrack(self) -> None:
        key, meta = self._tracked_key, self._tracked_meta
        if key is None:
            return
        client = await self._client_or_raise()
        self._tracked_key = None
        self._tracked_meta = None
        await client.hdel(self.presence_key, presence_field(key, self._transport.client_id))
        await self._publish(client, self._presence_envelope(PresenceEvent.LEAVE, key, meta))

    def _presence_envelope(self, event: PresenceEvent, key: str, meta: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        return {
            "type": "presence",
            "event": event.value,
            "key": key,
            "ref": self._transport.client_id,
            "payload": [meta] if meta is not None else [],
        }

    async def send(self, message: Dict[str, Any]) -> None:
        client = await self._client_or_raise()
        await self._publish(client, message)

    async def _publish(self, client, message: Dict[str, Any]) -> None:
        envelope = dict(message, sender=self._transport.client_id)
        await client.publish(self.topic, json.dumps(envelope, ensure_ascii=False))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._tracked_key is not None:
            try:
                await self.untrack()
            except Exception as exc:
                logger.debug("Untrack on close of %s failed: %s", self.name, exc, exc_info=True)

        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None

        if self._pubsub is not None:
            await self._close_pubsub(self._pubsub)
            self._pubsub = None
        self._listeners.clear()
        self._report(SubscribeStatus.CLOSED, None)

    async def _close_pubsub(self, pubsub) -> None:
        try:
            await pubsub.unsubscribe(self.topic)
            await pubsub.punsubscribe(self._transport.change_pattern)
            await pubsub.close()
        except Exception as exc:
            logger.debug("Error while closing Redis pubsub for %s: %s", self.name, exc, exc_info=True)


class RedisTransport:
    """Creates :class:`RedisChannel` objects sharing one Redis client."""

    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        *,
        client_id: Optional[str] = None,
        prefix: Optional[str] = None,
    ) -> None:
        self.client_id = client_id or generate_id("client")
        self.prefix = prefix or settings.REALTIME_CHANNEL_PREFIX
        self._client = client
        self._owns_client = client is None
        self._redis_url_signature: Optional[str] = None

    @property
    def change_pattern(self) -> str:
        return f"{self.prefix}:db:*"

    def change_topic(self, schema: str, table: str) -> str:
        return f"{self.prefix}:db:{schema}:{table}"

    async def get_client(self) -> Optional[redis.Redis]:
        if not self._owns_client:
            return self._client

        target_url = get_effective_redis_url()
        if not target_url:
            return None

        if not self._client or self._redis_url_signature != target_url:
            if self._client:
                try:
                    await self._client.close()
                except Exception:
                    pass
            try:
                self._client = redis.from_url(target_url, encoding="utf-8", decode_responses=True)
                self._redis_url_signature = target_url
            except RedisError as exc:
                logger.warning("Failed to initialize Redis realtime client at %s: %s", target_url, exc)
                self._client = None
                self._redis_url_signature = None
        return self._client

    def channel(self, name: str) -> RedisChannel:
        return RedisChannel(self, name)

    async def remove_channel(self, channel: RedisChannel) -> None:
        await channel.close()

    async def publish_change(
        self,
        schema: str,
        table: str,
        event_type: str,
        new: Optional[Dict[str, Any]] = None,
        old: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Publish a row change, as the database bridge does after a commit."""
        client = await self.get_client()
        if client is None:
            logger.info("Skipping change publish for %s.%s because Redis is unavailable", schema, table)
            return
        change = {
            "schema": schema,
            "table": table,
            "eventType": event_type,
            "new": new or {},
            "old": old or {},
            "commit_timestamp": utc_now_iso(),
        }
        envelope = {"type": "postgres_changes", "payload": change}
        await client.publish(self.change_topic(schema, table), json.dumps(envelope, ensure_ascii=False, default=str))

    async def close(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.close()
            self._client = None
