"""Shared realtime subscriptions for table changes, broadcasts and presence."""
from __future__ import annotations

import inspect
import itertools
import logging
from typing import Any, Callable, Dict, Optional, Union

from freight_market.core.errors import RealtimeError
from freight_market.core.realtime import ChannelRegistry, ManagedChannel, Subscription
from freight_market.core.transport import BroadcastSpec, ChangeEvent, ChangeSpec, ListenerSpec
from freight_market.services.presence_service import (
    JoinCallback,
    LeaveCallback,
    PresenceTracker,
    SyncCallback,
)

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Any]


class _ListenerGroup:
    """Handlers sharing one transport listener on one channel."""

    def __init__(self, service: "RealtimeService", channel: ManagedChannel, spec: ListenerSpec, key: str) -> None:
        self.channel = channel
        self.spec = spec
        self.key = key
        self.handlers: Dict[int, Handler] = {}
        self._service = service

    def dispatch(self, payload: Any) -> None:
        self._service._fan_out(self, payload)


class RealtimeService:
    """Multiplexes many logical subscriptions onto shared channels.

    Must be used from the event loop that runs the session.
    """

    def __init__(self, registry: ChannelRegistry, presence: Optional[PresenceTracker] = None) -> None:
        self._registry = registry
        self._groups: Dict[str, _ListenerGroup] = {}
        self._tokens = itertools.count(1)
        self.presence = presence or PresenceTracker(registry)

    @property
    def registry(self) -> ChannelRegistry:
        return self._registry

    def on_table_changes(
        self,
        channel_name: str,
        schema: str,
        table: str,
        event: Union[str, ChangeEvent],
        filter: Optional[str],
        handler: Handler,
    ) -> Subscription:
        """Call ``handler`` with the raw change dict for every matching row change."""
        event_name = event.value if isinstance(event, ChangeEvent) else event
        return self._register(channel_name, ChangeSpec(schema, table, event_name, filter or None), handler)

    def on_broadcast(self, channel_name: str, event: str, handler: Handler) -> Subscription:
        return self._register(channel_name, BroadcastSpec(event), handler)

    def listener_count(self, channel_name: str, spec: ListenerSpec) -> int:
        group = self._groups.get(f"{channel_name}:{spec.key}")
        return len(group.handlers) if group else 0

    def _register(self, channel_name: str, spec: ListenerSpec, handler: Handler) -> Subscription:
        channel = self._registry.get_or_create(channel_name)
        key = f"{channel_name}:{spec.key}"

        group = self._groups.get(key)
        if group is None or group.channel is not channel:
            group = _ListenerGroup(self, channel, spec, key)
            self._groups[key] = group

        token = next(self._tokens)
        group.handlers[token] = handler

        if len(group.handlers) == 1:
            channel.transport_channel.on(spec, group.dispatch)
            channel.listener_keys.add(key)
            channel.ensure_subscribed()
            logger.debug("Attached transport listener %s", key)

        return Subscription(
            release=lambda: self._unregister(group, token),
            is_live=lambda: token in group.handlers and not group.channel.closed,
            description=key,
        )

    def _unregister(self, group: _ListenerGroup, token: int) -> None:
        if group.handlers.pop(token, None) is None:
            return
        if group.handlers:
            return

        if self._groups.get(group.key) is group:
            del self._groups[group.key]

        channel = group.channel
        if channel.closed:
            logger.debug("Unsubscribe of %s after its channel was torn down", group.key)
            return

        channel.transport_channel.off(group.spec, group.dispatch)
        channel.listener_keys.discard(group.key)
        logger.debug("Detached transport listener %s", group.key)
        self._registry.remove_if_unused(channel.name)

    def _fan_out(self, group: _ListenerGroup, payload: Any) -> None:
        for token, handler in list(group.handlers.items()):
            # an earlier handler in this batch may have unsubscribed it
            if token not in group.handlers:
                continue
            try:
                result = handler(payload)
            except Exception as exc:
                logger.error("Realtime handler for %s failed: %s", group.key, exc, exc_info=True)
                continue
            if inspect.isawaitable(result):
                self._registry.spawn(result, name=f"handler:{group.key}")

    async def publish(self, channel_name: str, event: str, payload: Any) -> bool:
        """Send a broadcast once the channel has joined. Returns False on failure."""
        channel = self._registry.get_or_create(channel_name)
        channel.pending_sends += 1
        return await self._deliver(channel, event, payload)

    def broadcast(self, channel_name: str, event: str, payload: Any) -> None:
        """Fire-and-forget :meth:`publish`."""
        channel = self._registry.get_or_create(channel_name)
        channel.pending_sends += 1
        self._registry.spawn(self._deliver(channel, event, payload), name=f"broadcast:{channel_name}:{event}")

    async def _deliver(self, channel: ManagedChannel, event: str, payload: Any) -> bool:
        try:
            await channel.wait_until_joined(self._registry.config.subscribe_timeout)
            await channel.transport_channel.send({"type": "broadcast", "event": event, "payload": payload})
            return True
        except RealtimeError as exc:
            logger.warning("Broadcast %s on %s not sent: %s", event, channel.name, exc)
            return False
        except Exception as exc:
            logger.error("Broadcast %s on %s failed: %s", event, channel.name, exc, exc_info=True)
            return False
        finally:
            channel.pending_sends -= 1
            if not channel.closed:
                self._registry.remove_if_unused(channel.name)

    def join_presence(
        self,
        channel_name: str,
        payload: Dict[str, Any],
        on_sync: Optional[SyncCallback] = None,
        on_join: Optional[JoinCallback] = None,
        on_leave: Optional[LeaveCallback] = None,
    ) -> Subscription:
        return self.presence.track(channel_name, payload, on_sync, on_join, on_leave)

    def cleanup(self) -> None:
        """Drop every subscription and channel (logout)."""
        self._groups.clear()
        self.presence.reset()
        self._registry.cleanup_all()
