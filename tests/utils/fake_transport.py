"""In-memory stand-in for the hosted pub/sub transport.

Several :class:`FakeTransport` clients can share one :class:`FakeHub`, which
routes broadcasts between them (never back to the sender), keeps the presence
sets and lets tests inject row changes.
"""
from typing import Any, Dict, List, Optional, Tuple

from freight_market.core.transport import (
    BroadcastSpec,
    ChangeSpec,
    PresenceEvent,
    PresenceSpec,
    SubscribeStatus,
)


class FakeHub:
    def __init__(self) -> None:
        self.channels: List["FakeChannel"] = []
        # channel -> participant key -> connection ref -> meta
        self.metas: Dict[str, Dict[str, Dict[str, dict]]] = {}
        self.sent: List[Tuple[str, str, dict]] = []
        self.presence_log: List[Tuple[str, str, str]] = []

    @property
    def presence(self) -> Dict[str, Dict[str, List[dict]]]:
        return {
            name: {key: list(refs.values()) for key, refs in keys.items() if refs}
            for name, keys in self.metas.items()
        }

    def subscribed(self, name: Optional[str] = None) -> List["FakeChannel"]:
        return [
            channel
            for channel in self.channels
            if channel.subscribed and not channel.removed and (name is None or channel.name == name)
        ]

    def emit_change(self, schema: str, table: str, event_type: str, new=None, old=None) -> dict:
        change = {
            "schema": schema,
            "table": table,
            "eventType": event_type,
            "new": dict(new or {}),
            "old": dict(old or {}),
            "commit_timestamp": "2024-01-01T00:00:00+00:00",
        }
        for channel in self.subscribed():
            channel.deliver_change(change)
        return change

    def set_presence(self, name: str, state: Dict[str, List[dict]]) -> None:
        self.metas[name] = {
            key: {f"{key}#{index}": dict(meta) for index, meta in enumerate(metas)}
            for key, metas in state.items()
        }
        for channel in self.subscribed(name):
            channel.emit(PresenceEvent.SYNC)

    def emit_join(self, name: str, key: str, payloads: List[dict], ref: Optional[str] = None) -> None:
        """Add one connection's meta for ``key`` (``ref`` defaults to the key itself)."""
        refs = self.metas.setdefault(name, {}).setdefault(key, {})
        for meta in payloads:
            refs[ref or key] = dict(meta)
        for channel in self.subscribed(name):
            channel.emit(PresenceEvent.JOIN, key, list(payloads))

    def emit_leave(self, name: str, key: str, ref: Optional[str] = None) -> None:
        """Drop one connection's meta, or every meta of ``key`` when ``ref`` is omitted.

        LEAVE is only emitted once the participant has no connection left.
        """
        keys = self.metas.get(name, {})
        refs = keys.get(key, {})
        if ref is None:
            left = list(refs.values())
            refs.clear()
        else:
            left = [refs.pop(ref)] if ref in refs else []
        if refs:
            return
        keys.pop(key, None)
        for channel in self.subscribed(name):
            channel.emit(PresenceEvent.LEAVE, key, left)
    def broadcasts(self, name: str, event: Optional[str] = None) -> List[dict]:
        return [
            message["payload"]
            for channel, _, message in self.sent
            if channel == name and message.get("type") == "broadcast" and (event is None or message.get("event") == event)
        ]


class FakeChannel:
    def __init__(self, transport: "FakeTransport", name: str) -> None:
        self.name = name
        self.transport = transport
        self.listeners: List[Tuple[Any, Any]] = []
        self.subscribe_calls = 0
        self.subscribed = False
        self.removed = False
        self.tracked_key: Optional[str] = None
        self._on_status = None

    @property
    def hub(self) -> FakeHub:
        return self.transport.hub

    def on(self, spec, callback) -> None:
        self.listeners.append((spec, callback))

    def off(self, spec, callback) -> None:
        for index, (existing_spec, existing_callback) in enumerate(self.listeners):
            if existing_spec == spec and existing_callback == callback:
                del self.listeners[index]
                return

    def listener_count(self, spec=None) -> int:
        return sum(1 for existing, _ in self.listeners if spec is None or existing == spec)

    async def subscribe(self, on_status) -> None:
        self.subscribe_calls += 1
        self._on_status = on_status
        if self.transport.fail_subscribe:
            on_status(SubscribeStatus.CHANNEL_ERROR, RuntimeError("subscribe refused"))
            return
        if self.transport.auto_subscribe:
            self.complete_subscribe()

    def complete_subscribe(self, status: SubscribeStatus = SubscribeStatus.SUBSCRIBED, error=None) -> None:
        if status is SubscribeStatus.SUBSCRIBED:
            self.subscribed = True
        self._on_status(status, error)
        if self.subscribed:
            self.emit(PresenceEvent.SYNC)

    def presence_state(self) -> Dict[str, List[dict]]:
        return {key: list(metas) for key, metas in self.hub.presence.get(self.name, {}).items()}

    async def track(self, payload: Dict[str, Any], key: Optional[str] = None) -> None:
        key = key or self.transport.client_id
        if self.tracked_key is not None and self.tracked_key != key:
            await self.untrack()
        self.tracked_key = key
        self.hub.presence_log.append(("track", self.name, key))
        self.hub.emit_join(self.name, key, [dict(payload)], ref=self.transport.client_id)
        for channel in self.hub.subscribed(self.name):
            channel.emit(PresenceEvent.SYNC)

    async def untrack(self) -> None:
        key, self.tracked_key = self.tracked_key, None
        if key is None:
            return
        self.hub.presence_log.append(("untrack", self.name, key))
        self.hub.emit_leave(self.name, key, ref=self.transport.client_id)
        for channel in self.hub.subscribed(self.name):
            channel.emit(PresenceEvent.SYNC)

    async def send(self, message: Dict[str, Any]) -> None:
        self.hub.sent.append((self.name, self.transport.client_id, dict(message)))
        if message.get("type") != "broadcast":
            return
        for channel in self.hub.subscribed(self.name):
            if channel.transport is self.transport:
                continue
            for spec, callback in list(channel.listeners):
                if isinstance(spec, BroadcastSpec) and spec.event == message.get("event"):
                    callback(message.get("payload"))

    def deliver_change(self, change: dict) -> None:
        for spec, callback in list(self.listeners):
            if isinstance(spec, ChangeSpec) and spec.matches(change):
                callback(change)

    def emit(self, event: PresenceEvent, *args) -> None:
        for spec, callback in list(self.listeners):
            if isinstance(spec, PresenceSpec) and spec.event is event:
                callback(*args)


class FakeTransport:
    def __init__(self, hub: Optional[FakeHub] = None, client_id: str = "client-1", auto_subscribe: bool = True) -> None:
        self.hub = hub or FakeHub()
        self.client_id = client_id
        self.auto_subscribe = auto_subscribe
        self.fail_subscribe = False
        self.created: List[FakeChannel] = []
        self.removed: List[str] = []
        self.closed = False

    def channel(self, name: str) -> FakeChannel:
        channel = FakeChannel(self, name)
        self.created.append(channel)
        self.hub.channels.append(channel)
        return channel

    async def remove_channel(self, channel: FakeChannel) -> None:
        if channel.tracked_key is not None:
            await channel.untrack()
        channel.removed = True
        channel.subscribed = False
        channel.listeners.clear()
        self.removed.append(channel.name)

    async def close(self) -> None:
        self.closed = True

    def live(self, name: str) -> Optional[FakeChannel]:
        for channel in reversed(self.created):
            if channel.name == name and not channel.removed:
                return channel
        return None
