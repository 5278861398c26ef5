"""Presence tracking on shared channels.

Each channel carries at most one local presence payload; tracking again on
the same channel replaces the previous payload and its callbacks. Join and
leave callbacks are only delivered once the channel has been synchronized at
least once, so consumers always start from a full presence set.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Callable, Dict, List, Optional

from freight_market.core.errors import PresenceTrackError
from freight_market.core.realtime import ChannelRegistry, ManagedChannel, Subscription
from freight_market.core.transport import PresenceEvent, PresenceSpec, PresenceState

logger = logging.getLogger(__name__)

SyncCallback = Callable[[PresenceState], Any]
JoinCallback = Callable[[str, List[Dict[str, Any]]], Any]
LeaveCallback = Callable[[str, List[Dict[str, Any]]], Any]

_SYNC = PresenceSpec(PresenceEvent.SYNC)
_JOIN = PresenceSpec(PresenceEvent.JOIN)
_LEAVE = PresenceSpec(PresenceEvent.LEAVE)


class _Registration:
    def __init__(
        self,
        token: int,
        key: str,
        payload: Dict[str, Any],
        on_sync: Optional[SyncCallback],
        on_join: Optional[JoinCallback],
        on_leave: Optional[LeaveCallback],
    ) -> None:
        self.token = token
        self.key = key
        self.payload = payload
        self.on_sync = on_sync
        self.on_join = on_join
        self.on_leave = on_leave
        self.announce_task: Optional[asyncio.Future] = None
        self.track_sent = False


class _PresenceView:
    """Local mirror of one channel's presence set."""

    def __init__(self, channel: ManagedChannel) -> None:
        self.channel = channel
        self.registration: Optional[_Registration] = None
        self.state: PresenceState = {}
        self.synced = False

    @property
    def name(self) -> str:
        return self.channel.name

    def attach(self) -> None:
        transport_channel = self.channel.transport_channel
        transport_channel.on(_SYNC, self.handle_sync)
        transport_channel.on(_JOIN, self.handle_join)
        transport_channel.on(_LEAVE, self.handle_leave)

    def detach(self) -> None:
        transport_channel = self.channel.transport_channel
        transport_channel.off(_SYNC, self.handle_sync)
        transport_channel.off(_JOIN, self.handle_join)
        transport_channel.off(_LEAVE, self.handle_leave)

    def _mirror(self) -> None:
        self.state = {key: list(metas) for key, metas in self.channel.transport_channel.presence_state().items()}

    def handle_sync(self) -> None:
        self._mirror()
        self.synced = True
        registration = self.registration
        if registration is not None and registration.on_sync is not None:
            self._invoke("sync", registration.on_sync, self.snapshot())

    # The transport updates its set before emitting; a participant may hold
    # metas from several connections.
    def handle_join(self, key: str, payloads: List[Dict[str, Any]]) -> None:
        self._mirror()
        registration = self.registration
        if not self.synced or registration is None or registration.on_join is None:
            return
        self._invoke("join", registration.on_join, key, list(payloads))

    def handle_leave(self, key: str, payloads: List[Dict[str, Any]]) -> None:
        self._mirror()
        self.state.pop(key, None)
        registration = self.registration
        if not self.synced or registration is None or registration.on_leave is None:
            return
        self._invoke("leave", registration.on_leave, key, list(payloads))

    def snapshot(self) -> PresenceState:
        return {key: list(metas) for key, metas in self.state.items()}

    def _invoke(self, event: str, callback: Callable[..., Any], *args: Any) -> None:
        try:
            callback(*args)
        except Exception as exc:
            logger.error("Presence %s callback on %s failed: %s", event, self.name, exc, exc_info=True)


class PresenceTracker:
    def __init__(self, registry: ChannelRegistry) -> None:
        self._registry = registry
        self._views: Dict[str, _PresenceView] = {}
        self._tokens = itertools.count(1)

    def track(
        self,
        channel_name: str,
        payload: Dict[str, Any],
        on_sync: Optional[SyncCallback] = None,
        on_join: Optional[JoinCallback] = None,
        on_leave: Optional[LeaveCallback] = None,
    ) -> Subscription:
        """Announce ``payload`` on the channel; the returned handle untracks it."""
        channel = self._registry.get_or_create(channel_name)

        view = self._views.get(channel_name)
        if view is None or view.channel is not channel:
            view = _PresenceView(channel)
            view.attach()
            self._views[channel_name] = view

        previous = view.registration
        if previous is not None:
            logger.info("Replacing tracked presence on %s", channel_name)
            if previous.announce_task is not None:
                previous.announce_task.cancel()

        key = str(payload.get("user_id") or self._registry.client_id)
        registration = _Registration(next(self._tokens), key, dict(payload), on_sync, on_join, on_leave)
        view.registration = registration
        channel.has_presence = True
        channel.ensure_subscribed()
        registration.announce_task = self._registry.spawn(
            self._announce(view, registration), name=f"presence-track:{channel_name}"
        )

        return Subscription(
            release=lambda: self._untrack(view, registration),
            is_live=lambda: view.registration is registration and not view.channel.closed,
            description=f"{channel_name}:presence:{key}",
        )

    async def _announce(self, view: _PresenceView, registration: _Registration) -> None:
        try:
            await view.channel.wait_until_joined(self._registry.config.subscribe_timeout)
            if view.registration is not registration:
                return
            registration.track_sent = True
            await view.channel.transport_channel.track(registration.payload, key=registration.key)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("%s", PresenceTrackError(view.name, exc))
            return

        if view.registration is registration:
            view.handle_sync()

    def _untrack(self, view: _PresenceView, registration: _Registration) -> None:
        if view.registration is not registration:
            logger.debug("Presence registration on %s was already replaced", view.name)
            return

        view.registration = None
        task = registration.announce_task
        if task is not None and not task.done():
            task.cancel()

        channel = view.channel
        if channel.closed:
            return

        view.detach()
        if self._views.get(view.name) is view:
            del self._views[view.name]
        channel.has_presence = False
        self._registry.spawn(self._release(view, registration), name=f"presence-untrack:{view.name}")

    async def _release(self, view: _PresenceView, registration: _Registration) -> None:
        current = self._views.get(view.name)
        retracked = current is not None and current.channel is view.channel and current.registration is not None
        if registration.track_sent and not retracked and not view.channel.closed:
            try:
                await view.channel.transport_channel.untrack()
            except Exception as exc:
                logger.warning("%s", PresenceTrackError(view.name, exc))
        self._registry.remove_if_unused(view.name)

    def state(self, channel_name: str) -> PresenceState:
        """Last synchronized presence set of a channel (empty if not tracked)."""
        view = self._views.get(channel_name)
        return view.snapshot() if view else {}

    def reset(self) -> None:
        for view in self._views.values():
            registration = view.registration
            if registration is not None and registration.announce_task is not None:
                registration.announce_task.cancel()
            view.registration = None
        self._views.clear()
