"""Channel registry shared by every realtime consumer of a session.

The registry is the only owner of transport channel objects. Consumers go
through :class:`freight_market.services.realtime_service.RealtimeService`,
which keeps the per-discriminator reference counts and asks the registry to
reclaim a channel once nothing references it.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterator, List, Optional, Set

from freight_market.config.settings import settings
from freight_market.core.errors import ChannelClosedError, TransportConnectionError, TransportTimeout
from freight_market.core.transport import ChannelState, SubscribeStatus, Transport, TransportChannel

logger = logging.getLogger(__name__)

StatusListener = Callable[[str, SubscribeStatus, Optional[BaseException]], None]


@dataclass(frozen=True)
class RealtimeConfig:
    """Configuration used by :class:`ChannelRegistry`."""

    subscribe_timeout: Optional[float]

    @classmethod
    def from_settings(cls) -> "RealtimeConfig":
        timeout = settings.REALTIME_SUBSCRIBE_TIMEOUT_SECONDS
        return cls(subscribe_timeout=max(timeout, 0.1) if timeout is not None else None)


class Subscription:
    """Handle returned by every registration. Calling it unsubscribes.

    Calling it more than once, or after the session was torn down, is a no-op.
    """

    __slots__ = ("description", "_release", "_is_live", "_released")

    def __init__(self, release: Callable[[], None], is_live: Callable[[], bool], description: str) -> None:
        self.description = description
        self._release = release
        self._is_live = is_live
        self._released = False

    @property
    def active(self) -> bool:
        return not self._released and self._is_live()

    def __call__(self) -> None:
        if self._released:
            return
        self._released = True
        self._release()

    unsubscribe = __call__

    def __repr__(self) -> str:
        return f"Subscription({self.description!r}, active={self.active})"


class ManagedChannel:
    """A logical channel bound to exactly one transport channel."""

    def __init__(self, name: str, transport_channel: TransportChannel, registry: "ChannelRegistry") -> None:
        self.name = name
        self.transport_channel = transport_channel
        self.state = ChannelState.CLOSED
        self.status: Optional[SubscribeStatus] = None
        self.last_error: Optional[BaseException] = None
        self.listener_keys: Set[str] = set()
        self.has_presence = False
        self.pending_sends = 0
        self.closed = False
        self._registry = registry
        self._subscribe_started = False
        self._settled = asyncio.Event()

    @property
    def in_use(self) -> bool:
        return bool(self.listener_keys) or self.has_presence or self.pending_sends > 0

    @property
    def is_joined(self) -> bool:
        return self.state is ChannelState.JOINED

    def ensure_subscribed(self) -> None:
        """Start the transport subscription once; later calls are no-ops."""
        if self.closed or self._subscribe_started:
            return
        self._subscribe_started = True
        self.state = ChannelState.JOINING
        self._settled.clear()
        self._registry.spawn(self._subscribe(), name=f"subscribe:{self.name}")

    async def _subscribe(self) -> None:
        try:
            await self.transport_channel.subscribe(self._handle_status)
        except Exception as exc:
            logger.error("Subscribing channel %s failed: %s", self.name, exc, exc_info=True)
            self._handle_status(SubscribeStatus.CHANNEL_ERROR, exc)

    def _handle_status(self, status: SubscribeStatus, error: Optional[BaseException] = None) -> None:
        if self.closed:
            return
        self.status = status
        if status is SubscribeStatus.SUBSCRIBED:
            self.state = ChannelState.JOINED
            self.last_error = None
            logger.info("Channel %s subscribed", self.name)
        elif status is SubscribeStatus.CLOSED:
            self.state = ChannelState.CLOSED
            logger.info("Channel %s closed by transport", self.name)
        else:
            self.state = ChannelState.ERRORED
            self.last_error = error
            logger.warning("Channel %s reported %s: %s", self.name, status.value, error)
        self._settled.set()
        self._registry.notify_status(self.name, status, error)

    async def wait_until_joined(self, timeout: Optional[float] = None) -> None:
        """Block until the subscription settles; raise unless it joined."""
        self.ensure_subscribed()
        if self.state is ChannelState.JOINING:
            try:
                if timeout is None:
                    await self._settled.wait()
                else:
                    await asyncio.wait_for(self._settled.wait(), timeout)
            except asyncio.TimeoutError:
                raise TransportTimeout(self.name, timeout) from None

        if self.closed:
            raise ChannelClosedError(self.name)
        if self.state is ChannelState.ERRORED:
            status = self.status.value if self.status else None
            raise TransportConnectionError(self.name, status, self.last_error)
        if self.state is not ChannelState.JOINED:
            raise ChannelClosedError(self.name)

    def close(self) -> None:
        self.closed = True
        self.state = ChannelState.CLOSED
        self.listener_keys.clear()
        self.has_presence = False
        # wake anything still waiting for the join
        self._settled.set()

    def __repr__(self) -> str:
        return f"ManagedChannel(name={self.name!r}, state={self.state.value}, refs={len(self.listener_keys)})"


class ChannelRegistry:
    def __init__(self, transport: Transport, config: Optional[RealtimeConfig] = None) -> None:
        self._transport = transport
        self._config = config or RealtimeConfig.from_settings()
        self._channels: Dict[str, ManagedChannel] = {}
        self._tearing_down: Set[str] = set()
        self._tasks: Set[asyncio.Future] = set()
        self._status_listeners: List[StatusListener] = []

    @property
    def config(self) -> RealtimeConfig:
        return self._config

    @property
    def client_id(self) -> str:
        return self._transport.client_id

    def __contains__(self, name: object) -> bool:
        return name in self._channels

    def __len__(self) -> int:
        return len(self._channels)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._channels))

    def get(self, name: str) -> Optional[ManagedChannel]:
        return self._channels.get(name)

    def get_or_create(self, name: str) -> ManagedChannel:
        channel = self._channels.get(name)
        if channel is None:
            channel = ManagedChannel(name, self._transport.channel(name), self)
            self._channels[name] = channel
            logger.debug("Created channel %s", name)
        return channel

    def remove_if_unused(self, name: str) -> bool:
        """Tear the channel down if nothing references it. Safe to call redundantly."""
        channel = self._channels.get(name)
        if channel is None or channel.in_use or name in self._tearing_down:
            return False

        self._tearing_down.add(name)
        try:
            del self._channels[name]
            channel.close()
            self.spawn(self._remove_transport_channel(channel), name=f"remove:{name}")
            self.notify_status(name, SubscribeStatus.CLOSED, None)
        finally:
            self._tearing_down.discard(name)
        logger.info("Removed unused channel %s", name)
        return True

    def cleanup_all(self) -> None:
        """Forcibly tear down every channel, e.g. on logout."""
        channels = list(self._channels.values())
        self._channels.clear()
        for channel in channels:
            channel.close()
            self.spawn(self._remove_transport_channel(channel), name=f"remove:{channel.name}")
        if channels:
            logger.info("Tore down %s realtime channel(s)", len(channels))

    async def _remove_transport_channel(self, channel: ManagedChannel) -> None:
        try:
            await self._transport.remove_channel(channel.transport_channel)
        except Exception as exc:
            logger.error("Failed to remove transport channel %s: %s", channel.name, exc, exc_info=True)

    def add_status_listener(self, listener: StatusListener) -> Callable[[], None]:
        """Observe connection-state changes of every channel."""
        self._status_listeners.append(listener)

        def _remove() -> None:
            try:
                self._status_listeners.remove(listener)
            except ValueError:
                pass

        return _remove

    def notify_status(self, name: str, status: SubscribeStatus, error: Optional[BaseException]) -> None:
        for listener in list(self._status_listeners):
            try:
                listener(name, status, error)
            except Exception as exc:
                logger.error("Status listener failed for %s: %s", name, exc, exc_info=True)

    def spawn(self, awaitable: Awaitable, name: Optional[str] = None) -> asyncio.Future:
        """Run an awaitable in the background, logging any failure."""
        task = asyncio.ensure_future(awaitable)
        if name and isinstance(task, asyncio.Task):
            task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Future) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            name = task.get_name() if isinstance(task, asyncio.Task) else repr(task)
            logger.error("Background realtime task %s failed: %s", name, exc, exc_info=exc)

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    async def flush(self) -> None:
        """Wait for every background task, including ones spawned meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


__all__ = [
    "ChannelRegistry",
    "ManagedChannel",
    "RealtimeConfig",
    "Subscription",
]
