"""One signed-in user's realtime session.

Binds authentication events to the realtime layer: signing in starts the
notification feeds and the global online presence, signing out tears every
channel down. Other auth events (token refresh, profile update) leave the
running session untouched.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, Optional

from freight_market.config.settings import settings
from freight_market.core.realtime import ChannelRegistry, RealtimeConfig, Subscription
from freight_market.core.transport import PresenceState, SubscribeStatus, Transport
from freight_market.models.schemas import CurrentUser, NotificationSnapshot, TypingStatus
from freight_market.services.cache_service import QueryCache
from freight_market.services.conversation_realtime_service import TYPING_EVENT, ChangeListener, ConversationFeed
from freight_market.services.database_service import DataStore
from freight_market.services.message_service import MessageService
from freight_market.services.notification_presenter import NotificationPresenter
from freight_market.services.notification_service import NotificationService
from freight_market.services.notification_store import NotificationStore
from freight_market.services.realtime_service import RealtimeService
from freight_market.utils.helpers import utc_now_iso
from freight_market.utils.trace_id import bind_session_trace_id

logger = logging.getLogger(__name__)


class AuthEvent(str, Enum):
    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"
    PASSWORD_RECOVERY = "PASSWORD_RECOVERY"


class RealtimeSession:
    def __init__(
        self,
        transport: Transport,
        data_store: DataStore,
        presenter: Optional[NotificationPresenter] = None,
        *,
        config: Optional[RealtimeConfig] = None,
        on_conversation_change: Optional[ChangeListener] = None,
    ) -> None:
        self.registry = ChannelRegistry(transport, config)
        self.realtime = RealtimeService(self.registry)
        self.data_store = data_store
        self.store = NotificationStore()
        self.cache = QueryCache()
        self.notifications = NotificationService(self.realtime, data_store, self.store, presenter)
        self.messages = MessageService(data_store, self.cache, self.store)
        self.user: Optional[CurrentUser] = None
        self.trace_id: Optional[str] = None
        self.is_connected = False
        self._on_conversation_change = on_conversation_change
        self._online: Optional[Subscription] = None
        self._rooms: Dict[str, Subscription] = {}
        self._conversations: Dict[str, ConversationFeed] = {}
        self._remove_status_listener = self.registry.add_status_listener(self._on_channel_status)

    async def handle_auth_event(self, event: AuthEvent, user: Optional[CurrentUser] = None) -> bool:
        """Apply an auth event; returns True when the session was started or torn down."""
        event = AuthEvent(event)
        if event is AuthEvent.SIGNED_IN:
            if user is None:
                logger.warning("SIGNED_IN received without a user; ignoring")
                return False
            return await self.sign_in(user)
        if event is AuthEvent.SIGNED_OUT:
            return await self.sign_out()
        logger.debug("Auth event %s does not affect the realtime session", event.value)
        return False

    async def sign_in(self, user: CurrentUser) -> bool:
        if self.user is not None:
            if self.user.id == user.id:
                return False
            await self.sign_out()

        self.user = user
        self.trace_id = bind_session_trace_id(user.id)
        self.notifications.start(user)
        self._online = self.realtime.join_presence(
            settings.ONLINE_USERS_CHANNEL,
            {"user_id": user.id, "username": user.display_name, "online_at": utc_now_iso()},
            on_sync=self._on_online_sync,
            on_join=self._on_online_join,
            on_leave=self._on_online_leave,
        )
        logger.info("Realtime session started for user %s", user.id)
        await self.notifications.load_initial()
        return True

    async def sign_out(self) -> bool:
        if self.user is None:
            return False
        user_id = self.user.id

        for feed in list(self._conversations.values()):
            feed.close()
        self._conversations.clear()
        self._rooms.clear()
        self._online = None
        # let the feeds deliver their final typing broadcasts before teardown
        await self.registry.flush()

        self.notifications.stop()
        self.realtime.cleanup()
        self.store.clear()
        self.cache.clear()
        self.user = None
        self.is_connected = False
        await self.registry.flush()
        logger.info("Realtime session for user %s torn down", user_id)
        return True

    async def close(self) -> None:
        await self.sign_out()
        self._remove_status_listener()

    # --- online presence ---

    def _on_online_sync(self, state: PresenceState) -> None:
        self.is_connected = True

    def _on_online_join(self, key: str, payloads) -> None:
        if self.user is not None and key == self.user.id:
            self.is_connected = True

    def _on_online_leave(self, key: str, payloads) -> None:
        if self.user is not None and key == self.user.id:
            self.is_connected = False

    def _on_channel_status(self, channel: str, status: SubscribeStatus, error: Optional[BaseException]) -> None:
        if channel != settings.ONLINE_USERS_CHANNEL or status is SubscribeStatus.SUBSCRIBED:
            return
        if self.is_connected:
            logger.warning("Lost online presence channel (%s): %s", status.value, error)
        self.is_connected = False

    def online_users(self) -> PresenceState:
        return self.realtime.presence.state(settings.ONLINE_USERS_CHANNEL)

    # --- rooms ---

    def join_room(self, room_id: str) -> Optional[Subscription]:
        """Announce the user's presence in ``room:<room_id>``."""
        if self.user is None or not room_id:
            return None
        existing = self._rooms.get(room_id)
        if existing is not None and existing.active:
            return existing
        subscription = self.realtime.join_presence(
            f"room:{room_id}",
            {"user_id": self.user.id, "username": self.user.display_name, "joined_at": utc_now_iso()},
        )
        self._rooms[room_id] = subscription
        return subscription

    def leave_room(self, room_id: str) -> None:
        subscription = self._rooms.pop(room_id, None)
        if subscription is not None:
            subscription()

    def send_typing_status(self, room_id: str, is_typing: bool) -> None:
        if self.user is None or not room_id:
            return
        status = TypingStatus(user_id=self.user.id, username=self.user.display_name, is_typing=is_typing)
        self.realtime.broadcast(f"typing:{room_id}", TYPING_EVENT, status.model_dump(by_alias=True))

    # --- conversations ---

    def open_conversation(self, conversation_id: str) -> Optional[ConversationFeed]:
        if self.user is None or not conversation_id:
            return None
        feed = self._conversations.get(conversation_id)
        if feed is None:
            feed = ConversationFeed(
                self.realtime,
                self.data_store,
                self.cache,
                self.user,
                conversation_id,
                store=self.store,
                on_change=self._on_conversation_change,
            )
            self._conversations[conversation_id] = feed
        feed.open()
        return feed

    def close_conversation(self, conversation_id: str) -> None:
        feed = self._conversations.pop(conversation_id, None)
        if feed is not None:
            feed.close()

    def conversation(self, conversation_id: str) -> Optional[ConversationFeed]:
        return self._conversations.get(conversation_id)

    def snapshot(self) -> NotificationSnapshot:
        return self.store.snapshot()
