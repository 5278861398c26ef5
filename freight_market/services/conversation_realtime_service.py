"""Realtime state of one open conversation: new messages, typing and presence."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from freight_market.config.settings import settings
from freight_market.core.errors import EnrichmentLookupError
from freight_market.core.realtime import Subscription
from freight_market.core.transport import ChangeEvent, PresenceState
from freight_market.models.schemas import (
    Actor,
    ChangePayload,
    ConversationMessage,
    ConversationUser,
    CurrentUser,
    MessageRow,
    TypingStatus,
)
from freight_market.services.cache_service import QueryCache
from freight_market.services.database_service import DataStore, lookup_actor
from freight_market.services.notification_store import NotificationStore
from freight_market.services.realtime_service import RealtimeService
from freight_market.utils.helpers import utc_now_iso

logger = logging.getLogger(__name__)

ChangeListener = Callable[[str, str], None]

TYPING_EVENT = "typing"


def messages_cache_key(conversation_id: str) -> tuple:
    return ("messages", conversation_id)


def append_message(messages: Optional[List[ConversationMessage]], message: ConversationMessage) -> List[ConversationMessage]:
    """Add ``message`` to a cached conversation without duplicating it.

    An entry with the same id is replaced in place; otherwise the oldest
    optimistic placeholder with the same sender and text is replaced.
    """
    messages = list(messages or [])
    for index, existing in enumerate(messages):
        if existing.id == message.id:
            messages[index] = message
            return messages
    for index, existing in enumerate(messages):
        if existing.pending and existing.sender_id == message.sender_id and existing.text == message.text:
            messages[index] = message
            return messages
    messages.append(message)
    return messages


class ConversationFeed:
    def __init__(
        self,
        realtime: RealtimeService,
        data_store: DataStore,
        cache: QueryCache,
        user: CurrentUser,
        conversation_id: str,
        *,
        store: Optional[NotificationStore] = None,
        on_change: Optional[ChangeListener] = None,
        typing_timeout: Optional[float] = None,
    ) -> None:
        self._realtime = realtime
        self._data_store = data_store
        self._cache = cache
        self._store = store
        self._on_change = on_change
        self.user = user
        self.conversation_id = conversation_id
        self.typing_timeout = typing_timeout if typing_timeout is not None else settings.TYPING_TIMEOUT_SECONDS

        self._subscriptions: List[Subscription] = []
        self._open = False
        self._local_typing = False
        self._typing_timer: Optional[asyncio.TimerHandle] = None
        self._remote_timers: Dict[str, asyncio.TimerHandle] = {}
        self._typing_users: Dict[str, TypingStatus] = {}
        self._users: Dict[str, ConversationUser] = {}

    @property
    def messages_channel(self) -> str:
        return f"messages:{self.conversation_id}"

    @property
    def typing_channel(self) -> str:
        return f"typing:{self.conversation_id}"

    @property
    def presence_channel(self) -> str:
        return f"presence:{self.conversation_id}"

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def typing_users(self) -> List[TypingStatus]:
        return list(self._typing_users.values())

    @property
    def conversation_users(self) -> List[ConversationUser]:
        return list(self._users.values())

    @property
    def messages(self) -> List[ConversationMessage]:
        return list(self._cache.get_data(messages_cache_key(self.conversation_id)) or [])

    def open(self) -> None:
        if self._open:
            return
        self._open = True
        realtime = self._realtime
        self._subscriptions = [
            realtime.on_table_changes(
                self.messages_channel,
                "public",
                "messages",
                ChangeEvent.INSERT,
                f"conversation_id=eq.{self.conversation_id}",
                self._on_message_insert,
            ),
            realtime.on_broadcast(self.typing_channel, TYPING_EVENT, self._on_typing),
            realtime.join_presence(
                self.presence_channel,
                {"user_id": self.user.id, "username": self.user.display_name, "online_at": utc_now_iso()},
                on_sync=self._on_presence_sync,
                on_join=self._on_presence_join,
                on_leave=self._on_presence_leave,
            ),
        ]
        logger.info("Opened conversation %s for user %s", self.conversation_id, self.user.id)

    def close(self) -> None:
        if not self._open:
            return
        if self._local_typing:
            self.set_typing(False)
        self._cancel_typing_timer()
        for handle in self._remote_timers.values():
            handle.cancel()
        self._remote_timers.clear()
        self._typing_users.clear()

        subscriptions, self._subscriptions = self._subscriptions, []
        for unsubscribe in subscriptions:
            unsubscribe()
        self._open = False
        logger.info("Closed conversation %s for user %s", self.conversation_id, self.user.id)

    def _changed(self, kind: str) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(self.conversation_id, kind)
        except Exception as exc:
            logger.error("Conversation %s change listener failed: %s", self.conversation_id, exc, exc_info=True)

    # --- messages ---

    async def _on_message_insert(self, change: Dict[str, Any]) -> None:
        try:
            row = MessageRow.model_validate(ChangePayload.model_validate(change).new)
        except ValidationError as exc:
            logger.warning("Dropping malformed message on %s: %s", self.messages_channel, exc)
            return

        try:
            sender = await lookup_actor(self._data_store, row.sender_id)
        except EnrichmentLookupError as exc:
            logger.warning("%s; using placeholder sender", exc)
            sender = Actor.unknown(row.sender_id)

        if not self._open:
            logger.debug("Discarding message %s received after conversation %s closed", row.id, self.conversation_id)
            return

        fields = row.model_dump(include=set(ConversationMessage.model_fields) - {"sender", "pending"})
        message = ConversationMessage(**fields, sender=sender)
        self._cache.set_data(
            messages_cache_key(self.conversation_id), lambda previous: append_message(previous, message)
        )
        self._changed("messages")

        if row.sender_id != self.user.id and not row.is_read:
            if self._store is not None:
                self._store.messages.remove(row.id)
            self._realtime.registry.spawn(self._mark_read(row.id), name=f"mark-read:{row.id}")

    async def _mark_read(self, message_id: str) -> None:
        result = await self._data_store.mark_message_read(message_id)
        if not result.ok:
            logger.warning("Marking message %s as read failed: %s", message_id, result.error)

    # --- typing ---

    def set_typing(self, is_typing: bool) -> None:
        """Broadcast the local typing status; ``True`` (re)arms the expiry timer."""
        self._cancel_typing_timer()
        self._local_typing = is_typing
        self._send_typing(is_typing)
        if is_typing:
            loop = asyncio.get_running_loop()
            self._typing_timer = loop.call_later(self.typing_timeout, self._expire_typing)

    def _expire_typing(self) -> None:
        self._typing_timer = None
        self._local_typing = False
        self._send_typing(False)

    def _cancel_typing_timer(self) -> None:
        if self._typing_timer is not None:
            self._typing_timer.cancel()
            self._typing_timer = None

    def _send_typing(self, is_typing: bool) -> None:
        status = TypingStatus(user_id=self.user.id, username=self.user.display_name, is_typing=is_typing)
        self._realtime.broadcast(self.typing_channel, TYPING_EVENT, status.model_dump(by_alias=True))

    def _on_typing(self, payload: Any) -> None:
        try:
            status = TypingStatus.model_validate(payload)
        except ValidationError as exc:
            logger.warning("Dropping malformed typing event on %s: %s", self.typing_channel, exc)
            return
        if status.user_id == self.user.id:
            return

        previous = self._remote_timers.pop(status.user_id, None)
        if previous is not None:
            previous.cancel()

        if status.is_typing:
            self._typing_users[status.user_id] = status
            loop = asyncio.get_running_loop()
            self._remote_timers[status.user_id] = loop.call_later(
                self.typing_timeout, self._expire_remote_typing, status.user_id
            )
        elif self._typing_users.pop(status.user_id, None) is None:
            return
        self._changed("typing")

    def _expire_remote_typing(self, user_id: str) -> None:
        self._remote_timers.pop(user_id, None)
        if self._typing_users.pop(user_id, None) is not None:
            self._changed("typing")

    # --- presence ---

    @staticmethod
    def _username(payloads: List[Dict[str, Any]]) -> str:
        for payload in payloads:
            if payload.get("username"):
                return payload["username"]
        return settings.DEFAULT_USERNAME

    def _mark_online(self, key: str, payloads: List[Dict[str, Any]]) -> None:
        existing = self._users.get(key)
        if existing is None:
            self._users[key] = ConversationUser(id=key, username=self._username(payloads), online=True)
        else:
            self._users[key] = existing.model_copy(update={"online": True})

    def _on_presence_sync(self, state: PresenceState) -> None:
        for key, payloads in state.items():
            self._mark_online(key, payloads)
        for key, user in list(self._users.items()):
            if key not in state and user.online:
                self._users[key] = user.model_copy(update={"online": False})
        self._changed("presence")

    def _on_presence_join(self, key: str, payloads: List[Dict[str, Any]]) -> None:
        self._mark_online(key, payloads)
        self._changed("presence")

    def _on_presence_leave(self, key: str, payloads: List[Dict[str, Any]]) -> None:
        existing = self._users.get(key)
        if existing is None:
            self._users[key] = ConversationUser(id=key, username=self._username(payloads), online=False)
        else:
            self._users[key] = existing.model_copy(update={"online": False})
        self._changed("presence")
