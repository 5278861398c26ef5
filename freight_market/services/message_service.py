import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from freight_market.config.settings import settings
from freight_market.core.errors import (
    AppError,
    ConversationParticipantsNotFoundError,
    InvalidRequestError,
    MessageReceiverNotFoundError,
)
from freight_market.models.schemas import Actor, ConversationMessage, CurrentUser
from freight_market.services.cache_service import QueryCache
from freight_market.services.conversation_realtime_service import append_message, messages_cache_key
from freight_market.services.database_service import DataStore
from freight_market.services.notification_store import NotificationStore
from freight_market.utils.helpers import generate_id, utc_now_iso

logger = logging.getLogger(__name__)


def _message_from_row(row: Dict[str, Any]) -> ConversationMessage:
    sender_id = row.get("sender_id")
    sender = None
    if row.get("sender_username") is not None or sender_id is not None:
        sender = Actor(
            id=sender_id,
            username=row.get("sender_username") or settings.UNKNOWN_ACTOR_NAME,
            email=row.get("sender_email") or "",
        )
    return ConversationMessage(
        id=row.get("id"),
        conversation_id=row.get("conversation_id"),
        sender_id=sender_id,
        receiver_id=row.get("receiver_id"),
        text=row.get("text") or "",
        is_read=bool(row.get("is_read")),
        created_at=row.get("created_at"),
        sender=sender,
    )


class MessageService:
    """Reads and sends conversation messages through the request cache."""

    def __init__(self, data_store: DataStore, cache: QueryCache, store: Optional[NotificationStore] = None):
        self.data_store = data_store
        self.cache = cache
        self.store = store

    async def list_messages(self, user: CurrentUser, conversation_id: str) -> List[ConversationMessage]:
        """Mark the conversation read for ``user`` and return it oldest first."""
        key = messages_cache_key(conversation_id)

        async def _load() -> List[ConversationMessage]:
            marked = await self.data_store.mark_conversation_read(conversation_id, user.id)
            if marked.ok:
                if self.store is not None:
                    for message_id in marked.data or []:
                        self.store.messages.remove(message_id)
            else:
                logger.warning(f"Marking conversation {conversation_id} as read failed: {marked.error}")

            result = await self.data_store.list_messages(conversation_id)
            if not result.ok:
                raise AppError(
                    code="MESSAGES_LOAD_FAILED",
                    message="Nie udało się pobrać wiadomości",
                    details={"conversation_id": conversation_id},
                )
            messages = []
            for row in result.data or []:
                try:
                    messages.append(_message_from_row(row))
                except ValidationError as e:
                    logger.warning(f"Skipping malformed message row {row.get('id')}: {e}")
            return messages

        return await self.cache.fetch(key, _load, force=True)

    async def send_message(self, user: CurrentUser, conversation_id: str, text: str) -> Optional[ConversationMessage]:
        """Insert a message with an optimistic cache entry, rolled back on failure."""
        if not text or not text.strip() or not conversation_id:
            return None

        participants = await self.data_store.list_conversation_participants(conversation_id)
        if not participants.ok or not participants.data:
            raise ConversationParticipantsNotFoundError(conversation_id)

        receiver_id = next(
            (str(row["user_id"]) for row in participants.data if str(row.get("user_id")) != user.id),
            None,
        )
        if receiver_id is None:
            raise MessageReceiverNotFoundError(conversation_id)

        key = messages_cache_key(conversation_id)
        await self.cache.cancel(key)
        previous = self.cache.get_data(key)
        placeholder = ConversationMessage(
            id=generate_id("temp"),
            conversation_id=conversation_id,
            sender_id=user.id,
            receiver_id=receiver_id,
            text=text,
            created_at=utc_now_iso(),
            sender=user.as_actor(),
            pending=True,
        )
        self.cache.set_data(key, lambda current: list(current or []) + [placeholder])

        try:
            result = await self.data_store.insert_message(conversation_id, user.id, receiver_id, text)
        except Exception:
            self.cache.set_data(key, previous)
            raise
        if not result.ok or not result.data:
            logger.error(f"Sending message to conversation {conversation_id} failed: {result.error}")
            self.cache.set_data(key, previous)
            raise InvalidRequestError(
                "Nie udało się wysłać wiadomości", details={"conversation_id": conversation_id}
            )

        message = _message_from_row(dict(result.data))
        message.sender = user.as_actor()
        self.cache.set_data(key, lambda current: append_message(current, message))
        logger.info(f"Message {message.id} sent to conversation {conversation_id}")
        return message
