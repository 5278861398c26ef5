import asyncio
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError

from freight_market.api.dependencies import create_transport, get_session_data_store
from freight_market.core.errors import AppError
from freight_market.models.schemas import CurrentUser, NotificationSnapshot
from freight_market.services.notification_presenter import WebSocketPresenter, format_event
from freight_market.services.realtime_session import AuthEvent, RealtimeSession
from freight_market.services.redis_transport import RedisTransport

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websockets"])


class SessionConnection:
    """Bridges one WebSocket client to one :class:`RealtimeSession`."""

    def __init__(self, websocket: WebSocket, user_id: str) -> None:
        self.websocket = websocket
        self.user_id = user_id
        self.session: Optional[RealtimeSession] = None
        self._send_lock = asyncio.Lock()
        self._remove_store_listener = None
        self._transport: Optional[RedisTransport] = None

    async def send(self, message: str) -> None:
        async with self._send_lock:
            await self.websocket.send_text(message)

    def push(self, event_type: str, payload: Any, meta: Optional[Dict[str, Any]] = None) -> None:
        if self.session is None:
            return
        self.session.registry.spawn(self.send(format_event(event_type, payload, meta)), name=f"ws-push:{event_type}")

    async def start(self) -> None:
        transport = await create_transport()
        self.session = RealtimeSession(
            transport,
            get_session_data_store(),
            WebSocketPresenter(self.send),
            on_conversation_change=self._on_conversation_change,
        )
        self._transport = transport
        self._remove_store_listener = self.session.store.add_listener(self._on_notifications)

    async def stop(self) -> None:
        if self.session is None:
            return
        if self._remove_store_listener is not None:
            self._remove_store_listener()
        await self.session.close()
        if self._transport is not None:
            await self._transport.close()
        self.session = None

    def _on_notifications(self, snapshot: NotificationSnapshot) -> None:
        self.push("notifications", snapshot.model_dump())

    def _on_conversation_change(self, conversation_id: str, kind: str) -> None:
        feed = self.session.conversation(conversation_id) if self.session else None
        if feed is None:
            return
        if kind == "messages":
            payload = [message.model_dump() for message in feed.messages]
        elif kind == "typing":
            payload = [entry.model_dump(by_alias=True) for entry in feed.typing_users]
        else:
            payload = [user.model_dump() for user in feed.conversation_users]
        self.push(kind, payload, {"conversation_id": conversation_id})

    async def handle(self, command: Dict[str, Any]) -> None:
        session = self.session
        kind = command.get("type")

        if kind == "auth":
            user = None
            if command.get("user") is not None:
                user = CurrentUser.model_validate(command["user"])
                if user.id != self.user_id:
                    raise AppError("FORBIDDEN", "User does not match the session", status_code=403)
            await session.handle_auth_event(AuthEvent(command.get("event")), user)
            self.push("status", {"signed_in": session.user is not None, "is_connected": session.is_connected})
            if session.user is not None:
                self.push("notifications", session.snapshot().model_dump())
        elif kind == "status":
            self.push("status", {"signed_in": session.user is not None, "is_connected": session.is_connected})
        elif kind == "open_conversation":
            feed = session.open_conversation(command["conversation_id"])
            if feed is not None:
                messages = await session.messages.list_messages(session.user, feed.conversation_id)
                self.push(
                    "messages",
                    [message.model_dump() for message in messages],
                    {"conversation_id": feed.conversation_id},
                )
        elif kind == "close_conversation":
            session.close_conversation(command["conversation_id"])
        elif kind == "send_message":
            if session.user is None:
                return
            await session.messages.send_message(session.user, command["conversation_id"], command.get("text", ""))
        elif kind == "typing":
            room_id = command["conversation_id"]
            feed = session.conversation(room_id)
            if feed is not None:
                feed.set_typing(bool(command.get("is_typing")))
            else:
                session.send_typing_status(room_id, bool(command.get("is_typing")))
        elif kind == "join_room":
            session.join_room(command["room_id"])
        elif kind == "leave_room":
            session.leave_room(command["room_id"])
        else:
            raise AppError("UNKNOWN_COMMAND", f"Unknown command: {kind}", status_code=400)


@router.websocket("/ws/session/{user_id}")
async def websocket_session_endpoint(websocket: WebSocket, user_id: str):
    connection = SessionConnection(websocket, user_id)
    await websocket.accept()
    try:
        await connection.start()
        while True:
            data = await websocket.receive_text()
            try:
                command = json.loads(data)
                if not isinstance(command, dict):
                    raise ValueError("command must be a JSON object")
                await connection.handle(command)
            except AppError as e:
                await connection.send(format_event("error", e.to_response()["error"]))
            except (ValueError, KeyError, ValidationError) as e:
                logger.warning(f"Rejected command from {user_id}: {e}")
                await connection.send(
                    format_event("error", {"code": "INVALID_REQUEST", "message": str(e), "details": {}})
                )
    except WebSocketDisconnect:
        logger.info(f"Realtime session WebSocket for user {user_id} disconnected.")
    except Exception as e:
        logger.error(f"Error in realtime session WebSocket for user {user_id}: {e}", exc_info=True)
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
    finally:
        await connection.stop()
