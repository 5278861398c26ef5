"""
Pydantic schemas for change payloads, notifications and chat state.
"""
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field

from freight_market.config.settings import settings


def _as_str(value: Any) -> Any:
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, (int, float)) or hasattr(value, "hex"):
        return str(value)
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


# Row identifiers arrive as UUIDs or integers depending on the source
Id = Annotated[str, BeforeValidator(_as_str)]
OptionalId = Annotated[Optional[str], BeforeValidator(_as_str)]
Timestamp = Annotated[Optional[str], BeforeValidator(_as_str)]


# --- Users ---

class Actor(BaseModel):
    id: OptionalId = None
    username: str = ""
    email: str = ""

    @classmethod
    def unknown(cls, actor_id: Optional[str]) -> "Actor":
        return cls(id=actor_id, username=settings.UNKNOWN_ACTOR_NAME, email="")


class CurrentUser(BaseModel):
    id: Id
    email: str = ""
    username: Optional[str] = None
    role: Literal["user", "admin", "school_admin", "student"] = "user"

    @property
    def display_name(self) -> str:
        return self.username or settings.DEFAULT_USERNAME

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def as_actor(self) -> Actor:
        return Actor(id=self.id, username=self.display_name, email=self.email)


# --- Change payloads ---

class ChangePayload(BaseModel):
    """Raw row change as delivered by the transport."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    schema_name: str = Field(alias="schema")
    table: str
    event_type: Literal["INSERT", "UPDATE", "DELETE"] = Field(alias="eventType")
    new: Dict[str, Any] = Field(default_factory=dict)
    old: Dict[str, Any] = Field(default_factory=dict)
    commit_timestamp: Timestamp = None


class _Row(BaseModel):
    model_config = ConfigDict(extra="allow")


class MessageRow(_Row):
    id: Id
    conversation_id: OptionalId = None
    sender_id: Id
    receiver_id: OptionalId = None
    text: str = ""
    is_read: bool = False
    created_at: Timestamp = None


class OfferRow(_Row):
    id: Id
    transport_id: OptionalId = None
    creator_id: Id
    is_accepted: bool = False
    created_at: Timestamp = None


class OfferMessageRow(_Row):
    id: Id
    offer_id: Id
    sender_id: Id
    receiver_id: OptionalId = None
    text: str = ""
    is_read: bool = False
    created_at: Timestamp = None


class ReportRow(_Row):
    id: Id
    place: Optional[str] = None
    content: Optional[str] = None
    seen: bool = False
    created_at: Timestamp = None
    updated_at: Timestamp = None
    reporter_id: OptionalId = None
    reported_id: OptionalId = None
    status: Optional[str] = None
    type: Optional[str] = None
    file_url: Optional[str] = None
    user_id: OptionalId = None


# --- Notification feed entries ---

class MessageNotification(BaseModel):
    id: Id
    created_at: Timestamp = None
    text: str = ""
    is_read: bool = False
    sender: Actor
    conversation_id: OptionalId = None


class OfferMessageNotification(BaseModel):
    id: Id
    created_at: Timestamp = None
    text: str = ""
    is_read: bool = False
    sender: Actor
    receiver_id: OptionalId = None
    offer_id: Id
    transport_id: OptionalId = None


class OfferNotification(BaseModel):
    id: Id
    created_at: Timestamp = None
    transport_id: OptionalId = None
    is_accepted: bool = False
    sender: Actor


class ReportNotification(BaseModel):
    id: Id
    place: Optional[str] = None
    content: Optional[str] = None
    seen: bool = False
    created_at: Timestamp = None
    updated_at: Timestamp = None
    reporter_id: OptionalId = None
    reported_id: OptionalId = None
    status: Optional[str] = None
    type: Optional[str] = None
    file_url: Optional[str] = None
    user_id: OptionalId = None
    reporter: Actor


class Toast(BaseModel):
    title: str
    description: str = ""
    action_label: Optional[str] = None
    action_href: Optional[str] = None
    variant: Literal["default", "success"] = "default"


# --- Chat ---

class ConversationMessage(BaseModel):
    id: Id
    conversation_id: OptionalId = None
    sender_id: Id
    receiver_id: OptionalId = None
    text: str = ""
    is_read: bool = False
    created_at: Timestamp = None
    sender: Optional[Actor] = None
    pending: bool = False  # optimistic placeholder until the insert lands


class TypingStatus(BaseModel):
    """Typing broadcast; camelCase on the wire."""
    model_config = ConfigDict(populate_by_name=True)

    user_id: Id = Field(alias="userId")
    username: str = ""
    is_typing: bool = Field(alias="isTyping")


class ConversationUser(BaseModel):
    id: Id
    username: str
    online: bool


class NotificationCounts(BaseModel):
    messages: int = 0
    offer_messages: int = 0
    offers: int = 0
    reports: int = 0

    @property
    def total(self) -> int:
        return self.messages + self.offer_messages + self.offers + self.reports


class NotificationSnapshot(BaseModel):
    messages: List[MessageNotification] = Field(default_factory=list)
    offer_messages: List[OfferMessageNotification] = Field(default_factory=list)
    offers: List[OfferNotification] = Field(default_factory=list)
    reports: List[ReportNotification] = Field(default_factory=list)
    counts: NotificationCounts = Field(default_factory=NotificationCounts)
