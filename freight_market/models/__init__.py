"""
Data models and schemas for the freight market realtime layer
"""

from .schemas import (
    Actor,
    ChangePayload,
    ConversationMessage,
    ConversationUser,
    CurrentUser,
    MessageNotification,
    NotificationSnapshot,
    OfferMessageNotification,
    OfferNotification,
    ReportNotification,
    Toast,
    TypingStatus,
)

__all__ = [
    "Actor",
    "ChangePayload",
    "ConversationMessage",
    "ConversationUser",
    "CurrentUser",
    "MessageNotification",
    "NotificationSnapshot",
    "OfferMessageNotification",
    "OfferNotification",
    "ReportNotification",
    "Toast",
    "TypingStatus",
]
