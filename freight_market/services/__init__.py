"""
Services module - realtime subscriptions, notifications and chat
"""

from freight_market.services.realtime_service import RealtimeService
from freight_market.services.presence_service import PresenceTracker
from freight_market.services.notification_service import NotificationService
from freight_market.services.conversation_realtime_service import ConversationFeed
from freight_market.services.message_service import MessageService
from freight_market.services.realtime_session import RealtimeSession


__all__ = [
    "RealtimeService",
    "PresenceTracker",
    "NotificationService",
    "ConversationFeed",
    "MessageService",
    "RealtimeSession",
]
