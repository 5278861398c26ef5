"""
Application and realtime error definitions
"""

from typing import Optional, Dict, Any


# --- Standard Application Errors ---

class AppError(Exception):
    """Base application error class."""
    def __init__(self, code: str, message: str, status_code: int = 500, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> Dict[str, Any]:
        """Returns a dictionary representation for API responses."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }

class InvalidRequestError(AppError):
    """To be raised for validation or other bad request errors."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            code="INVALID_REQUEST",
            message=message,
            status_code=400,
            details=details
        )


# --- Conversation preconditions (raised to the caller on purpose) ---

class ConversationParticipantsNotFoundError(AppError):
    """No participants are registered for the conversation."""
    def __init__(self, conversation_id: str):
        super().__init__(
            code="CONVERSATION_PARTICIPANTS_NOT_FOUND",
            message="Nie można znaleźć uczestników konwersacji",
            status_code=404,
            details={"conversation_id": conversation_id}
        )

class MessageReceiverNotFoundError(AppError):
    """The conversation has no participant other than the sender."""
    def __init__(self, conversation_id: str):
        super().__init__(
            code="MESSAGE_RECEIVER_NOT_FOUND",
            message="Nie można znaleźć odbiorcy wiadomości",
            status_code=404,
            details={"conversation_id": conversation_id}
        )


# --- Realtime layer errors (caught and logged inside the layer) ---

class RealtimeError(Exception):
    """Base class for realtime layer failures."""


class TransportConnectionError(RealtimeError):
    """The underlying channel subscription failed or dropped."""

    def __init__(self, channel: str, status: Optional[str] = None, original_error: Optional[BaseException] = None):
        self.channel = channel
        self.status = status
        self.original_error = original_error
        message = f"Channel '{channel}' is not connected"
        if status:
            message += f" (status: {status})"
        if original_error is not None:
            message += f": {original_error}"
        super().__init__(message)


class TransportTimeout(TransportConnectionError):
    """A bounded wait for channel readiness elapsed."""

    def __init__(self, channel: str, timeout: float):
        self.timeout = timeout
        super().__init__(channel, status="TIMED_OUT")


class ChannelClosedError(RealtimeError):
    """The channel was torn down while an operation was waiting on it."""

    def __init__(self, channel: str):
        self.channel = channel
        super().__init__(f"Channel '{channel}' was closed")


class EnrichmentLookupError(RealtimeError):
    """Secondary lookup of denormalized actor data failed."""

    def __init__(self, resource: str, resource_id: Optional[str], original_error: Any = None):
        self.resource = resource
        self.resource_id = resource_id
        self.original_error = original_error
        super().__init__(f"Lookup of {resource} '{resource_id}' failed: {original_error}")


class PresenceTrackError(RealtimeError):
    """track/untrack against a channel that never became ready."""

    def __init__(self, channel: str, original_error: Optional[BaseException] = None):
        self.channel = channel
        self.original_error = original_error
        super().__init__(f"Presence update on '{channel}' failed: {original_error}")
