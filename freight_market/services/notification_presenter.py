"""Audio and toast cues for incoming notifications."""
from __future__ import annotations

import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from freight_market.config.settings import settings
from freight_market.models.schemas import Toast

logger = logging.getLogger(__name__)


def format_event(event_type: str, payload: Any, meta: Optional[Dict[str, Any]] = None) -> str:
    """Create a canonical JSON envelope for events pushed to a client."""
    envelope: Dict[str, Any] = {
        "type": event_type,
        "payload": payload,
    }
    if meta:
        envelope["meta"] = meta
    return json.dumps(envelope, ensure_ascii=False, default=str)


class NotificationPresenter(Protocol):
    def play_sound(self, url: str) -> Any: ...

    def show_toast(self, toast: Toast) -> Any: ...


class NullPresenter:
    """Presenter that drops every cue."""

    def play_sound(self, url: str) -> None:
        return None

    def show_toast(self, toast: Toast) -> None:
        return None


class WebSocketPresenter:
    """Pushes cues to a client as ``sound`` and ``toast`` envelopes."""

    def __init__(self, send: Callable[[str], Awaitable[None]]) -> None:
        self._send = send

    async def play_sound(self, url: str) -> None:
        await self._send(format_event("sound", {"url": url}))

    async def show_toast(self, toast: Toast) -> None:
        await self._send(format_event("toast", toast.model_dump()))


class CuePlayer:
    """Runs presenter calls best effort: failures are logged, never raised."""

    def __init__(self, presenter: Optional[NotificationPresenter], spawn: Callable[[Awaitable], Any]) -> None:
        self.presenter = presenter or NullPresenter()
        self._spawn = spawn

    def sound(self, url: Optional[str] = None) -> None:
        self._run("play_sound", url or settings.NOTIFICATION_SOUND_URL)

    def toast(self, toast: Toast) -> None:
        self._run("show_toast", toast)

    def _run(self, method: str, argument: Any) -> None:
        try:
            result = getattr(self.presenter, method)(argument)
        except Exception as exc:
            logger.warning("Presenter %s failed: %s", method, exc)
            return
        if inspect.isawaitable(result):
            self._spawn(self._await(method, result))

    @staticmethod
    async def _await(method: str, result: Awaitable) -> None:
        try:
            await result
        except Exception as exc:
            logger.warning("Presenter %s failed: %s", method, exc)
