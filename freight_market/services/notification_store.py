"""In-memory notification feeds for one signed-in user."""
import logging
from typing import Callable, Dict, Generic, Iterable, List, Optional, Set, TypeVar

from pydantic import BaseModel

from freight_market.models.schemas import (
    MessageNotification,
    NotificationCounts,
    NotificationSnapshot,
    OfferMessageNotification,
    OfferNotification,
    ReportNotification,
)

logger = logging.getLogger(__name__)

EntryT = TypeVar("EntryT", bound=BaseModel)
StoreListener = Callable[[NotificationSnapshot], None]


class NotificationFeed(Generic[EntryT]):
    """Newest-first list of entries keyed by ``id``.

    Removal is absorbing: once an id was removed, adding it again is ignored.
    """

    def __init__(self, name: str, on_change: Optional[Callable[[], None]] = None) -> None:
        self.name = name
        self._entries: List[EntryT] = []
        self._removed: Set[str] = set()
        self._on_change = on_change

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, entry_id: object) -> bool:
        return any(entry.id == entry_id for entry in self._entries)

    def items(self) -> List[EntryT]:
        return list(self._entries)

    def is_removed(self, entry_id: str) -> bool:
        return entry_id in self._removed

    def add(self, entry: EntryT) -> bool:
        """Prepend ``entry`` or replace the entry with the same id in place.

        Returns True only when the entry was not present before.
        """
        if entry.id in self._removed:
            logger.debug("Ignoring %s entry %s, already removed", self.name, entry.id)
            return False
        for index, existing in enumerate(self._entries):
            if existing.id == entry.id:
                self._entries[index] = entry
                self._changed()
                return False
        self._entries.insert(0, entry)
        self._changed()
        return True

    def remove(self, entry_id: str) -> bool:
        self._removed.add(entry_id)
        before = len(self._entries)
        self._entries = [entry for entry in self._entries if entry.id != entry_id]
        if len(self._entries) == before:
            return False
        self._changed()
        return True

    def set_all(self, entries: Iterable[EntryT]) -> None:
        self._entries = [entry for entry in entries if entry.id not in self._removed]
        self._changed()

    def clear(self) -> None:
        self._entries = []
        self._removed.clear()
        self._changed()

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()


class NotificationStore:
    def __init__(self) -> None:
        self.messages: NotificationFeed[MessageNotification] = NotificationFeed("messages", self._changed)
        self.offer_messages: NotificationFeed[OfferMessageNotification] = NotificationFeed(
            "offer_messages", self._changed
        )
        self.offers: NotificationFeed[OfferNotification] = NotificationFeed("offers", self._changed)
        self.reports: NotificationFeed[ReportNotification] = NotificationFeed("reports", self._changed)
        self._listeners: List[StoreListener] = []
        self._batching = False

    @property
    def feeds(self) -> Dict[str, NotificationFeed]:
        return {
            "messages": self.messages,
            "offer_messages": self.offer_messages,
            "offers": self.offers,
            "reports": self.reports,
        }

    def add_listener(self, listener: StoreListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def counts(self) -> NotificationCounts:
        return NotificationCounts(
            messages=len(self.messages),
            offer_messages=len(self.offer_messages),
            offers=len(self.offers),
            reports=len(self.reports),
        )

    def snapshot(self) -> NotificationSnapshot:
        return NotificationSnapshot(
            messages=self.messages.items(),
            offer_messages=self.offer_messages.items(),
            offers=self.offers.items(),
            reports=self.reports.items(),
            counts=self.counts(),
        )

    def clear(self) -> None:
        self._batching = True
        try:
            for feed in self.feeds.values():
                feed.clear()
        finally:
            self._batching = False
        self._changed()

    def _changed(self) -> None:
        if self._batching or not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as exc:
                logger.error("Notification store listener failed: %s", exc, exc_info=True)
