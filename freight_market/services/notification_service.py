"""Live notification feeds for the signed-in user.

Row changes on ``user-notifications:<user id>`` are enriched with the acting
user's identity and folded into the :class:`NotificationStore`. Every entry
that is new to its feed also produces a sound and a toast.
"""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Type, TypeVar

from pydantic import BaseModel, ValidationError

from freight_market.core.errors import EnrichmentLookupError
from freight_market.core.realtime import Subscription
from freight_market.core.transport import ChangeEvent
from freight_market.models.schemas import (
    Actor,
    ChangePayload,
    CurrentUser,
    MessageNotification,
    MessageRow,
    OfferMessageNotification,
    OfferMessageRow,
    OfferNotification,
    OfferRow,
    ReportNotification,
    ReportRow,
    Toast,
)
from freight_market.services.database_service import DataStore, lookup_actor
from freight_market.services.notification_presenter import CuePlayer, NotificationPresenter
from freight_market.services.notification_store import NotificationFeed, NotificationStore
from freight_market.services.realtime_service import RealtimeService

logger = logging.getLogger(__name__)

RowT = TypeVar("RowT", bound=BaseModel)
ChangeHandler = Callable[[Dict[str, Any], int], Awaitable[None]]

SCHEMA = "public"
ACTION_LABEL = "Zobacz"


def notifications_channel(user_id: str) -> str:
    return f"user-notifications:{user_id}"


def message_route(conversation_id: Optional[str]) -> str:
    return f"/user/market/messages/{conversation_id}"


def offer_route(transport_id: Optional[str], offer_id: Optional[str]) -> str:
    return f"/transport/{transport_id}/offer/{offer_id}"


REPORTS_ROUTE = "/admin/reports"


def _actor_from_row(row: Dict[str, Any], prefix: str, actor_id: Optional[str]) -> Actor:
    username = row.get(f"{prefix}_username")
    if not username:
        return Actor.unknown(actor_id)
    return Actor(id=actor_id, username=username, email=row.get(f"{prefix}_email") or "")


class NotificationService:
    def __init__(
        self,
        realtime: RealtimeService,
        data_store: DataStore,
        store: NotificationStore,
        presenter: Optional[NotificationPresenter] = None,
    ) -> None:
        self._realtime = realtime
        self._data_store = data_store
        self.store = store
        self.cues = CuePlayer(presenter, lambda awaitable: realtime.registry.spawn(awaitable, name="notification-cue"))
        self._user: Optional[CurrentUser] = None
        self._subscriptions: List[Subscription] = []
        self._generation = 0
        self._in_flight: Set[Tuple[str, str]] = set()

    @property
    def user(self) -> Optional[CurrentUser]:
        return self._user

    @property
    def running(self) -> bool:
        return self._user is not None

    @property
    def channel_name(self) -> Optional[str]:
        return notifications_channel(self._user.id) if self._user else None

    def start(self, user: CurrentUser) -> None:
        """Subscribe the notification feeds of ``user``; restarts for a different user."""
        if self._user is not None and self._user.id == user.id and self._user.role == user.role:
            return
        self.stop()

        self._user = user
        self._generation += 1
        channel = notifications_channel(user.id)
        receiver_filter = f"receiver_id=eq.{user.id}"
        creator_filter = f"creator_id=eq.{user.id}"

        table = [
            ("messages", ChangeEvent.INSERT, receiver_filter, self._on_message_insert),
            ("messages", ChangeEvent.UPDATE, receiver_filter, self._on_message_update),
            ("offers", ChangeEvent.INSERT, creator_filter, self._on_offer_insert),
            ("offers", ChangeEvent.UPDATE, creator_filter, self._on_offer_update),
            ("offer_messages", ChangeEvent.INSERT, receiver_filter, self._on_offer_message_insert),
            ("offer_messages", ChangeEvent.UPDATE, receiver_filter, self._on_offer_message_update),
        ]
        if user.is_admin:
            table += [
                ("reports", ChangeEvent.INSERT, None, self._on_report_insert),
                ("reports", ChangeEvent.UPDATE, None, self._on_report_update),
            ]

        for table_name, event, row_filter, handler in table:
            self._subscriptions.append(
                self._realtime.on_table_changes(
                    channel, SCHEMA, table_name, event, row_filter, self._bind(handler, self._generation)
                )
            )
        logger.info("Notification feeds started for user %s (%s subscriptions)", user.id, len(self._subscriptions))

    def stop(self) -> None:
        """Unsubscribe every feed; lookups still in flight are discarded."""
        subscriptions, self._subscriptions = self._subscriptions, []
        for unsubscribe in subscriptions:
            unsubscribe()
        if self._user is not None:
            logger.info("Notification feeds stopped for user %s", self._user.id)
        self._user = None
        self._generation += 1
        self._in_flight.clear()

    def _bind(self, handler: ChangeHandler, generation: int) -> Callable[[Dict[str, Any]], Awaitable[None]]:
        def _dispatch(change: Dict[str, Any]) -> Awaitable[None]:
            return handler(change, generation)

        return _dispatch

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation and self._user is not None

    @staticmethod
    def _parse(change: Dict[str, Any], model: Type[RowT]) -> Optional[RowT]:
        try:
            payload = ChangePayload.model_validate(change)
            return model.model_validate(payload.new)
        except ValidationError as exc:
            logger.warning("Dropping malformed %s change: %s", model.__name__, exc)
            return None

    async def _actor(self, user_id: Optional[str]) -> Actor:
        try:
            return await lookup_actor(self._data_store, user_id)
        except EnrichmentLookupError as exc:
            logger.warning("%s; using placeholder actor", exc)
            return Actor.unknown(user_id)

    def _claim(self, feed: NotificationFeed, entry_id: str, generation: int) -> bool:
        """Reserve an id for enrichment; False for duplicates and removed ids."""
        if not self._is_current(generation):
            return False
        marker = (feed.name, entry_id)
        if marker in self._in_flight or entry_id in feed or feed.is_removed(entry_id):
            logger.debug("Skipping duplicate %s notification %s", feed.name, entry_id)
            return False
        self._in_flight.add(marker)
        return True

    def _release(self, feed: NotificationFeed, entry_id: str, generation: int) -> bool:
        """Drop the reservation; False when the result must be discarded."""
        if not self._is_current(generation):
            logger.debug("Discarding %s notification %s resolved after stop", feed.name, entry_id)
            return False
        self._in_flight.discard((feed.name, entry_id))
        return True

    def _add(self, feed: NotificationFeed, entry: BaseModel, toast: Toast) -> None:
        if feed.add(entry):
            self.cues.sound()
            self.cues.toast(toast)

    # --- messages ---

    async def _on_message_insert(self, change: Dict[str, Any], generation: int) -> None:
        row = self._parse(change, MessageRow)
        feed = self.store.messages
        if row is None or not self._claim(feed, row.id, generation):
            return
        try:
            sender = await self._actor(row.sender_id)
        finally:
            current = self._release(feed, row.id, generation)
        if not current:
            return

        notification = MessageNotification(
            id=row.id,
            created_at=row.created_at,
            text=row.text,
            is_read=row.is_read,
            sender=sender,
            conversation_id=row.conversation_id,
        )
        self._add(
            feed,
            notification,
            Toast(
                title="Nowa wiadomość",
                description=f"Otrzymałeś nową wiadomość od {sender.username or 'użytkownika'}",
                action_label=ACTION_LABEL,
                action_href=message_route(row.conversation_id),
            ),
        )

    async def _on_message_update(self, change: Dict[str, Any], generation: int) -> None:
        row = self._parse(change, MessageRow)
        if row is not None and row.is_read and self._is_current(generation):
            self.store.messages.remove(row.id)

    # --- offers ---

    async def _on_offer_insert(self, change: Dict[str, Any], generation: int) -> None:
        row = self._parse(change, OfferRow)
        feed = self.store.offers
        if row is None or not self._claim(feed, row.id, generation):
            return
        try:
            creator = await self._actor(row.creator_id)
        finally:
            current = self._release(feed, row.id, generation)
        if not current:
            return

        notification = OfferNotification(
            id=row.id,
            created_at=row.created_at,
            transport_id=row.transport_id,
            is_accepted=row.is_accepted,
            sender=creator,
        )
        self._add(
            feed,
            notification,
            Toast(
                title="Nowa oferta",
                description="Otrzymałeś nową ofertę na transport",
                action_label=ACTION_LABEL,
                action_href=offer_route(row.transport_id, row.id),
            ),
        )

    async def _on_offer_update(self, change: Dict[str, Any], generation: int) -> None:
        row = self._parse(change, OfferRow)
        if row is None or not row.is_accepted or not self._is_current(generation):
            return
        feed = self.store.offers
        first_transition = not feed.is_removed(row.id)
        feed.remove(row.id)
        if first_transition:
            self.cues.toast(
                Toast(
                    title="Oferta zaakceptowana",
                    description="Twoja oferta została zaakceptowana",
                    action_label=ACTION_LABEL,
                    action_href=offer_route(row.transport_id, row.id),
                    variant="success",
                )
            )

    # --- offer messages ---

    async def _transport_id_for(self, offer_id: str) -> Optional[str]:
        try:
            result = await self._data_store.get_offer(offer_id)
        except Exception as exc:
            logger.warning("%s", EnrichmentLookupError("offers", offer_id, exc))
            return None
        if result.error is not None or not result.data:
            logger.warning("%s", EnrichmentLookupError("offers", offer_id, result.error or "not found"))
            return None
        transport_id = result.data.get("transport_id")
        return str(transport_id) if transport_id is not None else None

    async def _on_offer_message_insert(self, change: Dict[str, Any], generation: int) -> None:
        row = self._parse(change, OfferMessageRow)
        feed = self.store.offer_messages
        if row is None or not self._claim(feed, row.id, generation):
            return
        try:
            sender = await self._actor(row.sender_id)
            transport_id = await self._transport_id_for(row.offer_id)
        finally:
            current = self._release(feed, row.id, generation)
        if not current:
            return

        notification = OfferMessageNotification(
            id=row.id,
            created_at=row.created_at,
            text=row.text,
            is_read=row.is_read,
            sender=sender,
            receiver_id=row.receiver_id,
            offer_id=row.offer_id,
            transport_id=transport_id,
        )
        self._add(
            feed,
            notification,
            Toast(
                title="Nowa wiadomość w ofercie",
                description="Otrzymałeś nową wiadomość dotyczącą oferty",
                action_label=ACTION_LABEL,
                action_href=offer_route(transport_id, row.offer_id),
            ),
        )

    async def _on_offer_message_update(self, change: Dict[str, Any], generation: int) -> None:
        row = self._parse(change, OfferMessageRow)
        if row is not None and row.is_read and self._is_current(generation):
            self.store.offer_messages.remove(row.id)

    # --- reports ---

    async def _on_report_insert(self, change: Dict[str, Any], generation: int) -> None:
        row = self._parse(change, ReportRow)
        feed = self.store.reports
        if row is None or not self._claim(feed, row.id, generation):
            return
        try:
            reporter = await self._actor(row.reporter_id)
        finally:
            current = self._release(feed, row.id, generation)
        if not current:
            return

        self._add(
            feed,
            self._report_notification(row, reporter),
            Toast(
                title="Nowy raport",
                description="Otrzymałeś nowy raport do sprawdzenia",
                action_label=ACTION_LABEL,
                action_href=REPORTS_ROUTE,
            ),
        )

    async def _on_report_update(self, change: Dict[str, Any], generation: int) -> None:
        row = self._parse(change, ReportRow)
        if row is not None and row.seen and self._is_current(generation):
            self.store.reports.remove(row.id)

    @staticmethod
    def _report_notification(row: ReportRow, reporter: Actor) -> ReportNotification:
        return ReportNotification(
            id=row.id,
            place=row.place,
            content=row.content,
            seen=row.seen,
            created_at=row.created_at,
            updated_at=row.updated_at or row.created_at,
            reporter_id=row.reporter_id,
            reported_id=row.reported_id,
            status=row.status,
            type=row.type,
            file_url=row.file_url,
            user_id=row.user_id or row.reporter_id,
            reporter=reporter,
        )

    # --- initial load ---

    async def load_initial(self) -> bool:
        """Fill the feeds with the unread/pending/unseen records of the current user."""
        user = self._user
        if user is None:
            return False
        generation = self._generation

        messages = await self._data_store.list_unread_messages(user.id)
        offer_messages = await self._data_store.list_unread_offer_messages(user.id)
        offers = await self._data_store.list_pending_offers(user.id)
        reports = await self._data_store.list_unseen_reports() if user.is_admin else None

        if not self._is_current(generation):
            logger.debug("Discarding initial notifications loaded after stop")
            return False

        complete = True
        for name, result in (("messages", messages), ("offer_messages", offer_messages), ("offers", offers)):
            if not result.ok:
                logger.error("Loading %s notifications failed: %s", name, result.error)
                complete = False

        if messages.ok:
            self.store.messages.set_all(self._rows(messages.data, self._initial_message))
        if offer_messages.ok:
            self.store.offer_messages.set_all(self._rows(offer_messages.data, self._initial_offer_message))
        if offers.ok:
            self.store.offers.set_all(self._rows(offers.data, self._initial_offer))
        if reports is not None:
            if reports.ok:
                self.store.reports.set_all(self._rows(reports.data, self._initial_report))
            else:
                logger.error("Loading reports notifications failed: %s", reports.error)
                complete = False
        return complete

    @staticmethod
    def _rows(rows: Optional[List[Dict[str, Any]]], build: Callable[[Dict[str, Any]], BaseModel]) -> List[BaseModel]:
        entries = []
        for row in rows or []:
            try:
                entries.append(build(row))
            except ValidationError as exc:
                logger.warning("Skipping malformed notification row %s: %s", row.get("id"), exc)
        return entries

    @staticmethod
    def _initial_message(row: Dict[str, Any]) -> MessageNotification:
        return MessageNotification(
            id=row.get("id"),
            created_at=row.get("created_at"),
            text=row.get("text") or "",
            is_read=bool(row.get("is_read")),
            sender=_actor_from_row(row, "sender", row.get("sender_id")),
            conversation_id=row.get("conversation_id"),
        )

    @staticmethod
    def _initial_offer_message(row: Dict[str, Any]) -> OfferMessageNotification:
        return OfferMessageNotification(
            id=row.get("id"),
            created_at=row.get("created_at"),
            text=row.get("text") or "",
            is_read=bool(row.get("is_read")),
            sender=_actor_from_row(row, "sender", row.get("sender_id")),
            receiver_id=row.get("receiver_id"),
            offer_id=row.get("offer_id"),
            transport_id=row.get("transport_id"),
        )

    @staticmethod
    def _initial_offer(row: Dict[str, Any]) -> OfferNotification:
        return OfferNotification(
            id=row.get("id"),
            created_at=row.get("created_at"),
            transport_id=row.get("transport_id"),
            is_accepted=bool(row.get("is_accepted")),
            sender=_actor_from_row(row, "sender", row.get("sender_id")),
        )

    def _initial_report(self, row: Dict[str, Any]) -> ReportNotification:
        report = ReportRow.model_validate(row)
        return self._report_notification(report, _actor_from_row(row, "reporter", report.reporter_id))


__all__ = ["NotificationService", "notifications_channel"]
