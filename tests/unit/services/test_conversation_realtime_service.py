import asyncio

import pytest

from freight_market.core.realtime import ChannelRegistry, RealtimeConfig
from freight_market.models.schemas import Actor, ConversationMessage, CurrentUser, MessageNotification
from freight_market.services.cache_service import QueryCache
from freight_market.services.conversation_realtime_service import (
    ConversationFeed,
    append_message,
    messages_cache_key,
)
from freight_market.services.database_service import QueryResult
from freight_market.services.notification_store import NotificationStore
from freight_market.services.realtime_service import RealtimeService
from tests.conftest import OTHER_USER_ID, USER_ID, USERS
from tests.utils.fake_transport import FakeTransport

CONVERSATION_ID = "c1"


@pytest.fixture
def cache():
    return QueryCache()


@pytest.fixture
def store():
    return NotificationStore()


@pytest.fixture
def changes():
    return []


@pytest.fixture
def feed(realtime, data_store, cache, user, store, changes):
    return ConversationFeed(
        realtime,
        data_store,
        cache,
        user,
        CONVERSATION_ID,
        store=store,
        on_change=lambda conversation_id, kind: changes.append((conversation_id, kind)),
        typing_timeout=0.2,
    )


def _other_client(hub, data_store, user_id=OTHER_USER_ID, client_id="bob"):
    realtime = RealtimeService(ChannelRegistry(FakeTransport(hub, client_id=client_id), RealtimeConfig(1.0)))
    user = CurrentUser(**USERS[user_id])
    return ConversationFeed(realtime, data_store, QueryCache(), user, CONVERSATION_ID, typing_timeout=0.2)


def _message(message_id, sender_id=USER_ID, text="hej", pending=False):
    return ConversationMessage(id=message_id, conversation_id=CONVERSATION_ID, sender_id=sender_id, text=text, pending=pending)


def _insert(hub, message_id="m1", sender_id=OTHER_USER_ID, is_read=False, conversation_id=CONVERSATION_ID):
    hub.emit_change(
        "public",
        "messages",
        "INSERT",
        new={
            "id": message_id,
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "receiver_id": USER_ID if sender_id != USER_ID else OTHER_USER_ID,
            "text": "Kiedy odbiór?",
            "is_read": is_read,
        },
    )


class TestAppendMessage:
    def test_appends_new_messages(self):
        messages = append_message([_message("m1")], _message("m2"))
        assert [message.id for message in messages] == ["m1", "m2"]

    def test_same_id_is_replaced_not_duplicated(self):
        messages = append_message([_message("m1"), _message("m2")], _message("m1", text="poprawione"))
        assert [message.id for message in messages] == ["m1", "m2"]
        assert messages[0].text == "poprawione"

    def test_pending_placeholder_is_replaced_by_the_real_row(self):
        placeholder = _message("temp_1", text="hej", pending=True)
        messages = append_message([_message("m0"), placeholder], _message("m1", text="hej"))
        assert [message.id for message in messages] == ["m0", "m1"]
        assert not messages[1].pending

    def test_handles_empty_cache(self):
        assert [message.id for message in append_message(None, _message("m1"))] == ["m1"]


@pytest.mark.asyncio
async def test_open_subscribes_messages_typing_and_presence(feed, registry, transport, hub):
    feed.open()
    await registry.flush()

    assert {channel.name for channel in transport.created} == {"messages:c1", "typing:c1", "presence:c1"}
    assert ("track", "presence:c1", USER_ID) in hub.presence_log
    assert feed.is_open


@pytest.mark.asyncio
async def test_incoming_message_is_cached_enriched_and_marked_read(feed, registry, hub, cache, store, data_store, changes):
    store.messages.add(MessageNotification(id="m1", sender=Actor(id=OTHER_USER_ID), conversation_id=CONVERSATION_ID))
    feed.open()
    await registry.flush()

    _insert(hub)
    await registry.flush()

    [message] = cache.get_data(messages_cache_key(CONVERSATION_ID))
    assert message.id == "m1"
    assert message.sender.username == "anna"
    assert (CONVERSATION_ID, "messages") in changes
    assert len(store.messages) == 0
    data_store.mark_message_read.assert_awaited_once_with("m1")


@pytest.mark.asyncio
async def test_own_and_already_read_messages_are_not_marked(feed, registry, hub, data_store):
    feed.open()
    await registry.flush()

    _insert(hub, message_id="m1", sender_id=USER_ID)
    _insert(hub, message_id="m2", is_read=True)
    await registry.flush()

    assert [message.id for message in feed.messages] == ["m1", "m2"]
    data_store.mark_message_read.assert_not_awaited()


@pytest.mark.asyncio
async def test_other_conversations_and_duplicates_are_ignored(feed, registry, hub):
    feed.open()
    await registry.flush()

    _insert(hub, message_id="m1")
    _insert(hub, message_id="m1")
    _insert(hub, message_id="m9", conversation_id="c2")
    await registry.flush()

    assert [message.id for message in feed.messages] == ["m1"]


@pytest.mark.asyncio
async def test_unknown_sender_falls_back_to_placeholder(feed, registry, hub):
    feed.open()
    await registry.flush()

    _insert(hub, sender_id="ghost")
    await registry.flush()

    assert feed.messages[0].sender.username == "Nieznany"


@pytest.mark.asyncio
async def test_local_typing_expires_once_measured_from_the_last_call(feed, registry, hub):
    feed.open()
    await registry.flush()

    feed.set_typing(True)
    await asyncio.sleep(0.12)
    feed.set_typing(True)
    await asyncio.sleep(0.12)
    await registry.flush()

    states = [payload["isTyping"] for payload in hub.broadcasts("typing:c1", "typing")]
    assert states == [True, True]

    await asyncio.sleep(0.2)
    await registry.flush()

    states = [payload["isTyping"] for payload in hub.broadcasts("typing:c1", "typing")]
    assert states == [True, True, False]
    assert hub.broadcasts("typing:c1", "typing")[0] == {"userId": USER_ID, "username": "jan", "isTyping": True}


@pytest.mark.asyncio
async def test_explicit_stop_cancels_the_expiry(feed, registry, hub):
    feed.open()
    await registry.flush()

    feed.set_typing(True)
    feed.set_typing(False)
    await asyncio.sleep(0.3)
    await registry.flush()

    assert [payload["isTyping"] for payload in hub.broadcasts("typing:c1", "typing")] == [True, False]


@pytest.mark.asyncio
async def test_remote_typing_is_shown_then_expires(feed, registry, hub, data_store, changes):
    feed.open()
    await registry.flush()
    bob = _other_client(hub, data_store)
    bob.open()
    await bob._realtime.registry.flush()

    bob._send_typing(True)
    await bob._realtime.registry.flush()

    assert [status.user_id for status in feed.typing_users] == [OTHER_USER_ID]
    assert (CONVERSATION_ID, "typing") in changes

    await asyncio.sleep(0.3)
    assert feed.typing_users == []


@pytest.mark.asyncio
async def test_own_typing_from_another_tab_is_ignored(feed, registry, hub, data_store):
    feed.open()
    await registry.flush()
    second_tab = _other_client(hub, data_store, user_id=USER_ID, client_id="tab-2")
    second_tab.open()
    await second_tab._realtime.registry.flush()

    second_tab.set_typing(True)
    await second_tab._realtime.registry.flush()

    assert feed.typing_users == []
    second_tab.close()
    await second_tab._realtime.registry.flush()


@pytest.mark.asyncio
async def test_presence_marks_users_offline_but_keeps_them(feed, registry, hub):
    feed.open()
    await registry.flush()

    hub.emit_join("presence:c1", OTHER_USER_ID, [{"user_id": OTHER_USER_ID, "username": "anna"}])
    users = {user.id: user for user in feed.conversation_users}
    assert users[OTHER_USER_ID].online
    assert users[OTHER_USER_ID].username == "anna"
    assert users[USER_ID].online

    hub.emit_leave("presence:c1", OTHER_USER_ID)
    users = {user.id: user for user in feed.conversation_users}
    assert not users[OTHER_USER_ID].online
    assert users[OTHER_USER_ID].username == "anna"

    hub.set_presence("presence:c1", {OTHER_USER_ID: [{"user_id": OTHER_USER_ID}]})
    users = {user.id: user for user in feed.conversation_users}
    assert users[OTHER_USER_ID].online
    assert not users[USER_ID].online


@pytest.mark.asyncio
async def test_close_stops_typing_and_releases_channels(feed, registry, hub, transport):
    feed.open()
    await registry.flush()
    feed.set_typing(True)

    feed.close()
    await registry.flush()

    assert [payload["isTyping"] for payload in hub.broadcasts("typing:c1", "typing")] == [True, False]
    assert len(registry) == 0
    assert ("untrack", "presence:c1", USER_ID) in hub.presence_log
    assert not feed.is_open


@pytest.mark.asyncio
async def test_message_resolving_after_close_is_discarded(feed, registry, hub, data_store, cache):
    release = asyncio.Event()

    async def slow_get_user(user_id):
        await release.wait()
        return QueryResult(data={"id": user_id, "username": "anna"})

    feed.open()
    await registry.flush()
    data_store.get_user.side_effect = slow_get_user

    _insert(hub)
    await asyncio.sleep(0)
    feed.close()
    release.set()
    await registry.flush()

    assert cache.get_data(messages_cache_key(CONVERSATION_ID)) is None
    data_store.mark_message_read.assert_not_awaited()
