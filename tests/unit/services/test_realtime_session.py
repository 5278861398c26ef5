import pytest

from freight_market.core.realtime import RealtimeConfig
from freight_market.core.transport import SubscribeStatus
from freight_market.models.schemas import CurrentUser
from freight_market.services.database_service import QueryResult
from freight_market.services.realtime_session import AuthEvent, RealtimeSession
from freight_market.utils.trace_id import trace_id_var
from tests.conftest import OTHER_USER_ID, USER_ID, USERS
from tests.utils.fake_transport import FakeTransport
from tests.utils.presenter import RecordingPresenter


@pytest.fixture
def presenter():
    return RecordingPresenter()


@pytest.fixture
def session(transport, data_store, presenter):
    return RealtimeSession(transport, data_store, presenter, config=RealtimeConfig(subscribe_timeout=1.0))


@pytest.mark.asyncio
async def test_signed_in_starts_feeds_and_presence(session, transport, hub, data_store, user):
    assert await session.handle_auth_event(AuthEvent.SIGNED_IN, user) is True
    await session.registry.flush()

    assert session.user == user
    assert session.notifications.running
    assert "user-notifications:user-1" in session.registry
    assert USER_ID in session.online_users()
    assert session.is_connected
    assert trace_id_var.get() == session.trace_id
    assert session.trace_id.startswith("rt-user-1_")
    data_store.list_unread_messages.assert_awaited_once_with(USER_ID)


@pytest.mark.asyncio
async def test_initial_notifications_are_loaded(session, data_store, user):
    data_store.list_unread_messages.return_value = QueryResult(
        data=[{"id": "m1", "conversation_id": "c1", "sender_id": OTHER_USER_ID, "sender_username": "anna"}]
    )

    await session.sign_in(user)
    await session.registry.flush()

    assert session.snapshot().counts.messages == 1


@pytest.mark.asyncio
async def test_other_auth_events_are_ignored(session, transport, user):
    await session.handle_auth_event(AuthEvent.SIGNED_IN, user)
    await session.registry.flush()
    created = len(transport.created)

    for event in (AuthEvent.TOKEN_REFRESHED, AuthEvent.USER_UPDATED, AuthEvent.INITIAL_SESSION, "PASSWORD_RECOVERY"):
        assert await session.handle_auth_event(event, user) is False
    await session.registry.flush()

    assert len(transport.created) == created
    assert transport.removed == []
    assert session.user == user


@pytest.mark.asyncio
async def test_signed_in_without_user_is_ignored(session):
    assert await session.handle_auth_event(AuthEvent.SIGNED_IN) is False
    assert session.user is None


@pytest.mark.asyncio
async def test_repeated_sign_in_for_the_same_user_is_a_noop(session, transport, user):
    await session.sign_in(user)
    await session.registry.flush()

    assert await session.sign_in(user) is False
    await session.registry.flush()

    assert transport.removed == []


@pytest.mark.asyncio
async def test_signed_out_tears_everything_down(session, transport, hub, user):
    await session.sign_in(user)
    session.open_conversation("c1")
    session.join_room("r1")
    await session.registry.flush()
    session.store.messages.remove("stale")

    assert await session.handle_auth_event(AuthEvent.SIGNED_OUT) is True

    assert len(session.registry) == 0
    assert session.user is None
    assert not session.is_connected
    assert not session.notifications.running
    assert session.conversation("c1") is None
    assert not session.store.messages.is_removed("stale")
    assert hub.presence.get("online-users") == {}
    assert ("untrack", "room:r1", USER_ID) in hub.presence_log
    assert await session.handle_auth_event(AuthEvent.SIGNED_OUT) is False


@pytest.mark.asyncio
async def test_signed_out_delivers_the_final_typing_stop(session, hub, user, caplog):
    await session.sign_in(user)
    feed = session.open_conversation("c1")
    await session.registry.flush()
    feed.set_typing(True)
    await session.registry.flush()

    await session.handle_auth_event(AuthEvent.SIGNED_OUT)

    typing = hub.broadcasts("typing:c1", "typing")
    assert [status["isTyping"] for status in typing] == [True, False]
    assert "not sent" not in caplog.text


@pytest.mark.asyncio
async def test_switching_users_restarts_the_session(session, transport, user):
    await session.sign_in(user)
    await session.registry.flush()

    other = CurrentUser(**USERS[OTHER_USER_ID])
    assert await session.sign_in(other) is True
    await session.registry.flush()

    assert "user-notifications:user-1" not in session.registry
    assert "user-notifications:user-2" in session.registry
    assert session.notifications.user == other


@pytest.mark.asyncio
async def test_sessions_see_each_other_online(hub, data_store, user):
    first = RealtimeSession(FakeTransport(hub, client_id="a"), data_store, config=RealtimeConfig(1.0))
    second = RealtimeSession(FakeTransport(hub, client_id="b"), data_store, config=RealtimeConfig(1.0))

    await first.sign_in(user)
    await first.registry.flush()
    await second.sign_in(CurrentUser(**USERS[OTHER_USER_ID]))
    await second.registry.flush()

    assert set(first.online_users()) == {USER_ID, OTHER_USER_ID}

    await second.sign_out()
    assert set(first.online_users()) == {USER_ID}
    await first.close()


@pytest.mark.asyncio
async def test_channel_failure_marks_the_session_disconnected(session, user, caplog):
    await session.sign_in(user)
    await session.registry.flush()
    assert session.is_connected

    session.registry.notify_status("online-users", SubscribeStatus.CHANNEL_ERROR, RuntimeError("socket closed"))

    assert not session.is_connected
    assert "Lost online presence channel" in caplog.text


@pytest.mark.asyncio
async def test_rooms_are_joined_once_and_left(session, hub, user):
    assert session.join_room("r1") is None

    await session.sign_in(user)
    first = session.join_room("r1")
    assert session.join_room("r1") is first
    await session.registry.flush()
    assert hub.presence["room:r1"][USER_ID][0]["username"] == "jan"

    session.leave_room("r1")
    await session.registry.flush()

    assert "room:r1" not in session.registry
    session.leave_room("r1")


@pytest.mark.asyncio
async def test_typing_status_is_broadcast_to_the_room(session, hub, user):
    session.send_typing_status("r1", True)
    await session.registry.flush()
    assert hub.sent == []

    await session.sign_in(user)
    session.send_typing_status("r1", True)
    await session.registry.flush()

    assert hub.broadcasts("typing:r1", "typing") == [{"userId": USER_ID, "username": "jan", "isTyping": True}]


@pytest.mark.asyncio
async def test_conversations_are_shared_per_id(session, user):
    assert session.open_conversation("c1") is None

    await session.sign_in(user)
    feed = session.open_conversation("c1")
    assert session.open_conversation("c1") is feed
    assert session.conversation("c1") is feed
    await session.registry.flush()

    session.close_conversation("c1")
    await session.registry.flush()

    assert not feed.is_open
    assert "messages:c1" not in session.registry


@pytest.mark.asyncio
async def test_close_detaches_the_status_listener(session, user):
    await session.sign_in(user)
    await session.registry.flush()

    await session.close()
    session.is_connected = True
    session.registry.notify_status("online-users", SubscribeStatus.CLOSED, None)

    assert session.user is None
    assert session.is_connected
