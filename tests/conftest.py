"""
Shared fixtures: an in-memory transport, a registry over it and a data store mock.
"""

import os
import sys
from unittest.mock import AsyncMock

import pytest

# Add the project root to the Python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from freight_market.core.realtime import ChannelRegistry, RealtimeConfig
from freight_market.models.schemas import CurrentUser
from freight_market.services.database_service import QueryResult
from freight_market.services.realtime_service import RealtimeService
from tests.utils.fake_transport import FakeHub, FakeTransport

USER_ID = "user-1"
OTHER_USER_ID = "user-2"

USERS = {
    USER_ID: {"id": USER_ID, "username": "jan", "email": "jan@example.com", "role": "user"},
    OTHER_USER_ID: {"id": OTHER_USER_ID, "username": "anna", "email": "anna@example.com", "role": "user"},
    "admin-1": {"id": "admin-1", "username": "admin", "email": "admin@example.com", "role": "admin"},
}


@pytest.fixture
def hub():
    return FakeHub()


@pytest.fixture
def transport(hub):
    return FakeTransport(hub, client_id="client-1")


@pytest.fixture
def registry(transport):
    return ChannelRegistry(transport, RealtimeConfig(subscribe_timeout=1.0))


@pytest.fixture
def realtime(registry):
    return RealtimeService(registry)


@pytest.fixture
def user():
    return CurrentUser(**USERS[USER_ID])


@pytest.fixture
def admin_user():
    return CurrentUser(**USERS["admin-1"])


@pytest.fixture
def data_store():
    """An AsyncMock DataStore answering user and offer lookups from fixtures."""
    store = AsyncMock()

    async def get_user(user_id):
        row = USERS.get(user_id)
        return QueryResult(data=dict(row) if row else None)

    async def get_offer(offer_id):
        return QueryResult(data={"id": offer_id, "transport_id": "transport-9"})

    store.get_user.side_effect = get_user
    store.get_offer.side_effect = get_offer
    store.mark_message_read.return_value = QueryResult(data={"id": "m"})
    store.mark_conversation_read.return_value = QueryResult(data=[])
    store.list_unread_messages.return_value = QueryResult(data=[])
    store.list_unread_offer_messages.return_value = QueryResult(data=[])
    store.list_pending_offers.return_value = QueryResult(data=[])
    store.list_unseen_reports.return_value = QueryResult(data=[])
    store.list_messages.return_value = QueryResult(data=[])
    return store
