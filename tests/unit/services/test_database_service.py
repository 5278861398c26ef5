import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import psycopg2
import pytest

from freight_market.core.errors import EnrichmentLookupError
from freight_market.services.database_service import PostgresDataStore, QueryResult, lookup_actor


@pytest.fixture
def cursor():
    return MagicMock()


@pytest.fixture
def data_store(cursor):
    conn = MagicMock()
    conn.cursor.return_value.__enter__.return_value = cursor
    pool = MagicMock()
    pool.getconn.return_value = conn
    with patch("freight_market.services.database_service.SimpleConnectionPool", return_value=pool):
        store = PostgresDataStore("postgresql://app:pw@localhost:5432/market")
        store.conn = conn
        store.test_pool = pool
        yield store


def test_missing_database_url_is_rejected():
    with patch("freight_market.services.database_service.get_effective_database_url", return_value=None):
        with pytest.raises(ValueError):
            PostgresDataStore()


@pytest.mark.asyncio
async def test_rows_are_normalized(data_store, cursor):
    user_id = uuid.uuid4()
    cursor.fetchone.return_value = {
        "id": user_id,
        "username": "anna",
        "email": "anna@example.com",
        "created_at": datetime(2024, 5, 1, tzinfo=timezone.utc),
    }

    result = await data_store.get_user(str(user_id))

    assert result.ok
    assert result.data["id"] == str(user_id)
    assert result.data["created_at"] == "2024-05-01T00:00:00+00:00"
    data_store.conn.commit.assert_called_once()
    data_store.test_pool.putconn.assert_called_once_with(data_store.conn)


@pytest.mark.asyncio
async def test_query_errors_are_returned_not_raised(data_store, cursor):
    cursor.execute.side_effect = psycopg2.OperationalError("server closed the connection")

    result = await data_store.list_unread_messages("user-1")

    assert not result.ok
    assert isinstance(result.error, psycopg2.OperationalError)
    data_store.conn.rollback.assert_called_once()


@pytest.mark.asyncio
async def test_mark_conversation_read_returns_ids(data_store, cursor):
    cursor.fetchall.return_value = [{"id": "m1"}, {"id": "m2"}]

    result = await data_store.mark_conversation_read("c1", "user-1")

    assert result.data == ["m1", "m2"]
    query, params = cursor.execute.call_args.args
    assert "UPDATE messages SET is_read = true" in query
    assert params == ("c1", "user-1")


@pytest.mark.asyncio
async def test_lookup_actor_raises_on_every_failure():
    store = AsyncMock()
    store.get_user.return_value = QueryResult(data={"id": "u1", "username": "jan", "email": "jan@example.com"})
    actor = await lookup_actor(store, "u1")
    assert actor.username == "jan"

    store.get_user.return_value = QueryResult(data=None)
    with pytest.raises(EnrichmentLookupError):
        await lookup_actor(store, "u1")

    store.get_user.side_effect = RuntimeError("pool exhausted")
    with pytest.raises(EnrichmentLookupError) as exc_info:
        await lookup_actor(store, "u1")
    assert exc_info.value.resource == "users"

    with pytest.raises(EnrichmentLookupError):
        await lookup_actor(store, None)
