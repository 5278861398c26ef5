"""Data store access for the realtime consumers.

Every query returns a :class:`QueryResult`; query failures are reported in
``error`` and never raised, so callers decide which absences are fatal.
"""
import asyncio
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Generic, Iterator, List, Optional, Protocol, Sequence, TypeVar
from uuid import UUID

import psycopg2
from psycopg2.extensions import connection
from psycopg2.extras import RealDictCursor
from psycopg2.pool import SimpleConnectionPool
from pydantic import ValidationError

from freight_market.config.settings import get_effective_database_url, settings
from freight_market.core.errors import EnrichmentLookupError
from freight_market.models.schemas import Actor

logger = logging.getLogger(__name__)

T = TypeVar("T")
Row = Dict[str, Any]


@dataclass
class QueryResult(Generic[T]):
    data: Optional[T] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class DataStore(Protocol):
    async def get_user(self, user_id: str) -> QueryResult[Row]: ...

    async def get_offer(self, offer_id: str) -> QueryResult[Row]: ...

    async def mark_message_read(self, message_id: str) -> QueryResult[Row]: ...

    async def mark_conversation_read(self, conversation_id: str, receiver_id: str) -> QueryResult[List[str]]: ...

    async def list_conversation_participants(self, conversation_id: str) -> QueryResult[List[Row]]: ...

    async def insert_message(
        self, conversation_id: str, sender_id: str, receiver_id: str, text: str
    ) -> QueryResult[Row]: ...

    async def list_messages(self, conversation_id: str) -> QueryResult[List[Row]]: ...

    async def list_unread_messages(self, user_id: str) -> QueryResult[List[Row]]: ...

    async def list_unread_offer_messages(self, user_id: str) -> QueryResult[List[Row]]: ...

    async def list_pending_offers(self, user_id: str) -> QueryResult[List[Row]]: ...

    async def list_unseen_reports(self) -> QueryResult[List[Row]]: ...


async def lookup_actor(data_store: DataStore, user_id: Optional[str]) -> Actor:
    """Fetch a user's public identity; raise :class:`EnrichmentLookupError` on any failure."""
    if not user_id:
        raise EnrichmentLookupError("users", user_id, "missing identifier")
    try:
        result = await data_store.get_user(user_id)
    except Exception as exc:
        raise EnrichmentLookupError("users", user_id, exc) from exc
    if result.error is not None or not result.data:
        raise EnrichmentLookupError("users", user_id, result.error or "not found")
    try:
        return Actor.model_validate(result.data)
    except ValidationError as exc:
        raise EnrichmentLookupError("users", user_id, exc) from exc


def _normalize(value: Any) -> Any:
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _normalize_row(row: Optional[Dict[str, Any]]) -> Optional[Row]:
    if row is None:
        return None
    return {key: _normalize(value) for key, value in row.items()}


class PostgresDataStore:
    """:class:`DataStore` over a lazily created psycopg2 connection pool."""

    def __init__(self, database_url: Optional[str] = None) -> None:
        self.database_url = database_url or get_effective_database_url()
        if not self.database_url:
            raise ValueError("DATABASE_URL is not configured.")
        self.pool: Optional[SimpleConnectionPool] = None

    def _get_or_create_pool(self) -> SimpleConnectionPool:
        """Lazily creates and returns the connection pool."""
        if self.pool is None:
            try:
                self.pool = SimpleConnectionPool(
                    minconn=settings.DB_POOL_MIN_CONNECTIONS,
                    maxconn=settings.DB_POOL_MAX_CONNECTIONS,
                    dsn=self.database_url,
                )
                logger.info("Database connection pool created successfully on first use.")
            except psycopg2.OperationalError as e:
                logger.error(f"Failed to create database connection pool: {e}")
                raise
        return self.pool

    @contextmanager
    def get_connection(self) -> Iterator[connection]:
        pool = self._get_or_create_pool()
        conn = pool.getconn()
        try:
            yield conn
        finally:
            pool.putconn(conn)

    def _execute(self, query: str, params: Sequence[Any], fetch: str) -> Any:
        with self.get_connection() as conn:
            try:
                with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                    cursor.execute(query, params)
                    if fetch == "one":
                        result = _normalize_row(cursor.fetchone())
                    elif fetch == "all":
                        result = [_normalize_row(row) for row in cursor.fetchall()]
                    else:
                        result = None
                conn.commit()
                return result
            except Exception:
                conn.rollback()
                raise

    async def _run(self, query: str, params: Sequence[Any], fetch: str = "all") -> QueryResult:
        try:
            data = await asyncio.to_thread(self._execute, query, tuple(params), fetch)
        except (psycopg2.Error, ValueError) as exc:
            logger.error("Query failed: %s", exc)
            return QueryResult(error=exc)
        return QueryResult(data=data)

    async def ping(self) -> bool:
        result = await self._run("SELECT 1 AS test", (), fetch="one")
        return result.ok and bool(result.data) and result.data.get("test") == 1

    async def get_user(self, user_id: str) -> QueryResult[Row]:
        return await self._run(
            "SELECT id, username, email, role FROM users WHERE id = %s", (user_id,), fetch="one"
        )

    async def get_offer(self, offer_id: str) -> QueryResult[Row]:
        return await self._run(
            "SELECT id, transport_id, creator_id, is_accepted FROM offers WHERE id = %s", (offer_id,), fetch="one"
        )

    async def mark_message_read(self, message_id: str) -> QueryResult[Row]:
        return await self._run(
            "UPDATE messages SET is_read = true WHERE id = %s RETURNING id", (message_id,), fetch="one"
        )

    async def mark_conversation_read(self, conversation_id: str, receiver_id: str) -> QueryResult[List[str]]:
        result = await self._run(
            """
            UPDATE messages SET is_read = true
            WHERE conversation_id = %s AND receiver_id = %s AND is_read = false
            RETURNING id
            """,
            (conversation_id, receiver_id),
        )
        if not result.ok:
            return result
        return QueryResult(data=[row["id"] for row in result.data or []])

    async def list_conversation_participants(self, conversation_id: str) -> QueryResult[List[Row]]:
        return await self._run(
            "SELECT user_id FROM conversation_participants WHERE conversation_id = %s", (conversation_id,)
        )

    async def insert_message(
        self, conversation_id: str, sender_id: str, receiver_id: str, text: str
    ) -> QueryResult[Row]:
        return await self._run(
            """
            INSERT INTO messages (conversation_id, sender_id, receiver_id, text, is_read)
            VALUES (%s, %s, %s, %s, false)
            RETURNING id, conversation_id, sender_id, receiver_id, text, is_read, created_at
            """,
            (conversation_id, sender_id, receiver_id, text),
            fetch="one",
        )

    async def list_messages(self, conversation_id: str) -> QueryResult[List[Row]]:
        return await self._run(
            """
            SELECT m.id, m.conversation_id, m.sender_id, m.receiver_id, m.text, m.is_read, m.created_at,
                   u.username AS sender_username, u.email AS sender_email
            FROM messages m LEFT JOIN users u ON u.id = m.sender_id
            WHERE m.conversation_id = %s
            ORDER BY m.created_at ASC
            """,
            (conversation_id,),
        )

    async def list_unread_messages(self, user_id: str) -> QueryResult[List[Row]]:
        return await self._run(
            """
            SELECT m.id, m.created_at, m.text, m.is_read, m.conversation_id, m.sender_id,
                   u.username AS sender_username, u.email AS sender_email
            FROM messages m LEFT JOIN users u ON u.id = m.sender_id
            WHERE m.receiver_id = %s AND m.is_read = false
            ORDER BY m.created_at DESC
            """,
            (user_id,),
        )

    async def list_unread_offer_messages(self, user_id: str) -> QueryResult[List[Row]]:
        return await self._run(
            """
            SELECT om.id, om.created_at, om.text, om.is_read, om.offer_id, om.receiver_id, om.sender_id,
                   o.transport_id, u.username AS sender_username, u.email AS sender_email
            FROM offer_messages om
            LEFT JOIN users u ON u.id = om.sender_id
            LEFT JOIN offers o ON o.id = om.offer_id
            WHERE om.receiver_id = %s AND om.is_read = false
            ORDER BY om.created_at DESC
            """,
            (user_id,),
        )

    async def list_pending_offers(self, user_id: str) -> QueryResult[List[Row]]:
        return await self._run(
            """
            SELECT o.id, o.created_at, o.transport_id, o.is_accepted, o.creator_id AS sender_id,
                   u.username AS sender_username, u.email AS sender_email
            FROM offers o LEFT JOIN users u ON u.id = o.creator_id
            WHERE o.creator_id = %s AND o.is_accepted = false
            ORDER BY o.created_at DESC
            """,
            (user_id,),
        )

    async def list_unseen_reports(self) -> QueryResult[List[Row]]:
        return await self._run(
            """
            SELECT r.*, u.username AS reporter_username, u.email AS reporter_email
            FROM reports r LEFT JOIN users u ON u.id = r.reporter_id
            WHERE r.seen = false
            ORDER BY r.created_at DESC
            """,
            (),
        )

    def close(self) -> None:
        if self.pool is not None:
            self.pool.closeall()
            self.pool = None


_data_store: Optional[PostgresDataStore] = None


def get_data_store() -> PostgresDataStore:
    """Dependency provider for the shared :class:`PostgresDataStore`."""
    global _data_store
    if _data_store is None:
        _data_store = PostgresDataStore()
    return _data_store
