"""Boundary between the realtime layer and the hosted pub/sub channel service.

The registry and the multiplexer only talk to objects satisfying
:class:`Transport` and :class:`TransportChannel`; the Redis-backed adapter in
``freight_market.services.redis_transport`` is the shipped implementation.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Union


class SubscribeStatus(str, Enum):
    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


class ChannelState(str, Enum):
    CLOSED = "closed"
    JOINING = "joining"
    JOINED = "joined"
    ERRORED = "errored"


class ChangeEvent(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    ALL = "*"


class PresenceEvent(str, Enum):
    SYNC = "sync"
    JOIN = "join"
    LEAVE = "leave"


_FILTER_OPERATORS = ("eq", "neq", "in")


def _coerce(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return "" if value is None else str(value)


@dataclass(frozen=True)
class ChangeSpec:
    """Table change discriminator: ``schema.table`` + event kind + row filter.

    ``filter`` uses the ``column=op.value`` syntax (``eq``, ``neq``, ``in``),
    e.g. ``receiver_id=eq.42`` or ``status=in.(new,open)``.
    """

    schema: str
    table: str
    event: str
    filter: Optional[str] = None

    def __post_init__(self) -> None:
        if self.filter:
            _parse_filter(self.filter)

    @property
    def key(self) -> str:
        return f"postgres_changes:{self.schema}:{self.table}:{self.event}:{self.filter or ''}"

    def matches(self, change: Dict[str, Any]) -> bool:
        """Whether a raw change envelope is addressed to this spec."""
        if change.get("schema") != self.schema or change.get("table") != self.table:
            return False
        event_type = change.get("eventType") or change.get("event_type")
        if self.event != ChangeEvent.ALL.value and event_type != self.event:
            return False
        if not self.filter:
            return True
        column, operator, expected = _parse_filter(self.filter)
        row = change.get("new") or {}
        if event_type == ChangeEvent.DELETE.value or not row:
            row = change.get("old") or {}
        if column not in row:
            return False
        actual = _coerce(row[column])
        if operator == "eq":
            return actual == expected
        if operator == "neq":
            return actual != expected
        return actual in [item.strip() for item in expected.strip("()").split(",")]


def _parse_filter(expression: str):
    column, sep, rest = expression.partition("=")
    operator, dot, value = rest.partition(".")
    if not sep or not dot or not column or operator not in _FILTER_OPERATORS:
        raise ValueError(f"Unsupported change filter: {expression!r}")
    return column, operator, value


@dataclass(frozen=True)
class BroadcastSpec:
    event: str

    @property
    def key(self) -> str:
        return f"broadcast:{self.event}"


@dataclass(frozen=True)
class PresenceSpec:
    event: PresenceEvent

    @property
    def key(self) -> str:
        return f"presence:{self.event.value}"


ListenerSpec = Union[ChangeSpec, BroadcastSpec, PresenceSpec]
ListenerCallback = Callable[..., Any]
StatusCallback = Callable[[SubscribeStatus, Optional[BaseException]], None]
PresenceState = Dict[str, List[Dict[str, Any]]]


class TransportChannel(Protocol):
    """One channel subscription on the hosted transport.

    Listener callbacks receive:

    * change specs: the raw change dict (``schema``, ``table``, ``eventType``,
      ``new``, ``old``, ``commit_timestamp``)
    * broadcast specs: the broadcast payload
    * presence sync: nothing; join/leave: ``(key, payloads)``
    """

    name: str

    def on(self, spec: ListenerSpec, callback: ListenerCallback) -> None: ...

    def off(self, spec: ListenerSpec, callback: ListenerCallback) -> None: ...

    async def subscribe(self, on_status: StatusCallback) -> None: ...

    async def track(self, payload: Dict[str, Any], key: Optional[str] = None) -> None: ...

    async def untrack(self) -> None: ...

    async def send(self, message: Dict[str, Any]) -> None: ...

    def presence_state(self) -> PresenceState: ...


class Transport(Protocol):
    client_id: str

    def channel(self, name: str) -> TransportChannel: ...

    async def remove_channel(self, channel: TransportChannel) -> None: ...
