from contextvars import ContextVar
from typing import Optional

from freight_market.utils.helpers import generate_id

# Trace id of the realtime session whose callbacks are currently running.
# None outside of any session.
trace_id_var: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)


def bind_session_trace_id(user_id: str) -> str:
    """Start a new trace for a user's realtime session and return it."""
    trace_id = generate_id(f"rt-{user_id}")
    trace_id_var.set(trace_id)
    return trace_id
