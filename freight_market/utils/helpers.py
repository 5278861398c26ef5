"""Utility Helper Functions."""

import uuid
from datetime import datetime, timezone


def generate_id(prefix: str = "") -> str:
    """Generate unique ID with optional prefix."""
    uid = str(uuid.uuid4())
    return f"{prefix}_{uid}" if prefix else uid


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string, the format rows carry."""
    return datetime.now(timezone.utc).isoformat()


