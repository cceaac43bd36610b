"""Helpers shared by the memory, postgres and redis token stores."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional


def canonical_id(value: Any) -> Optional[str]:
    """Return the canonical lowercase UUID string for ``value`` or None if malformed.

    Token and user ids are UUIDs on every backend; normalizing here keeps
    ``ABC...`` and ``abc...`` from becoming two keys in the memory and redis
    stores, and keeps malformed input away from Postgres ``uuid`` casts.
    """
    if isinstance(value, uuid.UUID):
        return str(value)
    if not isinstance(value, str):
        return None
    try:
        return str(uuid.UUID(value.strip()))
    except ValueError:
        return None


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize naive timestamps (older snapshots, drivers) to aware UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
