from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class TokenRecord:
    """A bearer token bound to its owner. Records are created or deleted, never edited."""

    token: str
    user_id: str
    created_at: datetime
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utcnow())
