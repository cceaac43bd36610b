from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class DuplicateToken(ConstraintViolation):
    """The token id was already issued at some point in the store's lifetime."""

    def __init__(self, detail: Optional[Dict[str, Any]] = None):
        super().__init__("token already issued", detail)


class UnknownUser(ConstraintViolation):
    """The referenced user does not exist (or was deleted concurrently)."""

    def __init__(self, user_id: str):
        super().__init__("user does not exist", {"user_id": user_id})
        self.user_id = user_id


__all__ = ["ConstraintViolation", "DuplicateToken", "UnknownUser"]
