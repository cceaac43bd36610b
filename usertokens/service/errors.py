from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for token-service exceptions.

    Each subclass carries an HTTP-style ``status_code`` and a stable
    ``error_code`` so the transport layer can map failures without
    inspecting messages:
    - unauthorized (401)
    - not_found (404)
    - server_error (500)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(AuthenticationError):
    """Token did not validate.

    Never-issued, revoked, expired and owner-deleted tokens all raise this
    with the same message and no detail, so callers cannot tell which
    tokens once existed.
    """

    def __init__(self) -> None:
        super().__init__("not authenticated")


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class UnknownUserError(NotFoundError):
    """Token requested for a user that does not exist."""

    def __init__(self, user_id: str) -> None:
        super().__init__("user not found", detail={"user_id": user_id})


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class IdentifierExhaustedError(ServerError):
    """Every identifier drawn for one issue collided with an existing token."""


class ServiceUnavailableError(ServiceError):
    """Dependency required to serve the request is unavailable (503)."""
    status_code = 503
    error_code = "service_unavailable"


class EntropyUnavailableError(ServiceUnavailableError):
    """The secure random source could not be read."""


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "InvalidTokenError",
    "NotFoundError",
    "UnknownUserError",
    "ServerError",
    "IdentifierExhaustedError",
    "ServiceUnavailableError",
    "EntropyUnavailableError",
]
