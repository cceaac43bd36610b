from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Protocol

from usertokens.config import Settings
from usertokens.logging import get_logger
from usertokens.service.errors import (
    IdentifierExhaustedError,
    InvalidTokenError,
    UnknownUserError,
)
from usertokens.service.identifiers import TokenIdGenerator
from usertokens.storage.errors import DuplicateToken, UnknownUser
from usertokens.storage.models import TokenRecord, utcnow


class TokenStore(Protocol):
    def user_exists(self, user_id: str) -> bool: ...

    def insert(
        self,
        token: str,
        user_id: str,
        *,
        expires_at: Optional[datetime] = None,
    ) -> TokenRecord: ...

    def lookup(self, token: str) -> Optional[str]: ...

    def delete(self, token: str) -> None: ...

    def delete_all_for_user(self, user_id: str) -> int: ...

    def purge_expired(self) -> int: ...


class TokenService:
    """Issue, validate and revoke opaque bearer tokens.

    This is the only component that talks to the token store on behalf of
    the session layer. Validation failures are deliberately uniform: a token
    that was never issued, was revoked, expired, or whose owner was deleted
    all raise the same :class:`InvalidTokenError`.
    """

    def __init__(
        self,
        store: TokenStore,
        settings: Settings,
        *,
        generator: Optional[TokenIdGenerator] = None,
    ) -> None:
        self.store: TokenStore = store
        self.settings = settings
        self.generator = generator or TokenIdGenerator()
        self.logger = get_logger(__name__)

    def _expires_at(self) -> Optional[datetime]:
        ttl = self.settings.token_ttl_minutes
        if not ttl:
            return None
        return utcnow() + timedelta(minutes=ttl)

    def issue_token(self, user_id: str) -> str:
        """Mint a token for ``user_id`` and return it.

        Collisions with previously issued ids are retried with a fresh draw,
        up to ``token_issue_max_attempts`` draws in total.

        Raises:
            UnknownUserError: the user does not exist, including when it was
                deleted while the token was being inserted.
            IdentifierExhaustedError: every draw collided.
            EntropyUnavailableError: the random source failed.
        """
        if not self.store.user_exists(user_id):
            raise UnknownUserError(user_id)

        attempts = self.settings.token_issue_max_attempts
        expires_at = self._expires_at()
        for attempt in range(1, attempts + 1):
            token = self.generator.generate()
            try:
                record = self.store.insert(token, user_id, expires_at=expires_at)
            except DuplicateToken:
                # Should never happen with a healthy CSPRNG
                self.logger.warning(
                    "token_collision", user_id=user_id, attempt=attempt, max_attempts=attempts
                )
                continue
            except UnknownUser as exc:
                raise UnknownUserError(user_id) from exc
            self.logger.info(
                "token_issued",
                user_id=record.user_id,
                attempt=attempt,
                expires_at=record.expires_at.isoformat() if record.expires_at else None,
            )
            return record.token

        self.logger.error("token_identifier_exhausted", user_id=user_id, attempts=attempts)
        raise IdentifierExhaustedError(
            "could not generate a unique token identifier",
            detail={"attempts": attempts},
        )

    def validate_token(self, token: str) -> str:
        """Return the id of the user owning ``token`` or raise InvalidTokenError."""
        user_id = self.store.lookup(token) if token else None
        if user_id is None:
            self.logger.debug("token_validation_failed")
            raise InvalidTokenError()
        return user_id

    def revoke_token(self, token: str) -> None:
        """Logout path. Idempotent; unknown tokens are a silent no-op."""
        if not token:
            return
        self.store.delete(token)
        self.logger.info("token_revoked", token=token)

    def revoke_all_for_user(self, user_id: str) -> int:
        """Forced logout of every session of ``user_id``; returns tokens revoked."""
        revoked = self.store.delete_all_for_user(user_id)
        self.logger.info("user_tokens_revoked", user_id=user_id, revoked=revoked)
        return revoked

    def purge_expired(self) -> int:
        purged = self.store.purge_expired()
        if purged:
            self.logger.info("expired_tokens_purged", purged=purged)
        return purged
