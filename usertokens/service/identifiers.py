from __future__ import annotations

import secrets
import uuid
from typing import Callable, Optional

from usertokens.logging import get_logger
from usertokens.service.errors import EntropyUnavailableError

logger = get_logger(__name__)

TOKEN_BYTES = 16


class TokenIdGenerator:
    """Draws UUIDv4 token identifiers (122 random bits) from a CSPRNG.

    ``random_bytes`` defaults to :func:`secrets.token_bytes`; tests inject a
    deterministic source to force collisions. A source that cannot be read
    raises :class:`EntropyUnavailableError` instead of falling back to a
    weaker generator.
    """

    def __init__(self, random_bytes: Optional[Callable[[int], bytes]] = None) -> None:
        self._random_bytes = random_bytes or secrets.token_bytes

    def generate(self) -> str:
        try:
            raw = self._random_bytes(TOKEN_BYTES)
        except (OSError, NotImplementedError) as exc:
            logger.error("entropy_unavailable", error=str(exc))
            raise EntropyUnavailableError(
                "secure random source unavailable"
            ) from exc
        if len(raw) != TOKEN_BYTES:
            logger.error("entropy_short_read", received=len(raw))
            raise EntropyUnavailableError("secure random source returned short read")
        # uuid.UUID(version=4) overwrites the version and variant bits
        return str(uuid.UUID(bytes=bytes(raw), version=4))
