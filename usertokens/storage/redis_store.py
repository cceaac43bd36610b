from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from redis import Redis

from usertokens.logging import get_logger
from usertokens.storage.common import as_utc, canonical_id
from usertokens.storage.errors import ConstraintViolation, DuplicateToken, UnknownUser
from usertokens.storage.models import TokenRecord, User, utcnow


class RedisStore:
    """Redis-backed token store and user registry.

    Every operation that touches more than one key is a Lua script, and Redis
    runs scripts atomically, so the user check + insert and the user delete +
    token cascade each happen as one indivisible step. Lookups are a
    read-only script that resolves the owner and returns nothing when the
    owner's user key is gone, so a registry that deletes ``p:user:<id>``
    itself never leaves a token that still validates. Token expiry uses
    native key TTLs.

    Key layout (``p`` is the configured prefix)::

        p:user:<user_id>          creation timestamp
        p:token:<token>           owning user id
        p:user_tokens:<user_id>   set of the user's token ids
        p:issued                  set of every token id ever inserted
    """

    # Returns -1 unknown user, -2 token already issued, 1 inserted
    _INSERT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return -1
end
if redis.call('SADD', KEYS[4], ARGV[1]) == 0 then
  return -2
end
local ttl_ms = tonumber(ARGV[3])
if ttl_ms > 0 then
  redis.call('SET', KEYS[2], ARGV[2], 'PX', ttl_ms)
else
  redis.call('SET', KEYS[2], ARGV[2])
end
redis.call('SADD', KEYS[3], ARGV[1])
return 1
"""

    _DELETE_TOKEN_SCRIPT = """
local owner = redis.call('GET', KEYS[1])
if not owner then
  return 0
end
redis.call('DEL', KEYS[1])
redis.call('SREM', ARGV[2] .. owner, ARGV[1])
return 1
"""

    _DELETE_USER_TOKENS_SCRIPT = """
local removed = 0
for _, tok in ipairs(redis.call('SMEMBERS', KEYS[1])) do
  removed = removed + redis.call('DEL', ARGV[1] .. tok)
end
redis.call('DEL', KEYS[1])
return removed
"""

    # Returns {user keys deleted, tokens removed}; tokens go even if the user
    # key was already deleted by someone else
    _DELETE_USER_SCRIPT = """
local existed = redis.call('DEL', KEYS[1])
local removed = 0
for _, tok in ipairs(redis.call('SMEMBERS', KEYS[2])) do
  removed = removed + redis.call('DEL', ARGV[1] .. tok)
end
redis.call('DEL', KEYS[2])
return {existed, removed}
"""

    _LOOKUP_SCRIPT = """
local owner = redis.call('GET', KEYS[1])
if not owner then
  return false
end
if redis.call('EXISTS', ARGV[1] .. owner) == 0 then
  return false
end
return owner
"""

    # Drops index entries whose token key already expired
    _PRUNE_INDEX_SCRIPT = """
local pruned = 0
for _, tok in ipairs(redis.call('SMEMBERS', KEYS[1])) do
  if redis.call('EXISTS', ARGV[1] .. tok) == 0 then
    pruned = pruned + redis.call('SREM', KEYS[1], tok)
  end
end
return pruned
"""

    def __init__(
        self,
        redis_url: str,
        *,
        prefix: str = "usertokens",
        socket_timeout: float = 5.0,
        client: Optional[Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self.prefix = prefix
        self.logger = get_logger(__name__)
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._insert = self.client.register_script(self._INSERT_SCRIPT)
        self._delete_token = self.client.register_script(self._DELETE_TOKEN_SCRIPT)
        self._delete_user_tokens = self.client.register_script(
            self._DELETE_USER_TOKENS_SCRIPT
        )
        self._delete_user = self.client.register_script(self._DELETE_USER_SCRIPT)
        self._prune_index = self.client.register_script(self._PRUNE_INDEX_SCRIPT)
        self._lookup = self.client.register_script(self._LOOKUP_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        self.client.ping()

    def close(self) -> None:
        self.client.close()

    def _user_key(self, uid: str) -> str:
        return f"{self.prefix}:user:{uid}"

    def _token_key(self, tok: str) -> str:
        return f"{self.prefix}:token:{tok}"

    def _index_key(self, uid: str) -> str:
        return f"{self.prefix}:user_tokens:{uid}"

    @property
    def _user_prefix(self) -> str:
        return f"{self.prefix}:user:"

    @property
    def _token_prefix(self) -> str:
        return f"{self.prefix}:token:"

    @property
    def _index_prefix(self) -> str:
        return f"{self.prefix}:user_tokens:"

    @property
    def _ledger_key(self) -> str:
        return f"{self.prefix}:issued"

    # user registry
    def create_user(self, user_id: Optional[str] = None) -> User:
        if user_id is None:
            uid = str(uuid.uuid4())
        else:
            uid = canonical_id(user_id)
            if uid is None:
                raise ValueError("user id must be a UUID")
        user = User(id=uid)
        if not self.client.set(self._user_key(uid), user.created_at.isoformat(), nx=True):
            raise ConstraintViolation("user already exists", {"user_id": uid})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        uid = canonical_id(user_id)
        if uid is None:
            return None
        raw = self.client.get(self._user_key(uid))
        if raw is None:
            return None
        return User(id=uid, created_at=as_utc(datetime.fromisoformat(raw)))

    def user_exists(self, user_id: str) -> bool:
        uid = canonical_id(user_id)
        if uid is None:
            return False
        return bool(self.client.exists(self._user_key(uid)))

    def delete_user(self, user_id: str) -> bool:
        uid = canonical_id(user_id)
        if uid is None:
            return False
        existed, removed = self._cascade_user(uid)
        if not existed:
            return False
        self.logger.info("user_deleted", user_id=uid, tokens_removed=removed)
        return True

    def _cascade_user(self, uid: str) -> tuple[bool, int]:
        existed, removed = self._delete_user(
            keys=[self._user_key(uid), self._index_key(uid)],
            args=[self._token_prefix],
        )
        return bool(int(existed)), int(removed)

    # tokens
    def insert(
        self,
        token: str,
        user_id: str,
        *,
        expires_at: Optional[datetime] = None,
    ) -> TokenRecord:
        tok = canonical_id(token)
        if tok is None:
            raise ValueError("token must be a UUID string")
        uid = canonical_id(user_id)
        if uid is None:
            raise UnknownUser(str(user_id))
        now = utcnow()
        expiry = as_utc(expires_at)
        ttl_ms = 0
        if expiry is not None:
            # An already-past expiry still gets a positive TTL so it lapses at once
            ttl_ms = max(1, int((expiry - now).total_seconds() * 1000))
        result = int(
            self._insert(
                keys=[
                    self._user_key(uid),
                    self._token_key(tok),
                    self._index_key(uid),
                    self._ledger_key,
                ],
                args=[tok, uid, ttl_ms],
            )
        )
        if result == -1:
            raise UnknownUser(uid)
        if result == -2:
            raise DuplicateToken({"user_id": uid})
        return TokenRecord(token=tok, user_id=uid, created_at=now, expires_at=expiry)

    def lookup(self, token: str) -> Optional[str]:
        tok = canonical_id(token)
        if tok is None:
            return None
        return self._lookup(keys=[self._token_key(tok)], args=[self._user_prefix])

    def delete(self, token: str) -> None:
        tok = canonical_id(token)
        if tok is None:
            return
        self._delete_token(keys=[self._token_key(tok)], args=[tok, self._index_prefix])

    def delete_all_for_user(self, user_id: str) -> int:
        uid = canonical_id(user_id)
        if uid is None:
            return 0
        return int(
            self._delete_user_tokens(
                keys=[self._index_key(uid)], args=[self._token_prefix]
            )
        )

    def on_user_deleted(self, user_id: str) -> int:
        """Cascade hook: remove the user key and every token of the user.

        Runs the same script as ``delete_user``, so once it returns no insert
        for the user can succeed. Tokens are removed even when a registry
        already deleted the user key. Returns the number of tokens removed.
        """
        uid = canonical_id(user_id)
        if uid is None:
            return 0
        existed, removed = self._cascade_user(uid)
        self.logger.info(
            "user_tokens_cascaded", user_id=uid, user_key_removed=existed, tokens_removed=removed
        )
        return removed

    def purge_expired(self) -> int:
        """Prune index entries of tokens that Redis already expired."""
        pruned = 0
        for key in self.client.scan_iter(match=f"{self._index_prefix}*"):
            pruned += int(self._prune_index(keys=[key], args=[self._token_prefix]))
        return pruned
