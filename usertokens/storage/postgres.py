from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from usertokens.logging import get_logger
from usertokens.storage.common import as_utc, canonical_id
from usertokens.storage.errors import ConstraintViolation, DuplicateToken, UnknownUser
from usertokens.storage.models import TokenRecord, User, utcnow

# issued_token is the lifetime ledger of token ids; rows are never deleted so a
# revoked or cascaded token id can not be handed out again.
SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS users (
        user_id UUID PRIMARY KEY,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS issued_token (
        token UUID PRIMARY KEY,
        issued_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_tokens (
        token UUID PRIMARY KEY REFERENCES issued_token (token),
        user_id UUID NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ,
        CONSTRAINT fk_user_id
            FOREIGN KEY (user_id)
                REFERENCES users (user_id)
                ON DELETE CASCADE
    )
    """,
    "CREATE INDEX IF NOT EXISTS user_tokens_user_id_idx ON user_tokens (user_id)",
)

REQUIRED_TABLES = ("users", "issued_token", "user_tokens")


class PostgresStore:
    """Postgres-backed token store and user registry.

    Each operation runs in one pooled connection; the pool commits on a clean
    exit and rolls back when an exception escapes, so every method is a
    single transaction. ``insert`` locks the owner row ``FOR KEY SHARE`` and
    ``delete_user`` locks it ``FOR UPDATE``; the two conflict, so a token
    insert and its owner's deletion are strictly ordered. Lookups are plain
    MVCC reads and never wait on writers.
    """

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        auto_migrate: bool = False,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        if auto_migrate:
            self.ensure_schema()
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def ensure_schema(self) -> None:
        """Create the token tables if they are missing."""

        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("token_schema_ensured", tables=list(REQUIRED_TABLES))

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Set AUTO_MIGRATE=true or run "
                "scripts/token_admin.py migrate to create them.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # user registry
    def create_user(self, user_id: Optional[str] = None) -> User:
        if user_id is None:
            uid = str(uuid.uuid4())
        else:
            uid = canonical_id(user_id)
            if uid is None:
                raise ValueError("user id must be a UUID")
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO users (user_id) VALUES (%s) RETURNING created_at",
                    (uid,),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("user already exists", {"user_id": uid}) from exc
        return User(id=uid, created_at=as_utc(row["created_at"]) if row else utcnow())

    def get_user(self, user_id: str) -> Optional[User]:
        uid = canonical_id(user_id)
        if uid is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT user_id, created_at FROM users WHERE user_id = %s", (uid,)
            ).fetchone()
        if not row:
            return None
        return User(id=str(row["user_id"]), created_at=as_utc(row["created_at"]))

    def user_exists(self, user_id: str) -> bool:
        uid = canonical_id(user_id)
        if uid is None:
            return False
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS present FROM users WHERE user_id = %s", (uid,)
            ).fetchone()
        return row is not None

    def delete_user(self, user_id: str) -> bool:
        uid = canonical_id(user_id)
        if uid is None:
            return False
        with self._connect() as conn:
            row = conn.execute(
                "SELECT user_id FROM users WHERE user_id = %s FOR UPDATE", (uid,)
            ).fetchone()
            if not row:
                return False
            removed = self.on_user_deleted(uid, conn=conn)
            conn.execute("DELETE FROM users WHERE user_id = %s", (uid,))
        self.logger.info("user_deleted", user_id=uid, tokens_removed=removed)
        return True

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
        expiry = as_utc(expires_at)
        with self._connect() as conn:
            owner = conn.execute(
                "SELECT user_id FROM users WHERE user_id = %s FOR KEY SHARE", (uid,)
            ).fetchone()
            if not owner:
                raise UnknownUser(uid)
            try:
                conn.execute("INSERT INTO issued_token (token) VALUES (%s)", (tok,))
                row = conn.execute(
                    """
                    INSERT INTO user_tokens (token, user_id, expires_at)
                    VALUES (%s, %s, %s)
                    RETURNING created_at
                    """,
                    (tok, uid, expiry),
                ).fetchone()
            except errors.UniqueViolation as exc:
                raise DuplicateToken({"user_id": uid}) from exc
            except errors.ForeignKeyViolation as exc:
                raise UnknownUser(uid) from exc
        return TokenRecord(
            token=tok,
            user_id=uid,
            created_at=as_utc(row["created_at"]) if row else utcnow(),
            expires_at=expiry,
        )

    def lookup(self, token: str) -> Optional[str]:
        tok = canonical_id(token)
        if tok is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT user_id FROM user_tokens
                WHERE token = %s AND (expires_at IS NULL OR expires_at > now())
                """,
                (tok,),
            ).fetchone()
        if not row:
            return None
        return str(row["user_id"])

    def delete(self, token: str) -> None:
        tok = canonical_id(token)
        if tok is None:
            return
        with self._connect() as conn:
            conn.execute("DELETE FROM user_tokens WHERE token = %s", (tok,))

    def delete_all_for_user(self, user_id: str) -> int:
        uid = canonical_id(user_id)
        if uid is None:
            return 0
        with self._connect() as conn:
            return self._delete_user_tokens(conn, uid)

    def on_user_deleted(self, user_id: str, *, conn=None) -> int:
        """Cascade hook: delete every token of ``user_id``.

        Pass ``conn`` to run inside the caller's open transaction, which is
        how ``delete_user`` (or a registry sharing this database) keeps the
        user row and its tokens disappearing in one commit. The
        ``fk_user_id`` cascade covers plain ``DELETE FROM users`` as well.
        """
        uid = canonical_id(user_id)
        if uid is None:
            return 0
        if conn is not None:
            return self._delete_user_tokens(conn, uid)
        with self._connect() as own_conn:
            return self._delete_user_tokens(own_conn, uid)

    def purge_expired(self) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM user_tokens WHERE expires_at IS NOT NULL AND expires_at <= now()"
            )
            return max(result.rowcount, 0)

    @staticmethod
    def _delete_user_tokens(conn, uid: str) -> int:
        result = conn.execute("DELETE FROM user_tokens WHERE user_id = %s", (uid,))
        return max(result.rowcount, 0)
