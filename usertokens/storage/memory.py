from __future__ import annotations

import json
import os
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set

from usertokens.logging import get_logger
from usertokens.storage.common import as_utc, canonical_id
from usertokens.storage.errors import ConstraintViolation, DuplicateToken, UnknownUser
from usertokens.storage.models import TokenRecord, User, utcnow


class MemoryStore:
    """In-process token store and user registry.

    Writers hold ``_data_lock`` for each whole check-then-mutate unit, so an
    insert for a user and that user's deletion can never interleave. Readers
    (``lookup``, ``user_exists``) never take the lock: they do single dict
    reads and filter out records whose owner is already gone, which is what
    makes the cascade atomic from a reader's point of view.

    When ``state_root`` is given the full state is snapshotted to
    ``state/token_store.json`` after every mutation and reloaded on start. A
    mutation whose snapshot cannot be written is undone in memory before the
    error propagates, so the process never holds state the disk lacks.
    Each snapshot rewrites the whole ``issued`` ledger, which is never
    pruned, so write cost grows with the number of tokens ever issued; the
    snapshot suits development and single-node deployments, not high issue
    volumes.
    """

    def __init__(self, state_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.tokens: Dict[str, TokenRecord] = {}
        self.user_tokens: Dict[str, Set[str]] = {}
        # Every token id ever inserted; never pruned so ids are not reused
        self.issued: Set[str] = set()
        self._data_lock = threading.RLock()
        self.state_root = Path(state_root) if state_root else None
        if self.state_root is not None:
            self.state_root.mkdir(parents=True, exist_ok=True)
            if self._load_state():
                self.logger.info(
                    "memory_store_state_loaded",
                    users=len(self.users),
                    tokens=len(self.tokens),
                )

    def _state_path(self) -> Path:
        state_dir = self.state_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "token_store.json"

    # user registry
    def create_user(self, user_id: Optional[str] = None) -> User:
        if user_id is None:
            uid = str(uuid.uuid4())
        else:
            uid = canonical_id(user_id)
            if uid is None:
                raise ValueError("user id must be a UUID")
        with self._data_lock:
            if uid in self.users:
                raise ConstraintViolation("user already exists", {"user_id": uid})
            user = User(id=uid)
            self.users[uid] = user
            self._persist_or_undo(lambda: self.users.pop(uid, None))
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        uid = canonical_id(user_id)
        return self.users.get(uid) if uid else None

    def user_exists(self, user_id: str) -> bool:
        return self.get_user(user_id) is not None

    def delete_user(self, user_id: str) -> bool:
        uid = canonical_id(user_id)
        if uid is None:
            return False
        with self._data_lock:
            user = self.users.pop(uid, None)
            if user is None:
                return False
            # The user goes first: lookups reject tokens whose owner is missing
            removed = self._drop_user_tokens(uid)

            def undo() -> None:
                self._restore_records(removed)
                self.users[uid] = user

            self._persist_or_undo(undo)
        self.logger.info("user_deleted", user_id=uid, tokens_removed=len(removed))
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
        with self._data_lock:
            if uid is None or uid not in self.users:
                raise UnknownUser(str(user_id))
            if tok in self.issued:
                raise DuplicateToken({"user_id": uid})
            record = TokenRecord(
                token=tok,
                user_id=uid,
                created_at=utcnow(),
                expires_at=as_utc(expires_at),
            )
            self.issued.add(tok)
            self._restore_records([record])

            def undo() -> None:
                self._remove_record(tok)
                self.issued.discard(tok)

            self._persist_or_undo(undo)
            return record

    def lookup(self, token: str) -> Optional[str]:
        tok = canonical_id(token)
        if tok is None:
            return None
        record = self.tokens.get(tok)
        if record is None or record.user_id not in self.users:
            return None
        if record.is_expired():
            return None
        return record.user_id

    def delete(self, token: str) -> None:
        tok = canonical_id(token)
        if tok is None:
            return
        with self._data_lock:
            record = self._remove_record(tok)
            if record is None:
                return
            self._persist_or_undo(lambda: self._restore_records([record]))

    def delete_all_for_user(self, user_id: str) -> int:
        uid = canonical_id(user_id)
        if uid is None:
            return 0
        with self._data_lock:
            removed = self._drop_user_tokens(uid)
            if removed:
                self._persist_or_undo(lambda: self._restore_records(removed))
            return len(removed)

    def on_user_deleted(self, user_id: str) -> int:
        """Cascade hook: drop every token of ``user_id``.

        ``delete_user`` runs the same removal while still holding the writer
        lock it used to remove the user, so both steps form one unit. The
        lock is re-entrant, so a registry calling the hook under its own
        acquisition of ``_data_lock`` gets the same guarantee.
        """
        return self.delete_all_for_user(user_id)

    def purge_expired(self) -> int:
        now = utcnow()
        with self._data_lock:
            expired = [tok for tok, rec in self.tokens.items() if rec.is_expired(now)]
            purged = [self._remove_record(tok) for tok in expired]
            if purged:
                self._persist_or_undo(lambda: self._restore_records(purged))
            return len(purged)

    def _remove_record(self, tok: str) -> Optional[TokenRecord]:
        record = self.tokens.pop(tok, None)
        if record is None:
            return None
        owned = self.user_tokens.get(record.user_id)
        if owned is not None:
            owned.discard(tok)
            if not owned:
                self.user_tokens.pop(record.user_id, None)
        return record

    def _restore_records(self, records: Iterable[TokenRecord]) -> None:
        for record in records:
            self.user_tokens.setdefault(record.user_id, set()).add(record.token)
            self.tokens[record.token] = record

    def _drop_user_tokens(self, uid: str) -> List[TokenRecord]:
        removed = []
        for tok in self.user_tokens.pop(uid, set()):
            record = self.tokens.pop(tok, None)
            if record is not None:
                removed.append(record)
        return removed

    # snapshot
    def _persist_or_undo(self, undo: Callable[[], None]) -> None:
        """Persist the mutation just applied, or revert it and re-raise."""
        try:
            self._persist_state()
        except RuntimeError as exc:
            undo()
            self.logger.error("memory_store_persist_failed", error=str(exc))
            raise

    def _persist_state(self) -> None:
        if self.state_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "tokens": [self._serialize_token(t) for t in self.tokens.values()],
            "issued": list(self.issued),
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".json.tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist token store state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.tokens = {}
        self.user_tokens = {}
        self.issued = set(data.get("issued", []))
        for raw in data.get("tokens", []):
            record = self._deserialize_token(raw)
            self.issued.add(record.token)
            if record.user_id not in self.users:
                # Orphans cannot be observed anyway; drop them on load
                continue
            self.tokens[record.token] = record
            self.user_tokens.setdefault(record.user_id, set()).add(record.token)
        return True

    @staticmethod
    def _serialize_user(user: User) -> dict:
        return {"id": user.id, "created_at": user.created_at.isoformat()}

    @staticmethod
    def _deserialize_user(data: dict) -> User:
        return User(
            id=str(data["id"]),
            created_at=as_utc(datetime.fromisoformat(data["created_at"])),
        )

    @staticmethod
    def _serialize_token(record: TokenRecord) -> dict:
        return {
            "token": record.token,
            "user_id": record.user_id,
            "created_at": record.created_at.isoformat(),
            "expires_at": record.expires_at.isoformat() if record.expires_at else None,
        }

    @staticmethod
    def _deserialize_token(data: dict) -> TokenRecord:
        raw_expiry = data.get("expires_at")
        return TokenRecord(
            token=str(data["token"]),
            user_id=str(data["user_id"]),
            created_at=as_utc(datetime.fromisoformat(data["created_at"])),
            expires_at=as_utc(datetime.fromisoformat(raw_expiry)) if raw_expiry else None,
        )
