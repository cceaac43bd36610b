"""Unit tests for RedisStore with a mocked client.

Script return codes are mapped to storage errors; the Lua bodies themselves
run only against a real server.
"""

import uuid
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from usertokens.storage.errors import ConstraintViolation, DuplicateToken, UnknownUser
from usertokens.storage.models import utcnow
from usertokens.storage.redis_store import RedisStore


@pytest.fixture
def client():
    mock = MagicMock()
    mock.register_script.side_effect = lambda source: MagicMock(name="script")
    return mock


@pytest.fixture
def store(client):
    return RedisStore("redis://localhost:6379/0", prefix="t", client=client)


class TestScriptRegistration:
    def test_all_scripts_registered(self, client, store):
        sources = [call.args[0] for call in client.register_script.call_args_list]

        assert sources == [
            RedisStore._INSERT_SCRIPT,
            RedisStore._DELETE_TOKEN_SCRIPT,
            RedisStore._DELETE_USER_TOKENS_SCRIPT,
            RedisStore._DELETE_USER_SCRIPT,
            RedisStore._PRUNE_INDEX_SCRIPT,
            RedisStore._LOOKUP_SCRIPT,
        ]


class TestInsert:
    def test_success_passes_all_keys(self, store):
        uid = str(uuid.uuid4())
        tok = str(uuid.uuid4())
        store._insert.return_value = 1

        record = store.insert(tok, uid)

        store._insert.assert_called_once_with(
            keys=[f"t:user:{uid}", f"t:token:{tok}", f"t:user_tokens:{uid}", "t:issued"],
            args=[tok, uid, 0],
        )
        assert record.token == tok
        assert record.user_id == uid

    def test_unknown_user(self, store):
        store._insert.return_value = -1

        with pytest.raises(UnknownUser):
            store.insert(str(uuid.uuid4()), str(uuid.uuid4()))

    def test_duplicate_token(self, store):
        store._insert.return_value = -2

        with pytest.raises(DuplicateToken):
            store.insert(str(uuid.uuid4()), str(uuid.uuid4()))

    def test_expiry_becomes_millisecond_ttl(self, store):
        store._insert.return_value = 1

        store.insert(
            str(uuid.uuid4()), str(uuid.uuid4()), expires_at=utcnow() + timedelta(minutes=1)
        )

        ttl_ms = store._insert.call_args.kwargs["args"][2]
        assert 55_000 < ttl_ms <= 60_000

    def test_past_expiry_still_positive(self, store):
        store._insert.return_value = 1

        store.insert(
            str(uuid.uuid4()), str(uuid.uuid4()), expires_at=utcnow() - timedelta(minutes=1)
        )

        assert store._insert.call_args.kwargs["args"][2] == 1

    def test_malformed_user_never_reaches_redis(self, store):
        with pytest.raises(UnknownUser):
            store.insert(str(uuid.uuid4()), "bob")

        store._insert.assert_not_called()


class TestLookupAndDelete:
    def test_lookup_checks_owner_in_script(self, store):
        tok = str(uuid.uuid4())
        store._lookup.return_value = "owner-id"

        assert store.lookup(tok.upper()) == "owner-id"
        store._lookup.assert_called_once_with(keys=[f"t:token:{tok}"], args=["t:user:"])

    def test_lookup_malformed(self, store):
        assert store.lookup("junk") is None
        store._lookup.assert_not_called()

    def test_delete_runs_script(self, store):
        tok = str(uuid.uuid4())

        store.delete(tok)

        store._delete_token.assert_called_once_with(
            keys=[f"t:token:{tok}"], args=[tok, "t:user_tokens:"]
        )

    def test_delete_all_for_user_returns_count(self, store):
        uid = str(uuid.uuid4())
        store._delete_user_tokens.return_value = 4

        assert store.delete_all_for_user(uid) == 4
        store._delete_user_tokens.assert_called_once_with(
            keys=[f"t:user_tokens:{uid}"], args=["t:token:"]
        )


class TestUsers:
    def test_create_user_uses_nx(self, client, store):
        client.set.return_value = True

        user = store.create_user()

        key, value = client.set.call_args.args
        assert key == f"t:user:{user.id}"
        assert value == user.created_at.isoformat()
        assert client.set.call_args.kwargs == {"nx": True}

    def test_create_existing_user(self, client, store):
        client.set.return_value = None

        with pytest.raises(ConstraintViolation):
            store.create_user(str(uuid.uuid4()))

    def test_get_user_parses_timestamp(self, client, store):
        created = utcnow()
        client.get.return_value = created.isoformat()
        uid = str(uuid.uuid4())

        user = store.get_user(uid)

        assert user.id == uid
        assert user.created_at == created

    def test_delete_user_cascades_in_one_script(self, store):
        uid = str(uuid.uuid4())
        store._delete_user.return_value = [1, 2]

        assert store.delete_user(uid) is True
        store._delete_user.assert_called_once_with(
            keys=[f"t:user:{uid}", f"t:user_tokens:{uid}"], args=["t:token:"]
        )

    def test_delete_missing_user(self, store):
        store._delete_user.return_value = [0, 0]

        assert store.delete_user(str(uuid.uuid4())) is False

    def test_cascade_hook_uses_user_delete_script(self, store):
        uid = str(uuid.uuid4())
        store._delete_user.return_value = [0, 3]

        assert store.on_user_deleted(uid) == 3
        store._delete_user.assert_called_once_with(
            keys=[f"t:user:{uid}", f"t:user_tokens:{uid}"], args=["t:token:"]
        )
        store._delete_user_tokens.assert_not_called()


def test_purge_expired_prunes_every_index(client, store):
    client.scan_iter.return_value = iter(["t:user_tokens:a", "t:user_tokens:b"])
    store._prune_index.side_effect = [2, 1]

    assert store.purge_expired() == 3
    client.scan_iter.assert_called_once_with(match="t:user_tokens:*")
