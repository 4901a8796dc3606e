"""Unit tests for iam/state.py -- OAuth state backends.

The in-memory backend is exercised directly. The Redis backend runs against
a MagicMock client so no server is needed; the tests assert the commands
issued and the error translation.
"""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import pytest
import redis

from core.config import Settings
from iam.errors import InternalError, ValidationError
from iam.state import InMemoryStateStore, RedisStateStore, create_state_store


class TestInMemoryStateStore:
    def test_generate_state_is_64_hex_chars(self):
        store = InMemoryStateStore()
        state = store.generate_state()
        assert len(state) == 64
        int(state, 16)
        assert state != store.generate_state()

    def test_store_then_consume_once(self):
        store = InMemoryStateStore()
        store.store_state("s1", {"provider": "GOOGLE", "invitation_token": "inv"})
        assert store.validate_state("s1")
        assert store.get_state_data("s1") == {"provider": "GOOGLE", "invitation_token": "inv"}
        assert not store.validate_state("s1")
        with pytest.raises(ValidationError) as exc_info:
            store.get_state_data("s1")
        assert exc_info.value.code == "invalid_state"

    def test_unknown_state_rejected(self):
        with pytest.raises(ValidationError):
            InMemoryStateStore().get_state_data("never-stored")

    def test_expired_state_rejected_and_purged(self):
        store = InMemoryStateStore(ttl_seconds=60)
        with patch("iam.state.time.monotonic", return_value=1000.0):
            store.store_state("old", {"provider": "GOOGLE"})
            store.store_state("old2", {"provider": "GOOGLE"})
        with patch("iam.state.time.monotonic", return_value=1061.0):
            assert not store.validate_state("old")
            with pytest.raises(ValidationError):
                store.get_state_data("old")
            assert store.purge_expired() == 1
        assert not store.validate_state("old2")

    def test_stored_payload_is_copied(self):
        store = InMemoryStateStore()
        payload = {"provider": "GOOGLE"}
        store.store_state("s", payload)
        payload["provider"] = "MICROSOFT"
        assert store.get_state_data("s")["provider"] == "GOOGLE"


class TestRedisStateStore:
    def test_store_uses_prefixed_key_and_ttl(self):
        client = MagicMock()
        RedisStateStore(client, ttl_seconds=300).store_state("abc", {"provider": "GOOGLE"})
        client.set.assert_called_once_with("oauth_state:abc", json.dumps({"provider": "GOOGLE"}), ex=300)

    def test_get_is_atomic_getdel(self):
        client = MagicMock()
        client.getdel.return_value = json.dumps({"provider": "MICROSOFT"})
        assert RedisStateStore(client).get_state_data("abc") == {"provider": "MICROSOFT"}
        client.getdel.assert_called_once_with("oauth_state:abc")

    def test_missing_key_is_invalid_state(self):
        client = MagicMock()
        client.getdel.return_value = None
        with pytest.raises(ValidationError):
            RedisStateStore(client).get_state_data("abc")

    def test_corrupt_payload_is_invalid_state(self):
        client = MagicMock()
        client.getdel.return_value = "not json"
        with pytest.raises(ValidationError):
            RedisStateStore(client).get_state_data("abc")
        client.getdel.return_value = json.dumps(["list"])
        with pytest.raises(ValidationError):
            RedisStateStore(client).get_state_data("abc")

    def test_validate_uses_exists(self):
        client = MagicMock()
        client.exists.return_value = 1
        assert RedisStateStore(client).validate_state("abc")
        client.exists.return_value = 0
        assert not RedisStateStore(client).validate_state("abc")

    def test_redis_failure_is_internal_error(self):
        client = MagicMock()
        client.set.side_effect = redis.ConnectionError("down")
        with pytest.raises(InternalError) as exc_info:
            RedisStateStore(client).store_state("abc", {})
        assert exc_info.value.code == "state_store_error"
        assert isinstance(exc_info.value.cause, redis.ConnectionError)


class TestFactory:
    def test_memory_backend_by_default(self):
        store = create_state_store(Settings(debug=True, state_ttl_seconds=42))
        assert isinstance(store, InMemoryStateStore)
        assert store.ttl == 42

    def test_redis_backend(self):
        with patch("iam.state.redis.from_url") as from_url:
            store = create_state_store(Settings(debug=True, state_store_backend="redis", redis_url="redis://r:6379/1"))
        assert isinstance(store, RedisStateStore)
        assert from_url.call_args.args[0] == "redis://r:6379/1"
        assert from_url.call_args.kwargs["decode_responses"] is True

    def test_unknown_backend_rejected(self):
        with pytest.raises(ValueError):
            Settings(debug=True, state_store_backend="memcached")
