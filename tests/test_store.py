"""Tests for the rate-limit key-value stores."""

import json
from unittest.mock import MagicMock

from edge_gateway.store import MemoryStore, RedisStore


class TestMemoryStore:
    def test_get_missing_key(self, store):
        assert store.get("https://ratelimit/1.2.3.4") is None

    def test_put_then_get(self, store):
        store.put("k", {"count": 1, "timestamp": 5}, ttl_seconds=60)
        assert store.get("k") == {"count": 1, "timestamp": 5}

    def test_entries_expire_after_ttl(self, store, clock):
        store.put("k", {"count": 1}, ttl_seconds=60)
        clock.advance(59)
        assert store.get("k") is not None
        clock.advance(1)
        assert store.get("k") is None
        assert len(store) == 0

    def test_put_overwrites_and_resets_ttl(self, store, clock):
        store.put("k", {"count": 1}, ttl_seconds=60)
        clock.advance(50)
        store.put("k", {"count": 2}, ttl_seconds=60)
        clock.advance(50)
        assert store.get("k") == {"count": 2}

    def test_returned_records_are_copies(self, store):
        record = {"count": 1}
        store.put("k", record, ttl_seconds=60)
        record["count"] = 99
        fetched = store.get("k")
        fetched["count"] = 42
        assert store.get("k") == {"count": 1}

    def test_incr_creates_and_counts(self, store):
        assert store.incr("k", ttl_seconds=60) == 1
        assert store.incr("k", ttl_seconds=60) == 2
        assert store.incr("k", ttl_seconds=60) == 3

    def test_incr_keeps_original_expiry(self, store, clock):
        store.incr("k", ttl_seconds=60)
        clock.advance(40)
        store.incr("k", ttl_seconds=60)
        clock.advance(20)
        assert store.incr("k", ttl_seconds=60) == 1


class TestRedisStore:
    def test_get_decodes_json(self):
        client = MagicMock()
        client.get.return_value = json.dumps({"count": 2, "timestamp": 10})
        assert RedisStore(client).get("k") == {"count": 2, "timestamp": 10}
        client.get.assert_called_once_with("k")

    def test_get_missing_key(self):
        client = MagicMock()
        client.get.return_value = None
        assert RedisStore(client).get("k") is None

    def test_put_sets_json_with_ttl(self):
        client = MagicMock()
        RedisStore(client).put("k", {"count": 1, "timestamp": 10}, ttl_seconds=60)
        client.set.assert_called_once_with("k", '{"count": 1, "timestamp": 10}', ex=60)

    def test_incr_runs_in_one_transaction(self):
        client = MagicMock()
        pipe = client.pipeline.return_value
        pipe.execute.return_value = [None, 4]

        assert RedisStore(client).incr("k", ttl_seconds=60) == 4
        client.pipeline.assert_called_once_with(transaction=True)
        pipe.set.assert_called_once_with("k", 0, ex=60, nx=True)
        pipe.incr.assert_called_once_with("k")

    def test_from_url_builds_client(self):
        store = RedisStore.from_url("redis://localhost:6379/0")
        assert isinstance(store, RedisStore)
