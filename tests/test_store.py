"""Tests for the key-value store adapters."""

import logging

import fakeredis
import pytest
import redis

from xomatch.cache import RepositoryCache
from xomatch.config import Settings
from xomatch.repository import MatchRepository
from xomatch.schema import create_match_schema
from xomatch.store import FallbackStore, MemoryStore, RedisStore, create_store


class BrokenStore(MemoryStore):
    name = "broken"

    def __init__(self):
        super().__init__()
        self.calls = 0

    def get(self, key):
        self.calls += 1
        raise redis.ConnectionError("connection refused")

    def set(self, key, value):
        self.calls += 1
        raise redis.ConnectionError("connection refused")


def test_memory_store_values_are_copies():
    store = MemoryStore()
    record = {"board": [None] * 9}
    store.set("match:m1", record)
    record["board"][0] = "X"
    loaded = store.get("match:m1")
    assert loaded == {"board": [None] * 9}
    loaded["board"][1] = "O"
    assert store.get("match:m1") == {"board": [None] * 9}


def test_memory_store_sets_and_hashes():
    store = MemoryStore()
    assert store.sadd("s", "a", "b") == 2
    assert store.sadd("s", "a") == 0
    assert store.smembers("s") == ["a", "b"]
    assert store.srem("s", "a", "zzz") == 1
    assert store.smembers("s") == ["b"]

    assert store.hincrby("h", "100:wins", 1) == 1
    assert store.hincrby("h", "100:wins", 2) == 3
    assert store.hgetall("h") == {"100:wins": 3}

    store.set("match:m1", {})
    assert store.scan_keys("match:") == ["match:m1"]
    store.delete("s")
    assert store.smembers("s") == []


def test_fallback_degrades_once_and_stays_degraded(caplog):
    primary = BrokenStore()
    store = FallbackStore(primary, MemoryStore())
    assert store.name == "broken"

    with caplog.at_level(logging.WARNING, logger="xomatch.store"):
        store.set("match:m1", {"matchId": "m1"})
        assert store.get("match:m1") == {"matchId": "m1"}

    assert store.degraded
    assert store.name == "memory"
    assert primary.calls == 1
    assert len([r for r in caplog.records if "fallback" in r.getMessage()]) == 1


def test_fallback_uses_primary_while_healthy():
    primary = MemoryStore()
    store = FallbackStore(primary, MemoryStore())
    store.set("k", 1)
    assert primary.get("k") == 1
    assert not store.degraded


def test_create_store_follows_settings():
    assert isinstance(create_store(Settings()), MemoryStore)
    store = create_store(Settings(kv_url="redis://localhost:6379/0"))
    assert isinstance(store, FallbackStore)
    assert isinstance(store.primary, RedisStore)


@pytest.fixture(params=["memory", "redis"])
def any_store(request):
    if request.param == "memory":
        return MemoryStore()
    return RedisStore(fakeredis.FakeRedis(decode_responses=True))


def test_values_round_trip_as_json(any_store):
    record = {"matchId": "m1", "board": [None, "X"], "turn": 1, "finished": False}
    any_store.set("match:m1", record)
    assert any_store.get("match:m1") == record
    assert any_store.get("match:missing") is None

    any_store.delete("match:m1")
    assert any_store.get("match:m1") is None


def test_set_operations_report_changes(any_store):
    assert any_store.sadd("player_matches:100", "m2", "m1") == 2
    assert any_store.sadd("player_matches:100", "m1") == 0
    assert any_store.sadd("player_matches:100") == 0
    assert any_store.smembers("player_matches:100") == ["m1", "m2"]

    assert any_store.srem("player_matches:100", "m1", "m9") == 1
    assert any_store.srem("player_matches:100") == 0
    assert any_store.smembers("player_matches:100") == ["m2"]
    assert any_store.smembers("player_matches:999") == []


def test_hash_counters_are_ints(any_store):
    assert any_store.hincrby("leaderboard_stats", "100:wins", 1) == 1
    assert any_store.hincrby("leaderboard_stats", "100:wins", 2) == 3
    any_store.hincrby("leaderboard_stats", "200:losses", 1)
    assert any_store.hgetall("leaderboard_stats") == {"100:wins": 3, "200:losses": 1}
    assert any_store.hgetall("missing") == {}


def test_scan_keys_matches_prefix(any_store):
    any_store.set("match:m1", {})
    any_store.set("match:m2", {})
    any_store.sadd("match:pending", "m3")
    any_store.set("player_active_matches_data:100", [])
    assert any_store.scan_keys("match:") == ["match:m1", "match:m2", "match:pending"]
    assert any_store.scan_keys("nothing:") == []


def test_repository_runs_on_redis_store(clock):
    store = RedisStore(fakeredis.FakeRedis(decode_responses=True))
    repository = MatchRepository(store, RepositoryCache(), clock=clock)

    saved = repository.save_match(create_match_schema({"matchId": "m1", "player1Fid": 100}))

    assert store.get("match:m1") == saved
    assert store.smembers("player_matches:100") == ["m1"]
    assert store.smembers("match:pending") == ["m1"]
    assert [m["matchId"] for m in repository.get_active_matches(100)] == ["m1"]
    assert [m["matchId"] for m in repository.get_available_matches(exclude_fid=200)] == ["m1"]
