"""Tests for match persistence and the derived indexes."""

import pytest

from xomatch.cache import RepositoryCache
from xomatch.repository import LEADERBOARD_KEY, PENDING_MATCHES_KEY, LockPool, MatchRepository
from xomatch.schema import SchemaError, create_match_schema


def _pending(match_id="m1", player1=100, **extra):
    return create_match_schema({"matchId": match_id, "player1Fid": player1, **extra})


def _activate(match, player2=200):
    return {**match, "player2Fid": player2, "status": "active", "player1Symbol": "X", "player2Symbol": "O"}


def _finish(match, winner="X"):
    return {**match, "status": "finished", "gameState": {**match["gameState"], "finished": True, "winner": winner}}


def test_save_and_get(repository, store):
    saved = repository.save_match(_pending())
    assert repository.get_match("m1") == saved
    assert store.get("match:m1") == saved
    assert store.smembers("player_matches:100") == ["m1"]
    assert store.smembers(PENDING_MATCHES_KEY) == ["m1"]
    assert repository.get_match("missing") is None


def test_save_normalises_fids(repository, store):
    saved = repository.save_match(_activate(_pending(player1="100"), player2="V200"))
    assert saved["player1Fid"] == 100
    assert saved["player2Fid"] == 200
    assert store.smembers("player_matches:200") == ["m1"]


def test_invalid_record_is_not_written(repository, store):
    bad = _pending()
    bad["gameState"] = {"board": [None] * 3}
    with pytest.raises(SchemaError):
        repository.save_match(bad)
    assert store.get("match:m1") is None


def test_reserved_id_is_rejected(repository):
    with pytest.raises(SchemaError):
        repository.save_match(_pending(match_id="pending"))


def test_resave_without_change_leaves_indexes_alone(repository, store, clock):
    saved = repository.save_match(_pending())
    store.srem("player_matches:100", "m1")

    clock.advance(seconds=5)
    again = repository.save_match(saved)

    assert again["updatedAt"] != saved["updatedAt"]
    assert store.get("match:m1")["updatedAt"] == again["updatedAt"]
    assert store.smembers("player_matches:100") == []


def test_status_change_moves_match_between_indexes(repository, store):
    match = repository.save_match(_pending())
    repository.save_match(_activate(match))
    assert store.smembers(PENDING_MATCHES_KEY) == []
    assert store.smembers("player_active_matches:100") == ["m1"]
    assert store.smembers("player_active_matches:200") == ["m1"]


def test_active_matches_rebuilds_snapshot_on_miss(repository, store):
    repository.save_match(_activate(_pending()))
    assert store.get("player_active_matches_data:100") is None

    matches = repository.get_active_matches(100)

    assert [m["matchId"] for m in matches] == ["m1"]
    assert [m["matchId"] for m in store.get("player_active_matches_data:100")] == ["m1"]


def test_snapshot_is_patched_when_match_finishes(repository, store):
    active = repository.save_match(_activate(_pending()))
    repository.get_active_matches(100)

    repository.save_match(_finish(active))

    assert store.get("player_active_matches_data:100") == []
    assert store.smembers("player_active_matches:100") == []
    assert repository.get_active_matches(100) == []
    finished = repository.get_player_matches(100, include_finished=True)
    assert [m["status"] for m in finished] == ["finished"]


def test_player_index_falls_back_to_legacy_key(store, clock):
    repository = MatchRepository(store, RepositoryCache(), clock=clock)
    store.set("match:old", _activate(_pending(match_id="old")))
    store.sadd("player_matches:V100", "old")

    matches = repository.get_player_matches("V100", include_finished=True)
    assert [m["matchId"] for m in matches] == ["old"]


def test_available_matches_filters(repository):
    repository.save_match(_pending("mine", player1=100))
    repository.save_match(_pending("theirs", player1=300))
    repository.save_match(_pending("hidden", player1=400, visibility="private"))

    available = repository.get_available_matches(exclude_fid=100)
    assert [m["matchId"] for m in available] == ["theirs"]


def test_available_matches_scans_when_pending_index_empty(repository, store):
    repository.save_match(_pending("m1", player1=300))
    store.delete(PENDING_MATCHES_KEY)
    repository.cache.invalidate_namespace("pending_ids")
    repository.cache.invalidate_namespace("available")

    assert [m["matchId"] for m in repository.get_available_matches(100)] == ["m1"]


def test_count_open_matches_reads_through_cache(repository, store):
    repository.save_match(_pending("m1"))
    assert repository.count_open_matches(100) == 1
    # A write from another instance only shows up in the store.
    other = MatchRepository(store, RepositoryCache())
    other.save_match(_pending("m2"))
    assert repository.count_open_matches(100) == 2


def test_leaderboard_outcome_recorded_once(repository, store):
    finished = repository.save_match(_finish(_activate(_pending())))

    assert repository.record_leaderboard_outcome(finished)
    assert not repository.record_leaderboard_outcome(finished)

    assert store.hgetall(LEADERBOARD_KEY) == {"100:wins": 1, "200:losses": 1}


def test_leaderboard_ignores_unfinished_or_single_player(repository):
    pending = repository.save_match(_pending())
    assert not repository.record_leaderboard_outcome(pending)
    active = repository.save_match(_activate(pending))
    assert not repository.record_leaderboard_outcome(active)


def test_leaderboard_sorted_by_wins_then_draws(repository, store):
    store.hincrby(LEADERBOARD_KEY, "1:wins", 2)
    store.hincrby(LEADERBOARD_KEY, "2:wins", 2)
    store.hincrby(LEADERBOARD_KEY, "2:draws", 1)
    store.hincrby(LEADERBOARD_KEY, "3:wins", 5)
    store.hincrby(LEADERBOARD_KEY, "4:losses", 3)

    stats = repository.get_leaderboard_stats()

    assert [e["fid"] for e in stats] == [3, 2, 1, 4]
    assert stats[1] == {"fid": 2, "wins": 2, "losses": 0, "draws": 1}


def test_delete_scrubs_every_index(repository, store):
    repository.save_match(_activate(_pending()))
    repository.get_active_matches(100)

    assert repository.delete_match("m1")

    assert repository.get_match("m1") is None
    assert store.smembers("player_matches:100") == []
    assert store.smembers("player_matches:200") == []
    assert store.smembers("player_active_matches:100") == []
    assert store.get("player_active_matches_data:100") == []
    assert not repository.delete_match("m1")


def test_lock_pool_stays_fixed_size(repository):
    for i in range(2000):
        with repository.match_lock(f"m{i}"), repository.player_lock(i, i + 1):
            pass
    assert len(repository.match_locks) == 256
    assert len(repository.player_locks) == 256


def test_lock_pool_holds_colliding_keys_once():
    pool = LockPool(size=1)
    with pool.hold("a", "b", "a"):
        assert pool.slot("a") == pool.slot("b") == 0
    with pool.hold("a"):
        pass


def test_concurrent_saves_keep_shared_snapshot_consistent(paused_service, paused_store, spawn):
    service = paused_service
    service.create("m1", 100, rules={"firstMove": "X"})
    service.accept("m1", 200)
    service.create("m2", 100, rules={"firstMove": "X"})
    service.accept("m2", 300)
    service.repository.get_active_matches(100)
    assert isinstance(paused_store.get("player_active_matches_data:100"), list)

    # The first save reads the shared snapshot, then stalls before writing it back.
    paused_store.pause_on("player_active_matches_data:100")
    results = []
    first = spawn(results, service.move, "m1", 100, 0)
    assert paused_store.paused.wait(2)
    second = spawn(results, service.move, "m2", 100, 4)
    second.join(0.3)
    paused_store.resume.set()
    first.join(2)
    second.join(2)

    assert not [r for r in results if isinstance(r, Exception)]
    snapshot = {m["matchId"]: m for m in paused_store.get("player_active_matches_data:100")}
    assert snapshot["m1"]["gameState"] == paused_store.get("match:m1")["gameState"]
    assert snapshot["m2"]["gameState"] == paused_store.get("match:m2")["gameState"]
    assert snapshot["m2"]["gameState"]["board"][4] == "X"
