"""Match persistence plus the derived indexes kept next to each record.

The record stored under ``match:{matchId}`` is the source of truth. Everything
else (per-player sets, the active-match snapshot, the pending set, leaderboard
counters) is derived from it and maintained by :meth:`MatchRepository.save_match`.
None of the store writes are transactional; read paths repair what they can.
"""

from __future__ import annotations

import logging
import threading
from contextlib import ExitStack, contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Hashable, Iterable, Iterator, List, Mapping, Optional, Set

from .cache import RepositoryCache
from .fids import fid_cache_keys, normalize_match_id, to_canonical_fid
from .schema import (
    MatchStatus,
    SchemaError,
    TERMINAL_STATUSES,
    create_match_schema,
    format_timestamp,
    is_open,
    utcnow,
    validate_match_schema,
)
from .store import KeyValueStore

logger = logging.getLogger(__name__)

MATCH_PREFIX = "match:"
PENDING_MATCHES_KEY = f"{MATCH_PREFIX}pending"
PLAYER_MATCHES_PREFIX = "player_matches:"
PLAYER_ACTIVE_MATCHES_PREFIX = "player_active_matches:"
PLAYER_ACTIVE_DATA_PREFIX = "player_active_matches_data:"
LEADERBOARD_KEY = "leaderboard_stats"
LEADERBOARD_RECORDED_KEY = "leaderboard_recorded"
LEADERBOARD_FIELDS = ("wins", "losses", "draws")

# Match ids that would collide with index keys under the match prefix.
RESERVED_MATCH_IDS = frozenset({"pending"})


class LockPool:
    """A fixed set of locks; keys share a lock when they hash onto the same slot."""

    def __init__(self, size: int = 256) -> None:
        self._locks = [threading.Lock() for _ in range(size)]

    def __len__(self) -> int:
        return len(self._locks)

    def slot(self, key: Hashable) -> int:
        return hash(key) % len(self._locks)

    @contextmanager
    def hold(self, *keys: Hashable) -> Iterator[None]:
        """Acquire the locks for ``keys`` in slot order, each slot once."""

        slots = sorted({self.slot(k) for k in keys})
        with ExitStack() as stack:
            for index in slots:
                stack.enter_context(self._locks[index])
            yield


class MatchRepository:
    """CRUD for matches and the indexes derived from them."""

    def __init__(
        self,
        store: KeyValueStore,
        cache: Optional[RepositoryCache] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache or RepositoryCache()
        self._clock = clock
        # Always taken in this order: match, player, snapshot.
        self.match_locks = LockPool()
        self.player_locks = LockPool()
        self.snapshot_locks = LockPool()

    # ---- locking ----

    @contextmanager
    def player_lock(self, *fids: Any) -> Iterator[None]:
        """Serialise limit-check-then-write sequences for the given players.

        Locks are process local; they close the race between concurrent
        requests served by one instance only.
        """

        canonical = [f for f in (to_canonical_fid(x) for x in fids) if f is not None]
        with self.player_locks.hold(*canonical):
            yield

    @contextmanager
    def match_lock(self, match_id: str) -> Iterator[None]:
        with self.match_locks.hold(str(match_id)):
            yield

    # ---- records ----

    def get_match(self, match_id: Any, fresh: bool = False) -> Optional[Dict[str, Any]]:
        """Return the stored record or ``None``; ``fresh`` skips the record cache."""

        match_id = normalize_match_id(match_id)
        if not match_id or match_id in RESERVED_MATCH_IDS:
            return None
        if not fresh:
            cached = self.cache.get("match", match_id)
            if cached is not None:
                return cached
        record = self.store.get(_match_key(match_id))
        if record is None:
            return None
        if not isinstance(record, dict):
            logger.warning("Ignoring malformed record stored for match %s", match_id)
            return None
        self.cache.set("match", match_id, record)
        return record

    def save_match(self, match: Mapping[str, Any]) -> Dict[str, Any]:
        """Validate and persist ``match``, then bring the indexes up to date.

        Index writes only happen when the status, the second player or the
        game state changed since the stored version; saving an unmodified
        record just refreshes ``updatedAt``.
        """

        validate_match_schema(match)
        match_id = str(match["matchId"])
        if match_id in RESERVED_MATCH_IDS:
            raise SchemaError(f"matchId {match_id!r} is reserved", field="matchId")

        now = self._clock()
        record = create_match_schema(
            {
                **match,
                "matchId": match_id,
                "player1Fid": to_canonical_fid(match["player1Fid"]),
                "player2Fid": to_canonical_fid(match.get("player2Fid")),
                "updatedAt": format_timestamp(now),
            },
            now=now,
        )

        key = _match_key(match_id)
        previous = self.store.get(key)
        self.store.set(key, record)
        self.cache.set("match", match_id, record)

        if isinstance(previous, dict) and not _significant_change(previous, record):
            logger.debug("Match %s saved without significant changes; indexes untouched", match_id)
            return record

        self._update_indexes(record, previous if isinstance(previous, dict) else None)
        logger.debug(
            "Saved match %s (status=%s, player1=%s, player2=%s)",
            match_id,
            record["status"],
            record["player1Fid"],
            record["player2Fid"],
        )
        return record

    def delete_match(self, match_id: Any) -> bool:
        """Remove a match and scrub it from every index, legacy keys included."""

        match_id = normalize_match_id(match_id)
        if not match_id:
            return False
        match = self.store.get(_match_key(match_id))
        if not isinstance(match, dict):
            return False

        self.store.delete(_match_key(match_id))
        self.cache.invalidate("match", match_id)
        for raw in (match.get("player1Fid"), match.get("player2Fid")):
            if raw is None:
                continue
            for key in fid_cache_keys(raw):
                self.store.srem(f"{PLAYER_MATCHES_PREFIX}{key}", match_id)
                self.store.srem(f"{PLAYER_ACTIVE_MATCHES_PREFIX}{key}", match_id)
            canonical = to_canonical_fid(raw)
            if canonical is not None:
                self._update_active_snapshot(canonical, match, keep=False)
                self._invalidate_player_views(canonical)
        self.store.srem(PENDING_MATCHES_KEY, match_id)
        self._invalidate_shared_views()
        logger.info("Deleted match %s", match_id)
        return True

    # ---- player views ----

    def get_player_matches(self, fid: Any, include_finished: bool = False) -> List[Dict[str, Any]]:
        canonical = to_canonical_fid(fid)
        if canonical is None:
            logger.warning("get_player_matches called with invalid FID %r", fid)
            return []

        cache_key = (canonical, include_finished)
        cached = self.cache.get("player_results", cache_key)
        if cached is not None:
            return cached

        if include_finished:
            matches = self._hydrate(self._player_match_ids(fid, canonical))
        else:
            matches = self.get_active_matches(canonical)
        self.cache.set("player_results", cache_key, matches)
        return matches

    def get_active_matches(self, fid: Any) -> List[Dict[str, Any]]:
        """Return the player's open matches, repairing the snapshot on a miss.

        The denormalised snapshot answers the common case without a per-match
        lookup. When it is missing the active id index (or, if that is empty,
        the full player index) is resolved match by match, and the snapshot and
        active index are rewritten from the result as a side effect.
        """

        canonical = to_canonical_fid(fid)
        if canonical is None:
            return []

        snapshot = self._load_active_snapshot(canonical)
        if snapshot is not None:
            return [m for m in snapshot if is_open(m)]

        with self.snapshot_locks.hold(canonical):
            # Another request may have rebuilt it while this one waited.
            snapshot = self._load_active_snapshot(canonical)
            if snapshot is not None:
                return [m for m in snapshot if is_open(m)]

            ids = self._active_match_ids(canonical)
            source = "active index"
            if not ids:
                ids = self._player_match_ids(fid, canonical)
                source = "player index"
            matches = [m for m in self._hydrate(ids) if is_open(m)]
            self._repair_active_views(canonical, ids, matches)
        logger.info(
            "Rebuilt active-match snapshot for FID %s from %s (%d open of %d)",
            canonical,
            source,
            len(matches),
            len(ids),
        )
        return matches

    def count_open_matches(self, fid: Any) -> int:
        canonical = to_canonical_fid(fid)
        if canonical is None:
            return 0
        # Limit checks always read through to the store.
        self.cache.invalidate_player(canonical)
        return sum(1 for m in self.get_player_matches(canonical) if is_open(m))

    def get_available_matches(self, exclude_fid: Any = None) -> List[Dict[str, Any]]:
        """Public pending matches waiting for a second player."""

        exclude = to_canonical_fid(exclude_fid) if exclude_fid is not None else None
        cached = self.cache.get("available", exclude)
        if cached is not None:
            return cached

        pending_ids = self._pending_ids()
        if pending_ids:
            candidates = self._hydrate(pending_ids)
        else:
            logger.debug("Pending index is empty; scanning every match record")
            candidates = self._scan_matches()

        available = [
            m
            for m in candidates
            if m.get("status") == MatchStatus.PENDING.value
            and m.get("player2Fid") is None
            and m.get("visibility", "public") == "public"
            and (exclude is None or to_canonical_fid(m.get("player1Fid")) != exclude)
        ]
        self.cache.set("available", exclude, available)
        return available

    # ---- leaderboard ----

    def record_leaderboard_outcome(self, match: Mapping[str, Any]) -> bool:
        """Apply win/loss/draw counters for a finished two-player match.

        A match is scored at most once: its id is added to a persisted set
        before any counter moves. Returns ``True`` when counters were updated.
        """

        game_state = match.get("gameState") or {}
        if match.get("status") not in TERMINAL_STATUSES or not game_state.get("finished"):
            return False
        p1 = to_canonical_fid(match.get("player1Fid"))
        p2 = to_canonical_fid(match.get("player2Fid"))
        if p1 is None or p2 is None:
            return False

        winner = game_state.get("winner")
        if winner is None:
            deltas = [(p1, "draws"), (p2, "draws")]
        elif winner == match.get("player1Symbol"):
            deltas = [(p1, "wins"), (p2, "losses")]
        elif winner == match.get("player2Symbol"):
            deltas = [(p2, "wins"), (p1, "losses")]
        else:
            logger.warning("Match %s has winner %r matching neither player", match.get("matchId"), winner)
            return False

        if not self.store.sadd(LEADERBOARD_RECORDED_KEY, str(match["matchId"])):
            logger.debug("Leaderboard outcome for match %s already recorded", match.get("matchId"))
            return False
        for fid, field in deltas:
            self.store.hincrby(LEADERBOARD_KEY, f"{fid}:{field}", 1)
        logger.info("Recorded leaderboard outcome for match %s: %s", match.get("matchId"), deltas)
        return True

    def get_leaderboard_stats(self) -> List[Dict[str, int]]:
        stats: Dict[int, Dict[str, int]] = {}
        for key, value in self.store.hgetall(LEADERBOARD_KEY).items():
            fid_text, _, field = key.rpartition(":")
            fid = to_canonical_fid(fid_text)
            if fid is None or field not in LEADERBOARD_FIELDS:
                continue
            entry = stats.setdefault(fid, {"fid": fid, "wins": 0, "losses": 0, "draws": 0})
            entry[field] += int(value)
        return sorted(stats.values(), key=lambda e: (-e["wins"], -e["draws"], e["fid"]))

    # ---- index maintenance ----

    def _update_indexes(self, record: Dict[str, Any], previous: Optional[Dict[str, Any]]) -> None:
        match_id = record["matchId"]
        players = _players(record)
        departed = _players(previous) - players if previous else set()

        for fid in players:
            self.store.sadd(f"{PLAYER_MATCHES_PREFIX}{fid}", match_id)

        if record["status"] == MatchStatus.PENDING.value and record.get("player2Fid") is None:
            self.store.sadd(PENDING_MATCHES_KEY, match_id)
        else:
            self.store.srem(PENDING_MATCHES_KEY, match_id)

        keep = is_open(record)
        for fid in players:
            if keep:
                self.store.sadd(f"{PLAYER_ACTIVE_MATCHES_PREFIX}{fid}", match_id)
            else:
                self.store.srem(f"{PLAYER_ACTIVE_MATCHES_PREFIX}{fid}", match_id)
            self._update_active_snapshot(fid, record, keep=keep)
        for fid in departed:
            self.store.srem(f"{PLAYER_MATCHES_PREFIX}{fid}", match_id)
            self.store.srem(f"{PLAYER_ACTIVE_MATCHES_PREFIX}{fid}", match_id)
            self._update_active_snapshot(fid, record, keep=False)

        for fid in players | departed:
            self._invalidate_player_views(fid)
        self._invalidate_shared_views()

    def _update_active_snapshot(self, fid: int, record: Mapping[str, Any], keep: bool) -> None:
        key = f"{PLAYER_ACTIVE_DATA_PREFIX}{fid}"
        with self.snapshot_locks.hold(fid):
            snapshot = self.store.get(key)
            if not isinstance(snapshot, list):
                # Nothing to patch; the next read rebuilds it from the id index.
                return
            match_id = record["matchId"]
            updated = [m for m in snapshot if m.get("matchId") != match_id]
            if keep:
                updated.append(dict(record))
            self.store.set(key, updated)

    def _repair_active_views(self, fid: int, ids: Iterable[str], matches: List[Dict[str, Any]]) -> None:
        open_ids = {m["matchId"] for m in matches}
        stale = [i for i in ids if i not in open_ids]
        self.store.set(f"{PLAYER_ACTIVE_DATA_PREFIX}{fid}", matches)
        if open_ids:
            self.store.sadd(f"{PLAYER_ACTIVE_MATCHES_PREFIX}{fid}", *sorted(open_ids))
        if stale:
            self.store.srem(f"{PLAYER_ACTIVE_MATCHES_PREFIX}{fid}", *stale)
        self.cache.set("active_data", fid, matches)
        self.cache.set("active_index", fid, sorted(open_ids))

    def _invalidate_player_views(self, fid: int) -> None:
        self.cache.invalidate("player_index", fid)
        self.cache.invalidate("active_index", fid)
        self.cache.invalidate("active_data", fid)
        self.cache.invalidate("player_results", (fid, False))
        self.cache.invalidate("player_results", (fid, True))

    def _invalidate_shared_views(self) -> None:
        self.cache.invalidate("pending_ids", PENDING_MATCHES_KEY)
        self.cache.invalidate_namespace("available")

    # ---- reads behind the caches ----

    def _load_active_snapshot(self, fid: int) -> Optional[List[Dict[str, Any]]]:
        cached = self.cache.get("active_data", fid)
        if cached is not None:
            return cached
        snapshot = self.store.get(f"{PLAYER_ACTIVE_DATA_PREFIX}{fid}")
        if not isinstance(snapshot, list):
            return None
        self.cache.set("active_data", fid, snapshot)
        return snapshot

    def _active_match_ids(self, fid: int) -> List[str]:
        cached = self.cache.get("active_index", fid)
        if cached is not None:
            return cached
        ids = self.store.smembers(f"{PLAYER_ACTIVE_MATCHES_PREFIX}{fid}")
        self.cache.set("active_index", fid, ids)
        return ids

    def _player_match_ids(self, raw_fid: Any, fid: int) -> List[str]:
        cached = self.cache.get("player_index", fid)
        if cached is not None:
            return cached
        ids = self.store.smembers(f"{PLAYER_MATCHES_PREFIX}{fid}")
        if not ids:
            # Records written before FIDs were normalised used the raw spelling.
            for key in fid_cache_keys(raw_fid):
                if key != str(fid):
                    ids = self.store.smembers(f"{PLAYER_MATCHES_PREFIX}{key}")
                    if ids:
                        break
        self.cache.set("player_index", fid, ids)
        return ids

    def _pending_ids(self) -> List[str]:
        cached = self.cache.get("pending_ids", PENDING_MATCHES_KEY)
        if cached is not None:
            return cached
        ids = self.store.smembers(PENDING_MATCHES_KEY)
        self.cache.set("pending_ids", PENDING_MATCHES_KEY, ids)
        return ids

    def _hydrate(self, ids: Iterable[str]) -> List[Dict[str, Any]]:
        matches = []
        for match_id in ids:
            match = self.get_match(match_id)
            if match is None:
                logger.debug("Index references missing match %s", match_id)
                continue
            matches.append(match)
        return matches

    def _scan_matches(self) -> List[Dict[str, Any]]:
        matches = []
        for key in self.store.scan_keys(MATCH_PREFIX):
            if key == PENDING_MATCHES_KEY:
                continue
            match = self.get_match(key[len(MATCH_PREFIX):])
            if match is not None:
                matches.append(match)
        return matches


def _match_key(match_id: str) -> str:
    return f"{MATCH_PREFIX}{match_id}"


def _players(match: Optional[Mapping[str, Any]]) -> Set[int]:
    if not match:
        return set()
    found = (to_canonical_fid(match.get("player1Fid")), to_canonical_fid(match.get("player2Fid")))
    return {f for f in found if f is not None}


def _significant_change(previous: Mapping[str, Any], current: Mapping[str, Any]) -> bool:
    return (
        previous.get("status") != current.get("status")
        or to_canonical_fid(previous.get("player2Fid")) != to_canonical_fid(current.get("player2Fid"))
        or previous.get("gameState") != current.get("gameState")
    )
