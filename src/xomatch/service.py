"""Match lifecycle: the state transitions behind each HTTP endpoint.

    create()           accept()            move() -> line or full board
    ------> PENDING -------------> ACTIVE ---------------------------> FINISHED
                                     |                                    ^
                                     +---- turnTimeout elapsed -----------+

``finished`` is a sink. Timeouts are evaluated lazily, whenever ``move``,
``get`` or ``check_timeouts`` touches an active match.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .config import Settings
from .errors import (
    MatchExists,
    MatchLimitReached,
    MatchNotFound,
    NotAPlayer,
    RequestInvalid,
    StateConflict,
    TurnTimedOut,
)
from .fids import normalize_match_id, to_canonical_fid
from .game import GameState, InvalidMove, Player, apply_move, other_symbol
from .repository import RESERVED_MATCH_IDS, MatchRepository
from .schema import (
    DEFAULT_RULES,
    FIRST_MOVE_CHOICES,
    OPEN_STATUSES,
    VISIBILITIES,
    EndReason,
    MatchStatus,
    format_timestamp,
    is_expired,
    is_over,
    is_participant,
    recency_key,
    symbol_for,
    utcnow,
)

logger = logging.getLogger(__name__)


class MatchService:
    def __init__(
        self,
        repository: MatchRepository,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.settings = settings or Settings()
        self._clock = clock

    # ---- transitions ----

    def create(
        self,
        match_id: Any,
        player1_fid: Any,
        rules: Optional[Mapping[str, Any]] = None,
        visibility: str = "public",
    ) -> Dict[str, Any]:
        match_id = _require_match_id(match_id)
        if match_id in RESERVED_MATCH_IDS:
            raise RequestInvalid(f"matchId {match_id!r} is reserved")
        player1 = _require_fid(player1_fid, "player1Fid")
        rules = _normalize_rules(rules)
        if visibility not in VISIBILITIES:
            raise RequestInvalid(f"visibility must be one of {', '.join(VISIBILITIES)}")

        with self.repository.match_lock(match_id), self.repository.player_lock(player1):
            if self.repository.get_match(match_id, fresh=True) is not None:
                raise MatchExists("Match already exists")
            self._check_open_limit(player1)

            now = format_timestamp(self._clock())
            match = self.repository.save_match(
                {
                    "matchId": match_id,
                    "player1Fid": player1,
                    "player2Fid": None,
                    "status": MatchStatus.PENDING.value,
                    "rules": rules,
                    "gameState": GameState.initial().to_dict(),
                    "player1Symbol": None,
                    "player2Symbol": None,
                    "lastMoveAt": now,
                    "createdAt": now,
                    "turnTimeout": self.settings.turn_timeout_ms,
                    "visibility": visibility,
                }
            )
        logger.info("Match %s created by FID %s (%s)", match_id, player1, visibility)
        return match

    def accept(self, match_id: Any, player2_fid: Any) -> Dict[str, Any]:
        match_id = _require_match_id(match_id)
        player2 = _require_fid(player2_fid, "player2Fid")

        with self.repository.match_lock(match_id):
            match = self._load(match_id, fresh=True)
            if match["status"] != MatchStatus.PENDING.value:
                raise StateConflict(
                    f"Match is not pending (status: {match['status']})", reason="not_pending"
                )
            if to_canonical_fid(match["player1Fid"]) == player2:
                raise StateConflict("Cannot accept your own match", reason="self_accept")

            with self.repository.player_lock(player2):
                self._check_open_limit(player2)
                player1_symbol, player2_symbol = _assign_symbols(match.get("rules"))
                now = format_timestamp(self._clock())
                accepted = self.repository.save_match(
                    {
                        **match,
                        "player2Fid": player2,
                        "status": MatchStatus.ACTIVE.value,
                        "player1Symbol": player1_symbol,
                        "player2Symbol": player2_symbol,
                        # Player 1 always opens; the rule only picks their symbol.
                        "gameState": {**match["gameState"], "next": player1_symbol},
                        "lastMoveAt": now,
                    }
                )
        logger.info("Match %s accepted by FID %s", match_id, player2)
        return accepted

    def move(self, match_id: Any, player_fid: Any, cell_index: Any) -> Dict[str, Any]:
        match_id = _require_match_id(match_id)
        player = _require_fid(player_fid, "playerFid")
        if cell_index is None or isinstance(cell_index, bool) or not isinstance(cell_index, int):
            raise RequestInvalid("cellIndex must be an integer between 0 and 8")

        with self.repository.match_lock(match_id):
            match = self._load(match_id, fresh=True)
            if is_over(match):
                raise StateConflict("Match is already finished", reason="finished")
            if match["status"] != MatchStatus.ACTIVE.value:
                raise StateConflict(
                    f"Match is not active (status: {match['status']})", reason="not_active"
                )
            if not is_participant(match, player):
                raise NotAPlayer("Player is not part of this match")

            state = GameState.from_dict(match["gameState"])
            if state.next != symbol_for(match, player):
                raise StateConflict("Not your turn", reason="not_your_turn")

            now = self._clock()
            if is_expired(match, now):
                finished = self._finish_by_timeout(match)
                raise TurnTimedOut("Turn timeout - opponent wins", match=finished)

            try:
                next_state = apply_move(state, cell_index)
            except InvalidMove as exc:
                raise StateConflict(str(exc), reason=exc.reason) from exc

            end_reason = None
            if next_state.finished:
                end_reason = EndReason.LINE.value if next_state.winner else EndReason.DRAW.value
            updated = self.repository.save_match(
                {
                    **match,
                    "gameState": next_state.to_dict(),
                    "status": MatchStatus.FINISHED.value if next_state.finished else MatchStatus.ACTIVE.value,
                    "lastMoveAt": format_timestamp(now),
                    "endReason": end_reason,
                }
            )
            if next_state.finished:
                self.repository.record_leaderboard_outcome(updated)

        logger.debug("FID %s played cell %s in match %s", player, cell_index, match_id)
        return updated

    def check_timeouts(self, fid: Any) -> Dict[str, Any]:
        player = _require_fid(fid, "fid")
        now = self._clock()
        active = [
            m
            for m in self.repository.get_player_matches(player)
            if m.get("status") == MatchStatus.ACTIVE.value
        ]

        timed_out: List[Dict[str, Any]] = []
        for match in active:
            if not is_expired(match, now):
                continue
            with self.repository.match_lock(match["matchId"]):
                current = self.repository.get_match(match["matchId"], fresh=True)
                if current is not None and is_expired(current, now):
                    timed_out.append(self._finish_by_timeout(current))

        if timed_out:
            logger.info("Timed out %d of %d active matches for FID %s", len(timed_out), len(active), player)
        return {"checked": len(active), "timeouts": len(timed_out), "matches": timed_out}

    # ---- reads ----

    def get(self, match_id: Any) -> Dict[str, Any]:
        match_id = _require_match_id(match_id)
        match = self._load(match_id)
        if is_expired(match, self._clock()):
            with self.repository.match_lock(match_id):
                match = self._load(match_id, fresh=True)
                if is_expired(match, self._clock()):
                    match = self._finish_by_timeout(match)
        return match

    def list_matches(self, fid: Any) -> List[Dict[str, Any]]:
        """The player's open matches plus public matches they could accept."""

        player = _require_fid(fid, "fid")
        merged: Dict[str, Dict[str, Any]] = {}
        for match in self.repository.get_player_matches(player):
            merged.setdefault(match["matchId"], match)
        for match in self.repository.get_available_matches(exclude_fid=player):
            merged.setdefault(match["matchId"], match)

        matches = [m for m in merged.values() if m.get("status") in OPEN_STATUSES]
        matches.sort(key=recency_key, reverse=True)
        return matches

    def leaderboard(self) -> Dict[str, Any]:
        return {"leaderboard": self.repository.get_leaderboard_stats()}

    # ---- helpers ----

    def _load(self, match_id: str, fresh: bool = False) -> Dict[str, Any]:
        match = self.repository.get_match(match_id, fresh=fresh)
        if match is None:
            raise MatchNotFound("Match not found")
        return match

    def _check_open_limit(self, fid: int) -> None:
        limit = self.settings.max_open_matches
        open_count = self.repository.count_open_matches(fid)
        if open_count >= limit:
            raise MatchLimitReached(
                f"Player {fid} already has {open_count} open matches (limit {limit})"
            )

    def _finish_by_timeout(self, match: Mapping[str, Any]) -> Dict[str, Any]:
        """Finish ``match`` in favour of the player who was not on the move."""

        delinquent: Player = match["gameState"]["next"]
        finished = self.repository.save_match(
            {
                **match,
                "status": MatchStatus.FINISHED.value,
                "gameState": {
                    **match["gameState"],
                    "finished": True,
                    "winner": other_symbol(delinquent),
                    "winLine": None,
                },
                "endReason": EndReason.TIMEOUT.value,
            }
        )
        self.repository.record_leaderboard_outcome(finished)
        logger.info("Match %s timed out; %s forfeits", match["matchId"], delinquent)
        return finished


def _require_match_id(value: Any) -> str:
    match_id = normalize_match_id(value)
    if not match_id:
        raise RequestInvalid("matchId is required")
    return match_id


def _require_fid(value: Any, field: str) -> int:
    if value is None or value == "":
        raise RequestInvalid(f"{field} is required")
    fid = to_canonical_fid(value)
    if fid is None:
        raise RequestInvalid(f"{field} must be a valid number")
    return fid


def _normalize_rules(rules: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    if not rules:
        return dict(DEFAULT_RULES)
    first_move = rules.get("firstMove", DEFAULT_RULES["firstMove"])
    if first_move not in FIRST_MOVE_CHOICES:
        raise RequestInvalid(f"rules.firstMove must be one of {', '.join(FIRST_MOVE_CHOICES)}")
    return {**rules, "firstMove": first_move}


def _assign_symbols(rules: Optional[Mapping[str, Any]]) -> Tuple[Player, Player]:
    first_move = (rules or {}).get("firstMove")
    if first_move == "O":
        return "O", "X"
    # "X" and "random" both give player 1 the X.
    return "X", "O"
