"""Client-side view of the match a player currently has open."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .client import MatchApiClient, MatchApiError
from .fids import to_canonical_fid
from .game import Player
from .schema import symbol_for

logger = logging.getLogger(__name__)


class MoveInProgress(RuntimeError):
    """Raised when a move is sent while the previous one is still outstanding."""


@dataclass
class SyncResult:
    match: Dict[str, Any]
    new_move: bool
    finished: bool
    turn_changed: bool


class MatchSession:
    """Tracks one match for one player and reports what changed on each sync."""

    def __init__(self, client: MatchApiClient, player_fid: Any) -> None:
        self.client = client
        self.player_fid = to_canonical_fid(player_fid)
        self.match_id: Optional[str] = None
        self.match: Optional[Dict[str, Any]] = None
        self._move_in_progress = False

    @property
    def move_in_progress(self) -> bool:
        return self._move_in_progress

    def clear(self) -> None:
        self.match_id = None
        self.match = None

    async def load(self, match_id: str) -> Dict[str, Any]:
        match = await self.client.get_match(match_id)
        self.match_id = match_id
        self.match = match
        return match

    async def sync(self) -> Optional[SyncResult]:
        """Refetch the match; ``None`` when there is nothing to track any more."""

        if self.match_id is None:
            return None
        try:
            match = await self.client.get_match(self.match_id)
        except MatchApiError as exc:
            if exc.not_found:
                logger.info("Match %s disappeared; clearing session", self.match_id)
                self.clear()
                return None
            raise

        previous = (self.match or {}).get("gameState", {})
        was_finished = bool(previous.get("finished"))
        was_my_turn = self.is_my_turn()
        old_turn = previous.get("turn", 0)

        self.match = match
        state = match["gameState"]
        return SyncResult(
            match=match,
            new_move=not was_finished and state["turn"] > old_turn,
            finished=not was_finished and bool(state["finished"]),
            turn_changed=was_my_turn != self.is_my_turn(),
        )

    async def move(self, cell_index: int) -> Dict[str, Any]:
        if self.match_id is None or self.player_fid is None:
            raise RuntimeError("No active match")
        if self._move_in_progress:
            raise MoveInProgress("A move is already being sent")

        self._move_in_progress = True
        try:
            match = await self.client.send_move(self.match_id, self.player_fid, cell_index)
        except MatchApiError as exc:
            # A timeout rejection still carries the finished match.
            if exc.match is not None:
                self.match = exc.match
            raise
        finally:
            self._move_in_progress = False
        self.match = match
        return match

    # ---------- Derived views ----------

    def my_symbol(self) -> Optional[Player]:
        if self.match is None or self.player_fid is None:
            return None
        return symbol_for(self.match, self.player_fid)

    def is_my_turn(self) -> bool:
        if self.match is None:
            return False
        state = self.match.get("gameState", {})
        symbol = self.my_symbol()
        return symbol is not None and state.get("next") == symbol and not state.get("finished")

    def opponent_fid(self) -> Optional[int]:
        if self.match is None or self.player_fid is None:
            return None
        if to_canonical_fid(self.match.get("player1Fid")) == self.player_fid:
            return to_canonical_fid(self.match.get("player2Fid"))
        return to_canonical_fid(self.match.get("player1Fid"))
