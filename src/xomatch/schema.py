"""Match record shape, defaults and structural validation.

Matches travel through the store and the API as plain JSON dictionaries with
camelCase keys, exactly as the browser client reads them.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from .fids import to_canonical_fid
from .game import BOARD_SIZE, GameState, Player

SCHEMA_VERSION = "1.0.0"
TURN_TIMEOUT_MS = 5 * 60 * 1000
DEFAULT_RULES: Dict[str, str] = {"firstMove": "random"}
FIRST_MOVE_CHOICES = ("X", "O", "random")
VISIBILITIES = ("public", "private")


class MatchStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    FINISHED = "finished"
    # Written only by older deployments; read as a terminal status.
    TIMEOUT = "timeout"


class EndReason(str, Enum):
    LINE = "line"
    DRAW = "draw"
    TIMEOUT = "timeout"


OPEN_STATUSES = frozenset({MatchStatus.PENDING.value, MatchStatus.ACTIVE.value})
TERMINAL_STATUSES = frozenset({MatchStatus.FINISHED.value, MatchStatus.TIMEOUT.value})
STATUS_VALUES = frozenset(s.value for s in MatchStatus)


class SchemaError(ValueError):
    """A match record failed structural validation."""

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def create_match_schema(data: Mapping[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Return a complete match record built from ``data`` plus defaults."""

    stamp = format_timestamp(now or utcnow())
    game_state = data.get("gameState")
    if game_state is None:
        game_state = GameState.initial().to_dict()
    return {
        "schemaVersion": SCHEMA_VERSION,
        "matchId": data.get("matchId"),
        "player1Fid": data.get("player1Fid"),
        "player2Fid": data.get("player2Fid") or None,
        "status": _status_value(data.get("status")) or MatchStatus.PENDING.value,
        "gameState": dict(game_state),
        "player1Symbol": data.get("player1Symbol") or None,
        "player2Symbol": data.get("player2Symbol") or None,
        "lastMoveAt": data.get("lastMoveAt") or stamp,
        "updatedAt": data.get("updatedAt") or stamp,
        "createdAt": data.get("createdAt") or stamp,
        "rules": dict(data.get("rules") or DEFAULT_RULES),
        "turnTimeout": data.get("turnTimeout") or TURN_TIMEOUT_MS,
        "visibility": data.get("visibility") or "public",
        "endReason": data.get("endReason"),
    }


def validate_match_schema(match: Optional[Mapping[str, Any]]) -> None:
    """Raise :class:`SchemaError` if ``match`` is not a usable record."""

    if not match:
        raise SchemaError("Match data is required")
    if not match.get("matchId"):
        raise SchemaError("matchId is required", field="matchId")
    if match.get("player1Fid") in (None, ""):
        raise SchemaError("player1Fid is required", field="player1Fid")
    if to_canonical_fid(match.get("player1Fid")) is None:
        raise SchemaError("player1Fid must be a valid number", field="player1Fid")

    status = _status_value(match.get("status"))
    if status not in STATUS_VALUES:
        raise SchemaError(f"Invalid status: {match.get('status')}", field="status")

    game_state = match.get("gameState")
    board = game_state.get("board") if isinstance(game_state, Mapping) else None
    if not isinstance(board, list) or len(board) != BOARD_SIZE:
        raise SchemaError("Invalid gameState: board must have 9 cells", field="gameState.board")
    if any(cell not in (None, "X", "O") for cell in board):
        raise SchemaError("Invalid gameState: cells must be null, X or O", field="gameState.board")

    if match.get("player2Fid") is None and status != MatchStatus.PENDING.value:
        if status not in TERMINAL_STATUSES:
            raise SchemaError("player2Fid is required once a match leaves pending", field="player2Fid")

    s1, s2 = match.get("player1Symbol"), match.get("player2Symbol")
    if s1 and s2 and {s1, s2} != {"X", "O"}:
        raise SchemaError("player symbols must be X and O", field="player1Symbol")


def _status_value(status: Any) -> Optional[str]:
    if isinstance(status, MatchStatus):
        return status.value
    return status


# ---------- Record helpers ----------


def is_open(match: Mapping[str, Any]) -> bool:
    return match.get("status") in OPEN_STATUSES and not match.get("gameState", {}).get("finished")


def is_over(match: Mapping[str, Any]) -> bool:
    return match.get("status") in TERMINAL_STATUSES or bool(match.get("gameState", {}).get("finished"))


def symbol_for(match: Mapping[str, Any], fid: Any) -> Optional[Player]:
    canonical = to_canonical_fid(fid)
    if canonical is None:
        return None
    if to_canonical_fid(match.get("player1Fid")) == canonical:
        return match.get("player1Symbol")
    if to_canonical_fid(match.get("player2Fid")) == canonical:
        return match.get("player2Symbol")
    return None


def is_participant(match: Mapping[str, Any], fid: Any) -> bool:
    canonical = to_canonical_fid(fid)
    return canonical is not None and canonical in (
        to_canonical_fid(match.get("player1Fid")),
        to_canonical_fid(match.get("player2Fid")),
    )


def is_expired(match: Mapping[str, Any], now: datetime) -> bool:
    """True when an active match has sat on one turn for ``turnTimeout`` ms."""

    if match.get("status") != MatchStatus.ACTIVE.value or match.get("gameState", {}).get("finished"):
        return False
    last_move_at = parse_timestamp(match.get("lastMoveAt"))
    if last_move_at is None:
        return False
    elapsed_ms = (now - last_move_at).total_seconds() * 1000
    return elapsed_ms >= int(match.get("turnTimeout") or TURN_TIMEOUT_MS)


def recency_key(match: Mapping[str, Any]) -> datetime:
    stamp = parse_timestamp(match.get("updatedAt") or match.get("createdAt"))
    return stamp or datetime.min.replace(tzinfo=timezone.utc)
