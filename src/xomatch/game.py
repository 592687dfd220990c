"""Core Tic-Tac-Toe rules shared by every match handler."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

Player = str  # "X" or "O"
Cell = Optional[Player]

BOARD_SIZE = 9

WINNING_LINES: Tuple[Tuple[int, int, int], ...] = (
    (0, 1, 2),
    (3, 4, 5),
    (6, 7, 8),
    (0, 3, 6),
    (1, 4, 7),
    (2, 5, 8),
    (0, 4, 8),
    (2, 4, 6),
)


class InvalidMove(ValueError):
    """Raised when a move cannot be applied; ``reason`` is machine readable."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Invalid move: {reason}")
        self.reason = reason


def other_symbol(symbol: Player) -> Player:
    return "O" if symbol == "X" else "X"


# ---------- Outcome ----------


@dataclass(frozen=True)
class Outcome:
    winner: Optional[Player]
    line: Optional[Tuple[int, int, int]]
    draw: bool = False


def check_winner(board: List[Cell]) -> Optional[Outcome]:
    """Return the outcome of ``board`` or ``None`` while the game continues."""

    for a, b, c in WINNING_LINES:
        v = board[a]
        if v is not None and v == board[b] == board[c]:
            return Outcome(winner=v, line=(a, b, c))
    if all(v is not None for v in board):
        return Outcome(winner=None, line=None, draw=True)
    return None


# ---------- Game state ----------


@dataclass
class GameState:
    # JSON shape: {board, next, turn, winner, winLine, finished}
    board: List[Cell] = field(default_factory=lambda: [None] * BOARD_SIZE)
    next: Player = "X"
    turn: int = 0
    winner: Optional[Player] = None
    win_line: Optional[List[int]] = None
    finished: bool = False

    @classmethod
    def initial(cls, first: Player = "X") -> "GameState":
        return cls(next=first)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "GameState":
        win_line = data.get("winLine")
        return cls(
            board=list(data.get("board") or [None] * BOARD_SIZE),
            next=data.get("next") or "X",
            turn=int(data.get("turn") or 0),
            winner=data.get("winner"),
            win_line=list(win_line) if win_line else None,
            finished=bool(data.get("finished", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "board": list(self.board),
            "next": self.next,
            "turn": self.turn,
            "winner": self.winner,
            "winLine": list(self.win_line) if self.win_line else None,
            "finished": self.finished,
        }

    def clone(self) -> "GameState":
        return GameState(
            board=self.board.copy(),
            next=self.next,
            turn=self.turn,
            winner=self.winner,
            win_line=self.win_line.copy() if self.win_line else None,
            finished=self.finished,
        )


def validate_move(state: GameState, idx: int) -> Optional[str]:
    """Return the rejection reason for ``idx`` or ``None`` if it is legal."""

    if state.finished:
        return "finished"
    if idx < 0 or idx >= BOARD_SIZE:
        return "out_of_bounds"
    if state.board[idx] is not None:
        return "occupied"
    return None


def apply_move(state: GameState, idx: int) -> GameState:
    """Place ``state.next`` on ``idx`` and return the resulting state.

    The input state is left untouched. A winning line or a full board marks the
    new state finished; otherwise the side to move flips.
    """

    reason = validate_move(state, idx)
    if reason is not None:
        raise InvalidMove(reason)

    nxt = state.clone()
    nxt.board[idx] = state.next
    nxt.turn = state.turn + 1

    outcome = check_winner(nxt.board)
    if outcome is not None and outcome.winner:
        nxt.winner = outcome.winner
        nxt.win_line = list(outcome.line or ())
        nxt.finished = True
    elif outcome is not None and outcome.draw:
        nxt.finished = True
    else:
        nxt.next = other_symbol(state.next)
    return nxt
