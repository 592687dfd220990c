"""Domain errors raised by the match service and mapped to HTTP responses."""

from __future__ import annotations

from typing import Any, Dict, Optional


class MatchError(Exception):
    status_code = 400
    default_reason: Optional[str] = None

    def __init__(self, error: str, reason: Optional[str] = None, match: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(error)
        self.error = error
        self.reason = reason or self.default_reason
        self.match = match

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.error}
        if self.reason:
            payload["reason"] = self.reason
        if self.match is not None:
            payload["match"] = self.match
        return payload


class RequestInvalid(MatchError):
    default_reason = "invalid_request"


class MatchNotFound(MatchError):
    status_code = 404
    default_reason = "not_found"


class MatchExists(MatchError):
    status_code = 409
    default_reason = "exists"


class StateConflict(MatchError):
    """The match is not in a state that allows the requested transition."""


class NotAPlayer(MatchError):
    status_code = 403
    default_reason = "not_a_player"


class MatchLimitReached(MatchError):
    default_reason = "limit"


class TurnTimedOut(MatchError):
    default_reason = "timeout"
