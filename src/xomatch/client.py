"""Async HTTP client for the match API."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)


class MatchApiError(Exception):
    """Non-2xx response from the match API."""

    def __init__(self, status: int, error: str, reason: Optional[str] = None, match: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(f"HTTP {status}: {error}")
        self.status = status
        self.error = error
        self.reason = reason
        self.match = match

    @property
    def not_found(self) -> bool:
        return self.status == 404


class MatchApiClient:
    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8000",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> "MatchApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self.client.request(method, path, **kwargs)
        if response.is_success:
            return response.json()
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        error = body.get("error") or f"HTTP error! status: {response.status_code}"
        logger.debug("%s %s failed with %s: %s", method, path, response.status_code, error)
        raise MatchApiError(response.status_code, error, body.get("reason"), body.get("match"))

    # ---------- Endpoints ----------

    async def create_match(
        self,
        match_id: str,
        player1_fid: Any,
        rules: Optional[Dict[str, Any]] = None,
        visibility: str = "public",
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"matchId": match_id, "player1Fid": player1_fid, "visibility": visibility}
        if rules is not None:
            payload["rules"] = rules
        return await self._request("POST", "/api/matches/create", json=payload)

    async def get_match(self, match_id: str) -> Dict[str, Any]:
        return await self._request("GET", "/api/matches/get", params={"matchId": match_id})

    async def accept_match(self, match_id: str, player2_fid: Any) -> Dict[str, Any]:
        return await self._request(
            "POST", "/api/matches/accept", json={"matchId": match_id, "player2Fid": player2_fid}
        )

    async def send_move(self, match_id: str, player_fid: Any, cell_index: int) -> Dict[str, Any]:
        return await self._request(
            "POST",
            "/api/matches/move",
            json={"matchId": match_id, "playerFid": player_fid, "cellIndex": cell_index},
        )

    async def list_player_matches(self, fid: Any) -> List[Dict[str, Any]]:
        return await self._request("GET", "/api/matches/list", params={"fid": str(fid)})

    async def check_match_timeouts(self, fid: Any) -> Dict[str, Any]:
        if fid is None:
            raise ValueError("fid is required to check match timeouts")
        return await self._request("POST", "/api/matches/check-timeouts", json={"fid": fid})

    async def get_leaderboard(self) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/api/matches/leaderboard")
        return data.get("leaderboard", [])
