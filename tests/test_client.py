"""Tests for the async API client, run against the app in process."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from xomatch.api import create_app
from xomatch.client import MatchApiClient, MatchApiError
from xomatch.config import Settings
from xomatch.store import MemoryStore


def _client(clock):
    app = create_app(settings=Settings(), store=MemoryStore(), clock=clock)
    return MatchApiClient(base_url="http://testserver", transport=httpx.ASGITransport(app=app))


def test_client_plays_through_the_api(clock):
    async def scenario():
        async with _client(clock) as api:
            created = await api.create_match("m1", 100, rules={"firstMove": "O"})
            assert created["status"] == "pending"

            listed = await api.list_player_matches(200)
            assert [m["matchId"] for m in listed] == ["m1"]

            accepted = await api.accept_match("m1", 200)
            assert accepted["player1Symbol"] == "O"

            moved = await api.send_move("m1", 100, 0)
            assert moved["gameState"]["board"][0] == "O"

            fetched = await api.get_match("m1")
            assert fetched["gameState"]["turn"] == 1

            swept = await api.check_match_timeouts(100)
            assert swept["timeouts"] == 0
            assert await api.get_leaderboard() == []

    asyncio.run(scenario())


def test_client_raises_api_errors(clock):
    async def scenario():
        async with _client(clock) as api:
            with pytest.raises(MatchApiError) as excinfo:
                await api.get_match("missing")
            assert excinfo.value.not_found
            assert excinfo.value.error == "Match not found"

            await api.create_match("m1", 100)
            with pytest.raises(MatchApiError) as excinfo:
                await api.accept_match("m1", 100)
            assert excinfo.value.status == 400
            assert excinfo.value.reason == "self_accept"

    asyncio.run(scenario())


def test_client_handles_non_json_errors():
    def handler(request):
        return httpx.Response(502, text="Bad Gateway")

    async def scenario():
        api = MatchApiClient(base_url="http://testserver", transport=httpx.MockTransport(handler))
        try:
            with pytest.raises(MatchApiError) as excinfo:
                await api.get_leaderboard()
        finally:
            await api.aclose()
        assert excinfo.value.status == 502
        assert "502" in excinfo.value.error

    asyncio.run(scenario())
