"""Shared fixtures: an in-memory store and a clock the tests can move."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from xomatch.cache import RepositoryCache
from xomatch.config import Settings
from xomatch.repository import MatchRepository
from xomatch.service import MatchService
from xomatch.store import MemoryStore


class PausingStore(MemoryStore):
    """Blocks the first read of one key until the test lets it go."""

    def __init__(self) -> None:
        super().__init__()
        self.pause_key = None
        self.paused = threading.Event()
        self.resume = threading.Event()

    def pause_on(self, key: str) -> None:
        self.pause_key = key

    def get(self, key: str):
        value = super().get(key)
        if key == self.pause_key:
            self.pause_key = None
            self.paused.set()
            self.resume.wait(2)
        return value


def _spawn(results, fn, *args):
    """Run ``fn`` on a thread, collecting its return value or exception."""

    def target():
        try:
            results.append(fn(*args))
        except Exception as exc:
            results.append(exc)

    thread = threading.Thread(target=target)
    thread.start()
    return thread


class FakeClock:
    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def repository(store, clock):
    return MatchRepository(store, RepositoryCache(), clock=clock)


@pytest.fixture
def service(repository, clock):
    return MatchService(repository, Settings(), clock=clock)


@pytest.fixture
def paused_store():
    return PausingStore()


@pytest.fixture
def paused_service(paused_store, clock):
    return MatchService(MatchRepository(paused_store, RepositoryCache(), clock=clock), Settings(), clock=clock)


@pytest.fixture
def spawn():
    return _spawn
