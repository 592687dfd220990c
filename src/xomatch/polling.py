"""Adaptive polling of the match API.

A poller keeps one cooperative timer chain: each cycle awaits the poll, adjusts
its temperature from the outcome and only then sleeps before the next cycle.

* hot: something changed recently (or a refresh was forced), poll fast.
* warm: nothing changed for ``warm_after`` cycles, poll at the medium rate.
* cold: nothing to watch, or ``cold_after`` further quiet cycles, poll slowly.

An active match keeps the poller out of cold. Every delay is jittered and
clamped so that many clients do not end up polling in lockstep.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

import httpx

from .client import MatchApiClient, MatchApiError
from .fids import to_canonical_fid
from .schema import MatchStatus

logger = logging.getLogger(__name__)

HOT = "hot"
WARM = "warm"
COLD = "cold"

Signature = Tuple[Tuple[str, str, Optional[str], bool], ...]


@dataclass(frozen=True)
class PollerConfig:
    fast: float = 5.0
    medium: float = 17.0
    slow: float = 60.0
    warm_after: int = 3
    cold_after: int = 6
    jitter: float = 0.2
    min_delay: float = 2.0
    max_delay: float = 120.0


MATCH_LIST_CONFIG = PollerConfig()
PENDING_WATCH_CONFIG = PollerConfig(
    fast=3.0, medium=8.0, slow=20.0, warm_after=5, cold_after=10, min_delay=1.0, max_delay=30.0
)


@dataclass
class PollOutcome:
    changed: bool
    has_items: bool = True
    # Something worth reacting to quickly (an active match) is being watched.
    keep_warm: bool = False
    stop: bool = False


class AdaptivePoller:
    def __init__(
        self,
        poll: Callable[[], Awaitable[PollOutcome]],
        config: Optional[PollerConfig] = None,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        name: str = "poller",
    ) -> None:
        self._poll = poll
        self.config = config or PollerConfig()
        self._rng = rng or random.Random()
        self._sleep = sleep
        self.name = name
        self.temperature = HOT
        self.idle_cycles = 0
        self.cycles = 0
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def observe(self, outcome: PollOutcome) -> str:
        """Fold one poll outcome into the temperature and return the new value."""

        cfg = self.config
        if not outcome.has_items and not outcome.keep_warm:
            self.idle_cycles = 0 if outcome.changed else self.idle_cycles + 1
            self.temperature = COLD
        elif outcome.changed:
            self.idle_cycles = 0
            self.temperature = HOT
        else:
            self.idle_cycles += 1
            if self.idle_cycles >= cfg.warm_after + cfg.cold_after:
                self.temperature = WARM if outcome.keep_warm else COLD
            elif self.idle_cycles >= cfg.warm_after:
                self.temperature = WARM
        return self.temperature

    def base_delay(self) -> float:
        cfg = self.config
        return {HOT: cfg.fast, WARM: cfg.medium, COLD: cfg.slow}[self.temperature]

    def next_delay(self) -> float:
        cfg = self.config
        factor = 1.0 + self._rng.uniform(-cfg.jitter, cfg.jitter)
        return min(cfg.max_delay, max(cfg.min_delay, self.base_delay() * factor))

    def force_hot(self) -> None:
        self.temperature = HOT
        self.idle_cycles = 0

    async def run_once(self) -> PollOutcome:
        outcome = await self._poll()
        self.cycles += 1
        previous = self.temperature
        self.observe(outcome)
        if self.temperature != previous:
            logger.debug("%s: %s -> %s", self.name, previous, self.temperature)
        return outcome

    async def run(self) -> None:
        self._running = True
        try:
            while self._running:
                try:
                    outcome = await self.run_once()
                except (httpx.HTTPError, MatchApiError) as exc:
                    logger.warning("%s: poll failed, retrying next cycle: %s", self.name, exc)
                else:
                    if outcome.stop:
                        logger.debug("%s: nothing left to watch, stopping", self.name)
                        break
                if not self._running:
                    break
                await self._sleep(self.next_delay())
        finally:
            self._running = False

    def stop(self) -> None:
        self._running = False


# ---------- Shared match list ----------


def match_signature(matches: List[Dict[str, Any]]) -> Signature:
    return tuple(
        sorted(
            (
                str(m.get("matchId")),
                str(m.get("status")),
                m.get("updatedAt"),
                bool((m.get("gameState") or {}).get("finished")),
            )
            for m in matches
        )
    )


class MatchDataStore:
    """Latest match list for one player, shared by every view that shows it."""

    def __init__(
        self, client: MatchApiClient, fid: Any, clock: Callable[[], float] = time.time
    ) -> None:
        self.client = client
        self.fid = to_canonical_fid(fid)
        self.matches: List[Dict[str, Any]] = []
        self.fetched_at: Optional[float] = None
        self.signature: Optional[Signature] = None
        self._clock = clock
        self._subscribers: List[Callable[[List[Dict[str, Any]]], Any]] = []

    def subscribe(self, callback: Callable[[List[Dict[str, Any]]], Any]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def refresh(self) -> bool:
        """Fetch the list; notify subscribers and return True if its content changed."""

        matches = await self.client.list_player_matches(self.fid)
        signature = match_signature(matches)
        changed = signature != self.signature
        self.matches = matches
        self.fetched_at = self._clock()
        self.signature = signature
        if changed:
            for callback in list(self._subscribers):
                callback(matches)
        return changed

    def has_active_match(self) -> bool:
        return any(m.get("status") == MatchStatus.ACTIVE.value for m in self.matches)

    async def poll(self) -> PollOutcome:
        changed = await self.refresh()
        return PollOutcome(changed=changed, has_items=bool(self.matches), keep_warm=self.has_active_match())


class PendingMatchWatch:
    """Notice when a match this player created gets accepted by an opponent."""

    def __init__(
        self,
        data_store: MatchDataStore,
        on_activated: Callable[[Dict[str, Any]], Any],
        pending_ids: Iterable[str] = (),
    ) -> None:
        self.data_store = data_store
        self.on_activated = on_activated
        # Seeded with a match just created, so an acceptance before the first poll still fires.
        self.pending_ids: Set[str] = {str(i) for i in pending_ids}

    def _own_pending(self, matches: List[Dict[str, Any]]) -> Set[str]:
        return {
            m["matchId"]
            for m in matches
            if m.get("status") == MatchStatus.PENDING.value
            and to_canonical_fid(m.get("player1Fid")) == self.data_store.fid
        }

    async def poll(self) -> PollOutcome:
        await self.data_store.refresh()
        matches = self.data_store.matches
        by_id = {m["matchId"]: m for m in matches}

        activated = [
            by_id[match_id]
            for match_id in sorted(self.pending_ids)
            if by_id.get(match_id, {}).get("status") == MatchStatus.ACTIVE.value
        ]
        for match in activated:
            logger.info("Pending match %s was accepted", match["matchId"])
            result = self.on_activated(match)
            if inspect.isawaitable(result):
                await result

        self.pending_ids = self._own_pending(matches)
        return PollOutcome(
            changed=bool(activated),
            has_items=bool(self.pending_ids),
            stop=not self.pending_ids and not activated,
        )


def match_list_poller(
    data_store: MatchDataStore,
    config: Optional[PollerConfig] = None,
    rng: Optional[random.Random] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> AdaptivePoller:
    return AdaptivePoller(data_store.poll, config or MATCH_LIST_CONFIG, rng, sleep, name="match-list")


def pending_watch_poller(
    watch: PendingMatchWatch,
    config: Optional[PollerConfig] = None,
    rng: Optional[random.Random] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> AdaptivePoller:
    return AdaptivePoller(watch.poll, config or PENDING_WATCH_CONFIG, rng, sleep, name="pending-watch")
