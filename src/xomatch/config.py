"""Runtime settings read from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .schema import TURN_TIMEOUT_MS


@dataclass(frozen=True)
class Settings:
    host: str = "0.0.0.0"
    port: int = 8000
    # Redis URL of the key-value store; None keeps everything in process memory.
    kv_url: Optional[str] = None
    turn_timeout_ms: int = TURN_TIMEOUT_MS
    max_open_matches: int = 2
    match_cache_ttl: float = 18.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            host=env.get("XOMATCH_HOST", "0.0.0.0"),
            port=int(env.get("XOMATCH_PORT", "8000")),
            kv_url=env.get("KV_URL") or env.get("REDIS_URL") or None,
            turn_timeout_ms=int(env.get("XOMATCH_TURN_TIMEOUT_MS", str(TURN_TIMEOUT_MS))),
            max_open_matches=int(env.get("XOMATCH_MAX_OPEN_MATCHES", "2")),
            match_cache_ttl=float(env.get("XOMATCH_MATCH_CACHE_TTL", "18")),
            log_level=env.get("XOMATCH_LOG_LEVEL", "INFO").upper(),
        )
